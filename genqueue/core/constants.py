"""System-wide constants"""

# Datastore
REDIS_HOST = "localhost"
REDIS_PORT = 6379
REDIS_DB = 0
REDIS_PASSWORD = None
USE_LOCAL_ONLY = False  # Set to True ONLY for testing/development
KEY_PREFIX = "genqueue:"

# Store namespaces
JOBS_NAMESPACE = "jobs"
BACKENDS_NAMESPACE = "backends"
DELIVERIES_NAMESPACE = "deliveries"
GENERATIONS_NAMESPACE = "generations"
CACHE_NAMESPACE = "cache"
USER_STATS_NAMESPACE = "user_stats"

# Dispatcher cadence (seconds)
SCAN_INTERVAL_SECONDS = 60
IDLE_POLL_SECONDS = 3

# Processor timing (seconds)
POLL_INTERVAL_SECONDS = 3
STATUS_TIMEOUT_SECONDS = 15
PROBE_TIMEOUT_SECONDS = 10

# Hang detection (seconds)
HANG_THRESHOLD_SECONDS = 120
RECLAIM_INTERVAL_SECONDS = 5

# Queue position reporting (seconds)
RANK_INTERVAL_SECONDS = 3

# Retry policy
DEFAULT_RETRY_BUDGET = 3
RETRY_DELAY_SECONDS = 0

# Delivery
DELIVERY_MAX_ATTEMPTS = 5
DELIVERY_RETRY_DELAY_SECONDS = 10
DELIVERY_LEASE_SECONDS = 300
DELIVERY_CONCURRENCY = 10
DELIVERY_POLL_SECONDS = 1.0

# Queue limits
MAX_JOBS = 20
MAX_USER_JOBS = 3

# Backends
DEFAULT_MAX_RESOLUTION = 1024 * 1024

# Generation parameters merged under every job payload
DEFAULT_GENERATION_PARAMS = {
    "batch_size": 1,
    "n_iter": 1,
    "width": 512,
    "height": 768,
    "steps": 30,
    "cfg_scale": 10,
    "negative_prompt": "boring_e621_v4",
}

# Statistics cache TTLs (seconds)
OPEN_DAY_STATS_TTL = 60
CLOSED_DAY_STATS_TTL_RANGE = (7 * 24 * 60 * 60, 14 * 24 * 60 * 60)
USER_STATS_TTL_RANGE = (5 * 60, 10 * 60)
