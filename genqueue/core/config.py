"""
Runtime configuration for the generation queue.

Values come from ``GENQUEUE_*`` environment variables (optionally loaded from
a ``.env`` file) with defaults taken from :mod:`genqueue.core.constants`.
"""

import os
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from . import constants
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _env(name: str, default: Any) -> str:
    return os.environ.get(f"GENQUEUE_{name}", str(default))


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "true" if default else "false").lower() in ("1", "true", "yes")


@dataclass
class QueueConfig:
    """Configuration shared by every queue component."""

    redis_host: str = constants.REDIS_HOST
    redis_port: int = constants.REDIS_PORT
    redis_db: int = constants.REDIS_DB
    redis_password: Optional[str] = constants.REDIS_PASSWORD
    use_local_only: bool = constants.USE_LOCAL_ONLY

    scan_interval: float = constants.SCAN_INTERVAL_SECONDS
    idle_poll: float = constants.IDLE_POLL_SECONDS
    poll_interval: float = constants.POLL_INTERVAL_SECONDS
    status_timeout: float = constants.STATUS_TIMEOUT_SECONDS
    probe_timeout: float = constants.PROBE_TIMEOUT_SECONDS

    hang_threshold: float = constants.HANG_THRESHOLD_SECONDS
    reclaim_interval: float = constants.RECLAIM_INTERVAL_SECONDS
    rank_interval: float = constants.RANK_INTERVAL_SECONDS

    retry_budget: int = constants.DEFAULT_RETRY_BUDGET
    retry_delay: float = constants.RETRY_DELAY_SECONDS

    delivery_max_attempts: int = constants.DELIVERY_MAX_ATTEMPTS
    delivery_retry_delay: float = constants.DELIVERY_RETRY_DELAY_SECONDS
    delivery_concurrency: int = constants.DELIVERY_CONCURRENCY

    max_jobs: int = constants.MAX_JOBS
    max_user_jobs: int = constants.MAX_USER_JOBS

    default_params: Dict[str, Any] = field(
        default_factory=lambda: dict(constants.DEFAULT_GENERATION_PARAMS)
    )

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "QueueConfig":
        """Build configuration from the environment, loading ``.env`` first."""
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment from {env_path}")

        password = os.environ.get("GENQUEUE_REDIS_PASSWORD") or None
        try:
            config = cls(
                redis_host=_env("REDIS_HOST", constants.REDIS_HOST),
                redis_port=int(_env("REDIS_PORT", constants.REDIS_PORT)),
                redis_db=int(_env("REDIS_DB", constants.REDIS_DB)),
                redis_password=password,
                use_local_only=_env_bool("LOCAL_ONLY", constants.USE_LOCAL_ONLY),
                scan_interval=float(_env("SCAN_INTERVAL", constants.SCAN_INTERVAL_SECONDS)),
                idle_poll=float(_env("IDLE_POLL", constants.IDLE_POLL_SECONDS)),
                poll_interval=float(_env("POLL_INTERVAL", constants.POLL_INTERVAL_SECONDS)),
                status_timeout=float(_env("STATUS_TIMEOUT", constants.STATUS_TIMEOUT_SECONDS)),
                probe_timeout=float(_env("PROBE_TIMEOUT", constants.PROBE_TIMEOUT_SECONDS)),
                hang_threshold=float(_env("HANG_THRESHOLD", constants.HANG_THRESHOLD_SECONDS)),
                reclaim_interval=float(_env("RECLAIM_INTERVAL", constants.RECLAIM_INTERVAL_SECONDS)),
                rank_interval=float(_env("RANK_INTERVAL", constants.RANK_INTERVAL_SECONDS)),
                retry_budget=int(_env("RETRY_BUDGET", constants.DEFAULT_RETRY_BUDGET)),
                retry_delay=float(_env("RETRY_DELAY", constants.RETRY_DELAY_SECONDS)),
                delivery_max_attempts=int(_env("DELIVERY_MAX_ATTEMPTS", constants.DELIVERY_MAX_ATTEMPTS)),
                delivery_retry_delay=float(
                    _env("DELIVERY_RETRY_DELAY", constants.DELIVERY_RETRY_DELAY_SECONDS)
                ),
                delivery_concurrency=int(_env("DELIVERY_CONCURRENCY", constants.DELIVERY_CONCURRENCY)),
                max_jobs=int(_env("MAX_JOBS", constants.MAX_JOBS)),
                max_user_jobs=int(_env("MAX_USER_JOBS", constants.MAX_USER_JOBS)),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e

        config.validate()
        return config

    def validate(self):
        """Reject non-positive intervals and negative budgets."""
        for name in (
            "scan_interval",
            "idle_poll",
            "poll_interval",
            "status_timeout",
            "probe_timeout",
            "hang_threshold",
            "reclaim_interval",
            "rank_interval",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")

        if self.retry_budget < 0:
            raise ConfigurationError("retry_budget must not be negative")
        if self.retry_delay < 0:
            raise ConfigurationError("retry_delay must not be negative")
        if self.delivery_max_attempts < 1:
            raise ConfigurationError("delivery_max_attempts must be at least 1")
        if self.delivery_concurrency < 1:
            raise ConfigurationError("delivery_concurrency must be at least 1")
        if self.max_jobs < 1 or self.max_user_jobs < 1:
            raise ConfigurationError("queue limits must be at least 1")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["redis_password"]:
            data["redis_password"] = "***"
        return data
