"""
Generation log and memoized statistics.
"""

from .generation_store import GenerationRecord, GenerationStore
from .daily_stats import DailyStats, DailyStatsAggregator
from .user_stats import UserStats, UserStatsStore, UserStatsAggregator, extract_tags
from .global_stats import GlobalStats, get_global_stats

__all__ = [
    "GenerationRecord",
    "GenerationStore",
    "DailyStats",
    "DailyStatsAggregator",
    "UserStats",
    "UserStatsStore",
    "UserStatsAggregator",
    "extract_tags",
    "GlobalStats",
    "get_global_stats",
]
