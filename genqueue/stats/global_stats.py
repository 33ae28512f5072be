"""
All-time statistics summed from daily statistics.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from ..jobs.models import utcnow
from .daily_stats import DailyStatsAggregator
from .generation_store import GenerationStore

logger = logging.getLogger(__name__)


@dataclass
class GlobalStats:
    user_ids: List[str] = field(default_factory=list)
    image_count: int = 0
    step_count: int = 0
    pixel_count: int = 0
    pixel_step_count: int = 0
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def get_global_stats(
    generations: GenerationStore,
    daily: DailyStatsAggregator,
    clock: Callable[[], datetime] = utcnow,
) -> GlobalStats:
    """Sum daily stats from the first generation's day through today."""
    now = clock()
    first = await generations.first_record()
    start = (first.finished_at if first else now).date()
    user_ids = set()
    stats = GlobalStats(timestamp=now.timestamp())

    day = start
    while day <= now.date():
        daily_stats = await daily.get_daily_stats(day.year, day.month, day.day)
        user_ids.update(daily_stats.user_ids)
        stats.image_count += daily_stats.image_count
        stats.step_count += daily_stats.step_count
        stats.pixel_count += daily_stats.pixel_count
        stats.pixel_step_count += daily_stats.pixel_step_count
        day += timedelta(days=1)

    stats.user_ids = sorted(user_ids)
    return stats
