"""
Per-day generation statistics.
"""

import random
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

from ..core.constants import OPEN_DAY_STATS_TTL, CLOSED_DAY_STATS_TTL_RANGE
from ..storage.cache import KeyValueStore
from ..storage.memoize import MemoizePolicy, memoize
from ..jobs.models import utcnow
from .generation_store import GenerationStore

logger = logging.getLogger(__name__)


@dataclass
class DailyStats:
    user_ids: List[str] = field(default_factory=list)
    image_count: int = 0
    step_count: int = 0
    pixel_count: int = 0
    pixel_step_count: int = 0
    timestamp: float = 0.0

    def is_empty(self) -> bool:
        return not (self.user_ids or self.image_count or self.pixel_count)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def day_bounds(year: int, month: int, day: int):
    start = datetime(year, month, day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def computed_on_same_day(timestamp: float, year: int, month: int, day: int) -> bool:
    computed = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return (computed.year, computed.month, computed.day) == (year, month, day)


class DailyStatsAggregator:
    """
    Memoized daily statistics.

    A day that was still open when computed is cached for a minute; a
    closed day is cached for 7 to 14 days so historical entries do not
    expire together. Empty days are never cached.
    """

    def __init__(
        self,
        store: KeyValueStore,
        generations: GenerationStore,
        clock: Callable[[], datetime] = utcnow,
        rng: Callable[[], float] = random.random,
    ):
        self.generations = generations
        self.clock = clock
        self.rng = rng
        self._cached = memoize(
            store,
            "daily_stats",
            self._compute,
            MemoizePolicy(
                expire_in=self._expire_in,
                should_cache=lambda result, *args: not DailyStats(**result).is_empty(),
                should_recalculate=self._day_closed_since,
            ),
            clock=lambda: self.clock().timestamp(),
        )

    async def get_daily_stats(self, year: int, month: int, day: int) -> DailyStats:
        return DailyStats(**await self._cached(year, month, day))

    async def _compute(self, year: int, month: int, day: int) -> Dict[str, Any]:
        logger.info(f"Calculating daily stats for {year}-{month}-{day}")
        after, before = day_bounds(year, month, day)
        user_ids = set()
        stats = DailyStats(timestamp=self.clock().timestamp())
        for record in await self.generations.list_records(after=after, before=before):
            if record.user_id is not None:
                user_ids.add(record.user_id)
            stats.image_count += 1
            stats.step_count += record.steps
            stats.pixel_count += record.pixel_count
            stats.pixel_step_count += record.pixel_count * record.steps
        stats.user_ids = sorted(user_ids)
        return stats.to_dict()

    def _expire_in(self, result: Dict[str, Any], year: int, month: int, day: int) -> float:
        if computed_on_same_day(result["timestamp"], year, month, day):
            return OPEN_DAY_STATS_TTL
        low, high = CLOSED_DAY_STATS_TTL_RANGE
        return low + self.rng() * (high - low)

    def _day_closed_since(self, value: Dict[str, Any], year: int, month: int, day: int) -> bool:
        """A value computed while the day was open is stale once the day ends."""
        _, end = day_bounds(year, month, day)
        return computed_on_same_day(value["timestamp"], year, month, day) and self.clock() >= end
