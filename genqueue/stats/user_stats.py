"""
Per-user generation statistics, cached in a dedicated index.
"""

import re
import random
import logging
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..core.constants import USER_STATS_NAMESPACE, USER_STATS_TTL_RANGE
from ..storage.cache import KeyValueStore
from ..storage.memoize import MemoizePolicy, memoize
from ..jobs.models import utcnow
from .generation_store import GenerationStore

logger = logging.getLogger(__name__)

TAG_SEPARATOR = re.compile(r"[,;.]\s+|\n")
TAG_WEIGHT = re.compile(r":[\d.]+")
TAG_BRACKETS = re.compile(r"[()\[\]]")
WHITESPACE = re.compile(r"\s+")


def extract_tags(prompt: str) -> List[str]:
    """Split a prompt into normalized tags."""
    tags = []
    for tag in TAG_SEPARATOR.split(prompt or ""):
        tag = TAG_WEIGHT.sub(" ", tag)
        tag = TAG_BRACKETS.sub(" ", tag)
        tag = WHITESPACE.sub(" ", tag).strip()
        if tag:
            tags.append(tag.lower())
    return tags


@dataclass
class UserStats:
    user_id: str
    image_count: int = 0
    pixel_count: int = 0
    tag_counts: Dict[str, int] = field(default_factory=dict)
    timestamp: float = 0.0

    def top_tags(self, limit: int = 10) -> List[tuple]:
        return Counter(self.tag_counts).most_common(limit)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class UserStatsStore:
    """
    One cached stats record per user, queryable by count fields.

    Serves as the storage override for the memoized user stats.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def get(self, key: str, args: Sequence[Any]) -> Optional[dict]:
        entry = await self.store.get(USER_STATS_NAMESPACE, str(args[0]))
        return entry.value if entry else None

    async def set(self, key: str, args: Sequence[Any], value: Any, expire_in: float):
        timestamp = value.get("timestamp", 0.0)
        await self.store.set(
            USER_STATS_NAMESPACE,
            str(args[0]),
            {"value": value, "computed_at": timestamp, "expires_at": timestamp + expire_in},
            ttl=expire_in,
        )

    async def top_users(self, field_name: str = "image_count", limit: int = 10) -> List[UserStats]:
        """Cached stats ordered by ``field_name`` descending."""
        if field_name not in ("image_count", "pixel_count"):
            raise ValueError(f"Cannot rank users by {field_name}")
        stats = [UserStats(**entry.value["value"]) for entry in await self.store.list(USER_STATS_NAMESPACE)]
        stats.sort(key=lambda s: getattr(s, field_name), reverse=True)
        return stats[:limit]


class UserStatsAggregator:
    """Memoized user statistics with a randomized 5 to 10 minute lifetime."""

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
        self.index = UserStatsStore(store)
        low, high = USER_STATS_TTL_RANGE
        self._cached = memoize(
            store,
            "user_stats",
            self._compute,
            MemoizePolicy(
                expire_in=lambda result, *args: low + self.rng() * (high - low),
                override=self.index,
            ),
            clock=lambda: self.clock().timestamp(),
        )

    async def get_user_stats(self, user_id: str) -> UserStats:
        return UserStats(**await self._cached(str(user_id)))

    async def _compute(self, user_id: str) -> Dict[str, Any]:
        logger.info(f"Calculating user stats for {user_id}")
        stats = UserStats(user_id=user_id, timestamp=self.clock().timestamp())
        tag_counts: Counter = Counter()
        for record in await self.generations.list_records(user_id=user_id):
            stats.image_count += 1
            stats.pixel_count += record.pixel_count
            tag_counts.update(extract_tags(record.prompt))
        stats.tag_counts = dict(tag_counts)
        return stats.to_dict()
