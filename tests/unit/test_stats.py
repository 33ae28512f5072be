"""
Unit tests for the generation log and memoized statistics.
"""

import pytest
from datetime import datetime, timedelta, timezone

from genqueue.core.constants import CACHE_NAMESPACE, USER_STATS_NAMESPACE
from genqueue.stats.daily_stats import DailyStatsAggregator
from genqueue.stats.generation_store import GenerationRecord
from genqueue.stats.global_stats import get_global_stats
from genqueue.stats.user_stats import UserStatsAggregator, extract_tags
from genqueue.storage.memoize import cache_key

WEEK = 7 * 24 * 60 * 60


def at(day: int, hour: int = 12, minute: int = 0, second: int = 0) -> datetime:
    return datetime(2024, 3, day, hour, minute, second, tzinfo=timezone.utc)


def record(finished_at: datetime, user_id: str = "u1", width=512, height=768, steps=30, prompt="cat"):
    return GenerationRecord(
        record_id="",
        user_id=user_id,
        backend_id="b1",
        started_at=finished_at - timedelta(seconds=20),
        finished_at=finished_at,
        width=width,
        height=height,
        steps=steps,
        prompt=prompt,
    )


async def cached_window(store, year, month, day) -> float:
    entry = await store.get(CACHE_NAMESPACE, cache_key("daily_stats", (year, month, day)))
    return entry.value["expires_at"] - entry.value["computed_at"]


class TestExtractTags:

    def test_splits_and_normalizes(self):
        prompt = "Masterpiece, (best quality:1.2), [sunset];  red   sky.\nocean"
        assert extract_tags(prompt) == ["masterpiece", "best quality", "sunset", "red sky", "ocean"]

    def test_empty_prompt(self):
        assert extract_tags("") == []
        assert extract_tags(None) == []


class TestGenerationStore:

    @pytest.mark.asyncio
    async def test_record_delivery(self, generations):
        deliverable = {
            "job_id": "01J",
            "submitter": {"user_id": 7},
            "backend_id": "b1",
            "params": {"prompt": "a red fox", "width": 640, "height": 448, "steps": 25},
            "info": {},
            "started_at": at(10, 11, 59).isoformat(),
            "finished_at": at(10).isoformat(),
        }

        saved = await generations.record_delivery(deliverable)

        assert saved.record_id
        assert saved.user_id == "7"
        assert saved.pixel_count == 640 * 448
        assert saved.steps == 25
        assert saved.finished_at == at(10)

    @pytest.mark.asyncio
    async def test_list_records_filters(self, generations):
        await generations.append(record(at(9), user_id="u1"))
        await generations.append(record(at(10), user_id="u2"))
        await generations.append(record(at(11), user_id="u1"))

        in_range = await generations.list_records(after=at(10, 0), before=at(11, 0))
        assert [r.user_id for r in in_range] == ["u2"]
        assert len(await generations.list_records(user_id="u1")) == 2
        assert (await generations.first_record()).finished_at == at(9)


class TestDailyStats:
    """Test daily statistics and their cache lifetimes."""

    @pytest.mark.asyncio
    async def test_open_day_cached_for_a_minute(self, store, generations, clock):
        aggregator = DailyStatsAggregator(store, generations, clock=clock)
        await generations.append(record(at(10, 9), steps=20, width=100, height=100))

        stats = await aggregator.get_daily_stats(2024, 3, 10)

        assert stats.image_count == 1
        assert stats.user_ids == ["u1"]
        assert stats.step_count == 20
        assert stats.pixel_count == 10_000
        assert stats.pixel_step_count == 200_000
        assert await cached_window(store, 2024, 3, 10) == 60

        await generations.append(record(at(10, 10)))
        assert (await aggregator.get_daily_stats(2024, 3, 10)).image_count == 1

        clock.advance(seconds=61)
        assert (await aggregator.get_daily_stats(2024, 3, 10)).image_count == 2

    @pytest.mark.asyncio
    async def test_closed_day_cached_for_days(self, store, generations, clock):
        aggregator = DailyStatsAggregator(store, generations, clock=clock, rng=lambda: 0.5)
        await generations.append(record(at(9)))

        await aggregator.get_daily_stats(2024, 3, 9)

        assert await cached_window(store, 2024, 3, 9) == WEEK + 0.5 * WEEK

    @pytest.mark.asyncio
    async def test_empty_day_not_cached(self, store, generations, clock):
        aggregator = DailyStatsAggregator(store, generations, clock=clock)

        stats = await aggregator.get_daily_stats(2024, 3, 1)

        assert stats.is_empty()
        assert await store.list(CACHE_NAMESPACE) == []

    @pytest.mark.asyncio
    async def test_recalculated_once_day_closes(self, store, generations, clock):
        clock.now = at(10, 23, 59, 30)
        aggregator = DailyStatsAggregator(store, generations, clock=clock, rng=lambda: 0.0)
        await generations.append(record(at(10, 23, 59, 0)))
        assert (await aggregator.get_daily_stats(2024, 3, 10)).image_count == 1

        await generations.append(record(at(10, 23, 59, 45)))
        # Still inside the one minute window, but the day is over
        clock.now = at(11, 0, 0, 10)

        assert (await aggregator.get_daily_stats(2024, 3, 10)).image_count == 2
        assert await cached_window(store, 2024, 3, 10) == WEEK


class TestUserStats:
    """Test per-user statistics stored in their own index."""

    @pytest.mark.asyncio
    async def test_counts_and_tags(self, store, generations, clock):
        aggregator = UserStatsAggregator(store, generations, clock=clock, rng=lambda: 0.0)
        await generations.append(record(at(9), prompt="cat, (hat:1.1)", width=10, height=10))
        await generations.append(record(at(10), prompt="cat, dog", width=10, height=20))
        await generations.append(record(at(10), user_id="u2", prompt="bird"))

        stats = await aggregator.get_user_stats("u1")

        assert stats.image_count == 2
        assert stats.pixel_count == 300
        assert stats.top_tags(1) == [("cat", 2)]
        assert stats.tag_counts == {"cat": 2, "hat": 1, "dog": 1}

        entry = await store.get(USER_STATS_NAMESPACE, "u1")
        assert entry.value["expires_at"] - entry.value["computed_at"] == 300

    @pytest.mark.asyncio
    async def test_cached_until_expiry(self, store, generations, clock):
        aggregator = UserStatsAggregator(store, generations, clock=clock, rng=lambda: 1.0)
        await generations.append(record(at(9)))
        await aggregator.get_user_stats("u1")

        await generations.append(record(at(10)))
        clock.advance(seconds=599)
        assert (await aggregator.get_user_stats("u1")).image_count == 1

        clock.advance(seconds=2)
        assert (await aggregator.get_user_stats("u1")).image_count == 2

    @pytest.mark.asyncio
    async def test_top_users(self, store, generations, clock):
        aggregator = UserStatsAggregator(store, generations, clock=clock)
        await generations.append(record(at(9), user_id="u1"))
        await generations.append(record(at(9), user_id="u2"))
        await generations.append(record(at(10), user_id="u2"))
        await aggregator.get_user_stats("u1")
        await aggregator.get_user_stats("u2")

        top = await aggregator.index.top_users("image_count", limit=1)

        assert [s.user_id for s in top] == ["u2"]
        with pytest.raises(ValueError):
            await aggregator.index.top_users("prompt")


class TestGlobalStats:

    @pytest.mark.asyncio
    async def test_sums_days_since_first_generation(self, store, generations, clock):
        daily = DailyStatsAggregator(store, generations, clock=clock)
        await generations.append(record(at(8), user_id="u1", steps=10))
        await generations.append(record(at(10, 8), user_id="u2", steps=20))
        await generations.append(record(at(10, 9), user_id="u1", steps=30))

        stats = await get_global_stats(generations, daily, clock=clock)

        assert stats.image_count == 3
        assert stats.step_count == 60
        assert stats.user_ids == ["u1", "u2"]
        assert stats.pixel_count == 3 * 512 * 768

    @pytest.mark.asyncio
    async def test_no_generations(self, store, generations, clock):
        daily = DailyStatsAggregator(store, generations, clock=clock)

        stats = await get_global_stats(generations, daily, clock=clock)

        assert stats.image_count == 0
        assert stats.user_ids == []
