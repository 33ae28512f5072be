"""
Unit tests for the delivery queue and its processor.
"""

import asyncio
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from genqueue.delivery.queue import DeliveryProcessor, DeliveryQueue, RetryPolicy
from genqueue.jobs.models import utcnow


def deliverable(job_id: str = "01J"):
    return {"job_id": job_id, "submitter": {"user_id": "u1"}, "images": ["aW1hZ2U="]}


class TestDeliveryQueue:
    """Test leasing and rescheduling."""

    @pytest.mark.asyncio
    async def test_claim_leases_item(self, delivery_queue):
        item = await delivery_queue.enqueue(deliverable())

        leased = await delivery_queue.claim_next()

        assert leased.item_id == item.item_id
        assert leased.attempts == 1
        assert await delivery_queue.claim_next() is None

    @pytest.mark.asyncio
    async def test_expired_lease_is_claimable_again(self, store):
        queue = DeliveryQueue(store, lease_seconds=60)
        await queue.enqueue(deliverable())
        now = utcnow()

        await queue.claim_next(now)

        assert await queue.claim_next(now + timedelta(seconds=30)) is None
        again = await queue.claim_next(now + timedelta(seconds=61))
        assert again.attempts == 2

    @pytest.mark.asyncio
    async def test_mark_delivered_removes(self, delivery_queue):
        await delivery_queue.enqueue(deliverable())
        leased = await delivery_queue.claim_next()

        assert await delivery_queue.mark_delivered(leased) is True
        assert await delivery_queue.list_items() == []

    @pytest.mark.asyncio
    async def test_failed_item_rescheduled_then_dropped(self, delivery_queue):
        await delivery_queue.enqueue(deliverable(), RetryPolicy(max_attempts=2, delay_seconds=0))

        first = await delivery_queue.claim_next()
        assert await delivery_queue.mark_failed(first, "webhook returned 502") is True

        second = await delivery_queue.claim_next()
        assert second.attempts == 2
        assert second.last_error == "webhook returned 502"
        assert await delivery_queue.mark_failed(second, "webhook returned 502") is False
        assert await delivery_queue.list_items() == []

    @pytest.mark.asyncio
    async def test_retry_delay_defers_item(self, delivery_queue):
        await delivery_queue.enqueue(deliverable(), RetryPolicy(max_attempts=3, delay_seconds=60))
        leased = await delivery_queue.claim_next()

        await delivery_queue.mark_failed(leased, "timeout")

        assert await delivery_queue.claim_next() is None
        assert await delivery_queue.claim_next(utcnow() + timedelta(seconds=61)) is not None


class TestDeliveryProcessor:
    """Test draining with the external handler."""

    @pytest.mark.asyncio
    async def test_successful_delivery(self, delivery_queue):
        handler = AsyncMock()
        on_delivered = AsyncMock()
        processor = DeliveryProcessor(delivery_queue, handler, on_delivered=on_delivered)
        await delivery_queue.enqueue(deliverable("01A"))
        await delivery_queue.enqueue(deliverable("01B"))

        assert await processor.run_once() == 2
        await processor.drain()

        delivered = [call.args[0]["job_id"] for call in handler.await_args_list]
        assert sorted(delivered) == ["01A", "01B"]
        assert on_delivered.await_count == 2
        assert processor.stats["delivered"] == 2
        assert await delivery_queue.list_items() == []

    @pytest.mark.asyncio
    async def test_exhausted_delivery_dropped(self, delivery_queue):
        handler = AsyncMock(side_effect=ConnectionError("front end unavailable"))
        on_dropped = AsyncMock()
        processor = DeliveryProcessor(delivery_queue, handler, on_dropped=on_dropped)
        await delivery_queue.enqueue(deliverable(), RetryPolicy(max_attempts=1, delay_seconds=0))

        await processor.run_once()
        await processor.drain()

        on_dropped.assert_awaited_once()
        assert "front end unavailable" in on_dropped.await_args.args[1]
        assert processor.stats == {"delivered": 0, "failed_attempts": 1, "dropped": 1}

    @pytest.mark.asyncio
    async def test_delivered_callback_failure_is_contained(self, delivery_queue, caplog):
        on_delivered = AsyncMock(side_effect=ConnectionError("redis down"))
        processor = DeliveryProcessor(delivery_queue, AsyncMock(), on_delivered=on_delivered)
        await delivery_queue.enqueue(deliverable("01A"))

        item = await delivery_queue.claim_next()
        await processor._semaphore.acquire()

        await processor._process_item(item)

        assert processor.stats["delivered"] == 1
        assert await delivery_queue.list_items() == []
        assert "Delivery callback failed for job 01A" in caplog.text
        assert not processor._semaphore.locked()

    @pytest.mark.asyncio
    async def test_drop_bookkeeping_failure_is_contained(self, delivery_queue, caplog):
        handler = AsyncMock(side_effect=ConnectionError("front end unavailable"))
        on_dropped = AsyncMock(side_effect=RuntimeError("notifier broken"))
        processor = DeliveryProcessor(delivery_queue, handler, on_dropped=on_dropped)
        await delivery_queue.enqueue(deliverable("01A"), RetryPolicy(max_attempts=1, delay_seconds=0))

        item = await delivery_queue.claim_next()
        await processor._semaphore.acquire()

        await processor._process_item(item)

        assert processor.stats["dropped"] == 1
        assert "Drop callback failed for job 01A" in caplog.text

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, delivery_queue):
        release = asyncio.Event()
        active = []

        async def handler(item):
            active.append(item["job_id"])
            await release.wait()

        processor = DeliveryProcessor(delivery_queue, handler, concurrency=2)
        for job_id in ("01A", "01B", "01C"):
            await delivery_queue.enqueue(deliverable(job_id))

        assert await processor.run_once() == 2
        await asyncio.sleep(0)
        assert len(active) == 2

        release.set()
        await processor.drain()
        assert await processor.run_once() == 1
        await processor.drain()
        assert processor.stats["delivered"] == 3

    @pytest.mark.asyncio
    async def test_background_loop(self, delivery_queue):
        handler = AsyncMock()
        processor = DeliveryProcessor(delivery_queue, handler, poll_interval=0.01)
        await processor.start()
        try:
            await delivery_queue.enqueue(deliverable())
            for _ in range(100):
                if processor.stats["delivered"]:
                    break
                await asyncio.sleep(0.01)
        finally:
            await processor.stop()

        handler.assert_awaited_once()
