"""
Persistent delivery queue for finished generations.

The job processor hands results over with :meth:`DeliveryQueue.enqueue`
and moves on. A :class:`DeliveryProcessor` drains the queue, calling an
external handler and rescheduling failed deliveries according to each
item's retry policy.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..core.constants import (
    DELIVERIES_NAMESPACE,
    DELIVERY_MAX_ATTEMPTS,
    DELIVERY_RETRY_DELAY_SECONDS,
    DELIVERY_LEASE_SECONDS,
    DELIVERY_CONCURRENCY,
    DELIVERY_POLL_SECONDS,
)
from ..storage.cache import KeyValueStore
from ..utils.ids import MonotonicIdGenerator
from ..jobs.models import utcnow

logger = logging.getLogger(__name__)

DeliveryHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class RetryPolicy:
    """How often and how far apart a delivery is retried."""
    max_attempts: int = DELIVERY_MAX_ATTEMPTS
    delay_seconds: float = DELIVERY_RETRY_DELAY_SECONDS


@dataclass
class DeliveryItem:
    """A deliverable waiting to be handed to the front end."""
    item_id: str
    deliverable: Dict[str, Any]
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    attempts: int = 0
    available_at: datetime = field(default_factory=utcnow)
    locked_until: Optional[datetime] = None
    last_error: Optional[str] = None
    version: int = 0

    def is_due(self, now: datetime) -> bool:
        if self.available_at > now:
            return False
        return self.locked_until is None or self.locked_until <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "deliverable": self.deliverable,
            "policy": {
                "max_attempts": self.policy.max_attempts,
                "delay_seconds": self.policy.delay_seconds,
            },
            "attempts": self.attempts,
            "available_at": self.available_at.isoformat(),
            "locked_until": self.locked_until.isoformat() if self.locked_until else None,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], version: int = 0) -> "DeliveryItem":
        locked_until = data.get("locked_until")
        return cls(
            item_id=data["item_id"],
            deliverable=data["deliverable"],
            policy=RetryPolicy(**data["policy"]),
            attempts=data.get("attempts", 0),
            available_at=datetime.fromisoformat(data["available_at"]),
            locked_until=datetime.fromisoformat(locked_until) if locked_until else None,
            last_error=data.get("last_error"),
            version=version,
        )


class DeliveryQueue:
    """Store-backed FIFO of delivery items."""

    def __init__(
        self,
        store: KeyValueStore,
        lease_seconds: float = DELIVERY_LEASE_SECONDS,
        default_policy: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.lease_seconds = lease_seconds
        self.default_policy = default_policy or RetryPolicy()
        self._ids = MonotonicIdGenerator()

    async def enqueue(
        self, deliverable: Dict[str, Any], retry_policy: Optional[RetryPolicy] = None
    ) -> DeliveryItem:
        """Persist a deliverable for asynchronous delivery."""
        item = DeliveryItem(
            item_id=self._ids.new(),
            deliverable=deliverable,
            policy=retry_policy or self.default_policy,
        )
        entry = await self.store.compare_and_set(
            DELIVERIES_NAMESPACE, item.item_id, None, item.to_dict()
        )
        if entry is None:
            raise RuntimeError(f"Delivery id collision for {item.item_id}")
        logger.debug(f"Enqueued delivery {item.item_id} for job {deliverable.get('job_id')}")
        return replace(item, version=entry.version)

    async def list_items(self) -> List[DeliveryItem]:
        entries = await self.store.list(DELIVERIES_NAMESPACE)
        return [DeliveryItem.from_dict(e.value, version=e.version) for e in entries]

    async def claim_next(self, now: Optional[datetime] = None) -> Optional[DeliveryItem]:
        """Lease the oldest due item, or return None when nothing is due."""
        now = now or utcnow()
        for item in await self.list_items():
            if not item.is_due(now):
                continue
            leased = replace(
                item,
                attempts=item.attempts + 1,
                locked_until=now + timedelta(seconds=self.lease_seconds),
            )
            entry = await self.store.compare_and_set(
                DELIVERIES_NAMESPACE, item.item_id, item.version, leased.to_dict()
            )
            if entry is not None:
                return replace(leased, version=entry.version)
        return None

    async def mark_delivered(self, item: DeliveryItem) -> bool:
        """Remove a delivered item."""
        return await self.store.compare_and_delete(DELIVERIES_NAMESPACE, item.item_id, item.version)

    async def mark_failed(self, item: DeliveryItem, error: str) -> bool:
        """
        Reschedule a failed delivery.

        Returns:
            True if another attempt was scheduled, False if the item was
            dropped because its attempts are exhausted.
        """
        if item.attempts >= item.policy.max_attempts:
            await self.store.compare_and_delete(DELIVERIES_NAMESPACE, item.item_id, item.version)
            logger.error(
                f"Delivery {item.item_id} permanently failed after {item.attempts} attempts: {error}"
            )
            return False

        rescheduled = replace(
            item,
            available_at=utcnow() + timedelta(seconds=item.policy.delay_seconds),
            locked_until=None,
            last_error=error,
        )
        await self.store.compare_and_set(
            DELIVERIES_NAMESPACE, item.item_id, item.version, rescheduled.to_dict()
        )
        logger.warning(
            f"Delivery {item.item_id} failed (attempt {item.attempts}/{item.policy.max_attempts}), "
            f"retrying in {item.policy.delay_seconds}s: {error}"
        )
        return True

    async def get_stats(self) -> Dict[str, Any]:
        items = await self.list_items()
        now = utcnow()
        return {
            "total": len(items),
            "due": sum(1 for item in items if item.is_due(now)),
            "retrying": sum(1 for item in items if item.attempts > 0),
        }


class DeliveryProcessor:
    """Drains the delivery queue with bounded concurrency."""

    def __init__(
        self,
        queue: DeliveryQueue,
        handler: DeliveryHandler,
        on_delivered: Optional[DeliveryHandler] = None,
        on_dropped: Optional[Callable[[Dict[str, Any], str], Awaitable[Any]]] = None,
        concurrency: int = DELIVERY_CONCURRENCY,
        poll_interval: float = DELIVERY_POLL_SECONDS,
    ):
        self.queue = queue
        self.handler = handler
        self.on_delivered = on_delivered
        self.on_dropped = on_dropped
        self.poll_interval = poll_interval
        self._semaphore = asyncio.Semaphore(concurrency)
        self._in_flight: Set[asyncio.Task] = set()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.stats = {"delivered": 0, "failed_attempts": 0, "dropped": 0}

    async def start(self):
        """Start the delivery processor."""
        if self._running:
            logger.warning("Delivery processor already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._worker_loop())
        logger.info("Delivery processor started")

    async def stop(self):
        """Stop the delivery processor, cancelling in-flight deliveries."""
        if not self._running:
            return
        self._running = False
        tasks = list(self._in_flight)
        if self._task:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Delivery processor stopped")

    async def run_once(self) -> int:
        """Start every due delivery that fits in the concurrency limit."""
        started = 0
        while not self._semaphore.locked():
            item = await self.queue.claim_next()
            if item is None:
                break
            await self._semaphore.acquire()
            task = asyncio.create_task(self._process_item(item))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            started += 1
        return started

    async def drain(self):
        """Wait for in-flight deliveries to settle."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def _worker_loop(self):
        """Main delivery loop."""
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in delivery processor loop: {e}")
                await asyncio.sleep(self.poll_interval)

    async def _process_item(self, item: DeliveryItem):
        try:
            await self.handler(item.deliverable)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats["failed_attempts"] += 1
            await self._record_failure(item, str(e))
        else:
            self.stats["delivered"] += 1
            await self._record_delivery(item)
        finally:
            self._semaphore.release()

    async def _record_delivery(self, item: DeliveryItem):
        job_id = item.deliverable.get("job_id")
        try:
            await self.queue.mark_delivered(item)
        except Exception as e:
            # Item reappears when its lease expires
            logger.error(f"Delivered job {job_id} but could not remove item {item.item_id}: {e}")
        if self.on_delivered:
            try:
                await self.on_delivered(item.deliverable)
            except Exception as e:
                logger.error(f"Delivery callback failed for job {job_id}: {e}")

    async def _record_failure(self, item: DeliveryItem, error: str):
        job_id = item.deliverable.get("job_id")
        try:
            rescheduled = await self.queue.mark_failed(item, error)
        except Exception as e:
            logger.error(f"Could not reschedule delivery of job {job_id}: {e}")
            return
        if rescheduled:
            return
        self.stats["dropped"] += 1
        if self.on_dropped:
            try:
                await self.on_dropped(item.deliverable, error)
            except Exception as e:
                logger.error(f"Drop callback failed for job {job_id}: {e}")
