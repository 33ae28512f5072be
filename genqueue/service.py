"""
Generation service: wires the queue components together and runs them.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .core.config import QueueConfig
from .core.exceptions import QueueFullError, ValidationError
from .storage.cache import KeyValueStore, create_store
from .backends.client import ExecutionClient, default_client_factory
from .delivery.queue import DeliveryProcessor, DeliveryQueue, RetryPolicy
from .jobs.backend_registry import BackendRegistry
from .jobs.dispatcher import Dispatcher
from .jobs.job_store import JobStore
from .jobs.models import BackendInstance, Job, JobStatus, utcnow
from .jobs.processor import FailureHandler, JobProcessor, ProgressCallback
from .jobs.queue_position import QueuePositionReporter, RankPublisher
from .jobs.reclaimer import HangReclaimer
from .monitoring.health_monitor import HealthMonitor
from .stats.daily_stats import DailyStatsAggregator
from .stats.generation_store import GenerationStore
from .stats.global_stats import GlobalStats, get_global_stats
from .stats.user_stats import UserStatsAggregator

logger = logging.getLogger(__name__)

DeliveryHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

SUPPORTED_TASK_TYPES = ("txt2img", "img2img")


async def log_delivery(deliverable: Dict[str, Any]):
    """Fallback delivery handler used when no front end is attached."""
    logger.info(
        f"Job {deliverable['job_id']} produced {len(deliverable.get('images', []))} image(s) "
        f"on {deliverable.get('backend_name')}"
    )


class GenerationService:
    """
    Owns every queue component and the background tasks that drive them.

    The front end plugs in through the delivery, failure, progress and
    rank publisher callbacks.
    """

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        store: Optional[KeyValueStore] = None,
        client_factory: Callable[[BackendInstance], ExecutionClient] = default_client_factory,
        delivery_handler: Optional[DeliveryHandler] = None,
        failure_handler: Optional[FailureHandler] = None,
        progress_handler: Optional[ProgressCallback] = None,
        rank_publisher: Optional[RankPublisher] = None,
    ):
        self.config = config or QueueConfig()
        self.store = store or create_store(self.config)

        self.job_store = JobStore(self.store, self.config.retry_budget)
        self.registry = BackendRegistry(self.store)
        self.health_monitor = HealthMonitor(self.registry, client_factory, self.config.probe_timeout)

        delivery_policy = RetryPolicy(
            max_attempts=self.config.delivery_max_attempts,
            delay_seconds=self.config.delivery_retry_delay,
        )
        self.delivery_queue = DeliveryQueue(self.store, default_policy=delivery_policy)
        self.generations = GenerationStore(self.store)
        self.delivery_processor = DeliveryProcessor(
            self.delivery_queue,
            delivery_handler or log_delivery,
            on_delivered=self.generations.record_delivery,
            concurrency=self.config.delivery_concurrency,
        )

        self.processor = JobProcessor(
            self.job_store,
            self.delivery_queue,
            default_params=self.config.default_params,
            poll_interval=self.config.poll_interval,
            status_timeout=self.config.status_timeout,
            retry_delay=self.config.retry_delay,
            delivery_policy=delivery_policy,
            on_progress=progress_handler,
            on_failure=failure_handler,
        )
        self.dispatcher = Dispatcher(
            self.registry,
            self.job_store,
            self.health_monitor,
            self.processor,
            client_factory=client_factory,
            scan_interval=self.config.scan_interval,
            idle_poll=self.config.idle_poll,
        )
        self.reclaimer = HangReclaimer(
            self.job_store,
            hang_threshold=self.config.hang_threshold,
            interval=self.config.reclaim_interval,
            on_reclaimed=self._on_reclaimed,
        )
        self.queue_positions = QueuePositionReporter(
            self.job_store, rank_publisher, interval=self.config.rank_interval
        )

        self.daily_stats = DailyStatsAggregator(self.store, self.generations)
        self.user_stats = UserStatsAggregator(self.store, self.generations)

        self._tasks: List[asyncio.Task] = []
        self._running = False
        self.started_at: Optional[datetime] = None

    async def submit_job(
        self, payload: Dict[str, Any], submitter: Optional[Dict[str, Any]] = None
    ) -> Job:
        """
        Queue a generation request.

        Raises:
            ValidationError: If the payload is malformed
            QueueFullError: If the queue or the submitter's share of it is full
        """
        task_type = payload.get("type", "txt2img")
        if task_type not in SUPPORTED_TASK_TYPES:
            raise ValidationError(f"Unsupported task type: {task_type}")
        if not isinstance(payload.get("params", {}), dict):
            raise ValidationError("params must be an object")

        submitter = submitter or {}
        if await self.job_store.count_active() >= self.config.max_jobs:
            raise QueueFullError(
                f"Queue is full ({self.config.max_jobs} jobs), try again later",
                self.config.max_jobs,
            )
        user_id = submitter.get("user_id")
        if user_id is not None and await self.job_store.count_active(str(user_id)) >= self.config.max_user_jobs:
            raise QueueFullError(
                f"You already have {self.config.max_user_jobs} jobs in queue",
                self.config.max_user_jobs,
            )

        job = await self.job_store.create({**payload, "type": task_type}, submitter)
        self.dispatcher.wake()
        return job

    async def cancel_job(self, job_id: str) -> bool:
        """Remove a job that has not started yet."""
        job = await self.job_store.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return False
        cancelled = await self.job_store.delete_if_unchanged(job)
        if cancelled:
            logger.info(f"Cancelled job {job_id}")
        return cancelled

    async def list_jobs(self) -> List[Dict[str, Any]]:
        return await self.queue_positions.list_jobs()

    async def list_backends(self) -> List[Dict[str, Any]]:
        backends = []
        for backend in await self.registry.list_backends():
            data = backend.to_public_dict()
            data["active"] = self.dispatcher.is_active(backend.backend_id)
            backends.append(data)
        return backends

    async def get_global_stats(self) -> GlobalStats:
        return await get_global_stats(self.generations, self.daily_stats)

    async def _on_reclaimed(self, job: Job):
        self.dispatcher.wake()

    async def start(self):
        """Start every background loop."""
        if self._running:
            logger.warning("Generation service already running")
            return

        self._running = True
        self.started_at = utcnow()
        await self.delivery_processor.start()
        self._tasks = [
            asyncio.create_task(self.dispatcher.run_dispatch_loop(), name="dispatch"),
            asyncio.create_task(self.reclaimer.run(), name="reclaimer"),
            asyncio.create_task(self.queue_positions.run(), name="queue-positions"),
        ]
        logger.info("Generation service started")

    async def stop(self):
        """Stop background loops and release connections."""
        if not self._running:
            return

        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.dispatcher.stop()
        await self.delivery_processor.stop()
        try:
            await self.store.close()
        except Exception as e:
            logger.error(f"Error closing store: {e}")
        logger.info("Generation service stopped")

    async def run_forever(self, shutdown_event: asyncio.Event):
        """Run until ``shutdown_event`` is set."""
        await self.start()
        try:
            await shutdown_event.wait()
        finally:
            await self.stop()

    async def health_check(self) -> Dict[str, Any]:
        """Health summary for monitoring endpoints."""
        try:
            store_stats = await self.store.get_stats()
            jobs = await self.job_store.list_jobs()
            delivery_stats = await self.delivery_queue.get_stats()
        except Exception as e:
            return {"healthy": False, "error": str(e), "running": self._running}

        healthy = self._running and store_stats.get("connected", True)
        return {
            "healthy": healthy,
            "running": self._running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "store": store_stats,
            "jobs": {
                "pending": sum(1 for j in jobs if j.status == JobStatus.PENDING),
                "in_progress": sum(1 for j in jobs if j.status == JobStatus.IN_PROGRESS),
            },
            "backends": self.health_monitor.check_health(),
            "active_workers": sorted(self.dispatcher.active_backends()),
            "dispatcher": self.dispatcher.stats,
            "deliveries": {**delivery_stats, **self.delivery_processor.stats},
            "reclaimed_total": self.reclaimer.reclaimed_total,
        }
