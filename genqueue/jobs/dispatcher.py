"""
Worker pool: one execution loop per healthy backend.

The dispatch loop periodically probes every backend that has no running
loop and starts a loop for each one that answers. A loop claims the oldest
claimable Pending job with a version-checked write, hands it to the
processor and repeats until its backend goes offline or it hits an
unexpected error.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Set

from ..core.constants import SCAN_INTERVAL_SECONDS, IDLE_POLL_SECONDS
from ..backends.client import ExecutionClient, default_client_factory
from ..monitoring.health_monitor import HealthMonitor
from .backend_registry import BackendRegistry
from .job_store import JobStore
from .models import BackendInstance, Job, OutcomeKind, utcnow
from .processor import JobProcessor

logger = logging.getLogger(__name__)


class Dispatcher:
    """Owns the map of running execution loops."""

    def __init__(
        self,
        registry: BackendRegistry,
        job_store: JobStore,
        health_monitor: HealthMonitor,
        processor: JobProcessor,
        client_factory: Callable[[BackendInstance], ExecutionClient] = default_client_factory,
        scan_interval: float = SCAN_INTERVAL_SECONDS,
        idle_poll: float = IDLE_POLL_SECONDS,
    ):
        self.registry = registry
        self.job_store = job_store
        self.health_monitor = health_monitor
        self.processor = processor
        self.client_factory = client_factory
        self.scan_interval = scan_interval
        self.idle_poll = idle_poll
        self._workers: Dict[str, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self.stats = {"claimed": 0, "completed": 0, "retried": 0, "failed": 0, "lost": 0, "conflicts": 0}

    def active_backends(self) -> Set[str]:
        return {backend_id for backend_id, task in self._workers.items() if not task.done()}

    def is_active(self, backend_id: str) -> bool:
        task = self._workers.get(backend_id)
        return task is not None and not task.done()

    def wake(self):
        """Wake idle loops so they look for work immediately."""
        event, self._wakeup = self._wakeup, asyncio.Event()
        event.set()

    async def run_dispatch_loop(self):
        """Scan backends forever on a fixed cadence."""
        logger.info(f"Dispatch loop started (scan every {self.scan_interval}s)")
        while True:
            try:
                await self.scan_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in dispatch scan: {e}")
            await asyncio.sleep(self.scan_interval)

    async def scan_once(self) -> Set[str]:
        """
        Probe idle backends and start loops for the healthy ones.

        Returns:
            Ids of the backends whose loops were started in this scan.
        """
        started = set()
        for backend in await self.registry.list_backends():
            if self.is_active(backend.backend_id):
                continue
            result = await self.health_monitor.probe(backend)
            if result.online:
                self._start_worker(backend)
                started.add(backend.backend_id)
        self.wake()
        return started

    def _start_worker(self, backend: BackendInstance):
        task = asyncio.create_task(self._worker_loop(backend), name=f"worker-{backend.backend_id}")
        self._workers[backend.backend_id] = task

        def _forget(done: asyncio.Task, backend_id=backend.backend_id):
            if self._workers.get(backend_id) is done:
                del self._workers[backend_id]

        task.add_done_callback(_forget)
        logger.info(f"Started worker loop for {backend.name}")

    async def claim_next_job(self, backend_id: str) -> Optional[Job]:
        """
        Claim the oldest claimable Pending job for ``backend_id``.

        A failed version check means another loop won that job, so the
        next candidate is tried without delay.
        """
        now = utcnow()
        for job in await self.job_store.list_jobs():
            if not job.is_claimable(now):
                continue
            claimed = await self.job_store.update(job.claimed_by(backend_id, now))
            if claimed is not None:
                self.stats["claimed"] += 1
                logger.debug(f"Backend {backend_id} claimed job {job.job_id}")
                return claimed
            self.stats["conflicts"] += 1
            logger.debug(f"Backend {backend_id} lost claim race for job {job.job_id}")
        return None

    async def _idle(self):
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.idle_poll)
        except asyncio.TimeoutError:
            pass

    async def _worker_loop(self, backend: BackendInstance):
        client = self.client_factory(backend)
        try:
            while True:
                current = await self.registry.get(backend.backend_id)
                if current is None:
                    logger.info(f"Backend {backend.name} was removed, stopping its loop")
                    self.health_monitor.forget(backend.backend_id)
                    return
                backend = current

                job = await self.claim_next_job(backend.backend_id)
                if job is None:
                    await self._idle()
                    continue

                try:
                    outcome = await self.processor.execute(job, backend, client)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    await self._halt_on_unexpected(job, backend, e)
                    return

                self._count(outcome.kind)
                if outcome.backend_offline:
                    await self.health_monitor.mark_offline(backend, str(outcome.error))
                    logger.warning(f"Stopping worker loop for {backend.name}: backend offline")
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Worker loop for {backend.name} crashed: {e}")
            await self.registry.record_error(backend.backend_id, str(e))
        finally:
            await client.close()

    async def _halt_on_unexpected(self, job: Job, backend: BackendInstance, error: Exception):
        """Return the job with one unit of budget spent and record the error."""
        logger.error(f"Unexpected error running job {job.job_id} on {backend.name}: {error}")
        outcome = await self.processor.fail_job(job, backend, error)
        self._count(outcome.kind)
        await self.registry.record_error(backend.backend_id, str(error))
        logger.warning(f"Halting worker loop for {backend.name} until next scan")

    def _count(self, kind: OutcomeKind):
        key = {
            OutcomeKind.COMPLETED: "completed",
            OutcomeKind.RETRYING: "retried",
            OutcomeKind.FAILED: "failed",
            OutcomeKind.LOST: "lost",
        }[kind]
        self.stats[key] += 1

    async def stop(self):
        """Cancel every loop, interrupting in-flight work."""
        tasks = list(self._workers.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        logger.info("Dispatcher stopped")
