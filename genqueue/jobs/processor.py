"""
Execution of a single claimed job on a single backend.

The processor submits the generation, polls progress while it runs,
writes progress back to the job store and resolves the job once the
backend answers. Every write is version-checked so a job that was
reclaimed or removed underneath us is detected instead of overwritten.
"""

import asyncio
import math
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..core.constants import (
    POLL_INTERVAL_SECONDS,
    STATUS_TIMEOUT_SECONDS,
    RETRY_DELAY_SECONDS,
    DEFAULT_GENERATION_PARAMS,
)
from ..core.exceptions import BackendError, EmptyResultError, JobLostError
from ..backends.client import ExecutionClient, GenerationResult
from ..delivery.queue import DeliveryQueue, RetryPolicy
from .job_store import JobStore
from .models import BackendInstance, Job, JobOutcome, JobStatus, OutcomeKind, utcnow

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Job, float], Awaitable[Any]]
FailureHandler = Callable[[Job, BaseException, int, bool], Awaitable[Any]]

MAX_WRITE_ATTEMPTS = 5


def limit_resolution(width: int, height: int, max_resolution: int) -> Tuple[int, int]:
    """
    Scale dimensions down to fit ``max_resolution`` pixels.

    Aspect ratio is kept and both sides are truncated, so the result never
    exceeds the capacity. Dimensions already within capacity are returned
    unchanged.
    """
    if width * height <= max_resolution:
        return width, height
    ratio = width / height
    return (
        math.trunc(math.sqrt(max_resolution * ratio)),
        math.trunc(math.sqrt(max_resolution / ratio)),
    )


def apply_size_limit(params: Dict[str, Any], max_resolution: int) -> Dict[str, Any]:
    width = params.get("width")
    height = params.get("height")
    if not width or not height:
        return params
    limited_width, limited_height = limit_resolution(width, height, max_resolution)
    if (limited_width, limited_height) != (width, height):
        logger.debug(f"Limited {width}x{height} to {limited_width}x{limited_height}")
    return {**params, "width": limited_width, "height": limited_height}


class JobProcessor:
    """Runs claimed jobs and resolves them."""

    def __init__(
        self,
        job_store: JobStore,
        delivery_queue: DeliveryQueue,
        default_params: Optional[Dict[str, Any]] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        status_timeout: float = STATUS_TIMEOUT_SECONDS,
        retry_delay: float = RETRY_DELAY_SECONDS,
        delivery_policy: Optional[RetryPolicy] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_failure: Optional[FailureHandler] = None,
    ):
        self.job_store = job_store
        self.delivery_queue = delivery_queue
        self.default_params = dict(DEFAULT_GENERATION_PARAMS if default_params is None else default_params)
        self.poll_interval = poll_interval
        self.status_timeout = status_timeout
        self.retry_delay = retry_delay
        self.delivery_policy = delivery_policy or RetryPolicy()
        self.on_progress = on_progress
        self.on_failure = on_failure

    def prepare_payload(self, job: Job, backend: BackendInstance) -> Dict[str, Any]:
        """Merge default params and fit the size to the backend's capacity."""
        params = {**self.default_params, **job.payload.get("params", {})}
        params = apply_size_limit(params, backend.max_resolution)
        return {**job.payload, "params": params}

    async def execute(
        self, job: Job, backend: BackendInstance, client: ExecutionClient
    ) -> JobOutcome:
        """
        Execute ``job`` on ``backend`` until it is resolved.

        Backend failures are classified and turned into an outcome.
        Anything else propagates after the backend has been interrupted.
        """
        started_at = utcnow()
        payload = self.prepare_payload(job, backend)
        logger.info(f"Job {job.job_id} started on {backend.name}")

        main = asyncio.create_task(client.submit(payload))
        current: Optional[Job] = job
        try:
            while True:
                done, _ = await asyncio.wait({main}, timeout=self.poll_interval)
                if done:
                    break

                status = await client.poll_status(self.status_timeout)
                if current is None:
                    continue
                if status.progress > current.progress:
                    current = await self._write_progress(current, backend, status.progress)
                else:
                    # A stalled job can be reclaimed without any write failing
                    current = await self._refresh_owned(current, backend)

            result: GenerationResult = main.result()
            if not result.images:
                raise EmptyResultError(f"No images returned from {backend.name}")

        except JobLostError as e:
            logger.warning(f"Job {job.job_id} lost on {backend.name}: {e}")
            await self._abort(main, client)
            return JobOutcome(OutcomeKind.LOST, job.job_id, error=e)
        except BackendError as e:
            await self._abort(main, client)
            return await self.fail_job(job, backend, e)
        except BaseException:
            await self._abort(main, client)
            raise

        return await self._resolve(job, current, backend, payload, result, started_at)

    async def _resolve(
        self,
        job: Job,
        current: Optional[Job],
        backend: BackendInstance,
        payload: Dict[str, Any],
        result: GenerationResult,
        started_at,
    ) -> JobOutcome:
        """Mark done, hand off delivery, remove the record."""
        if current is not None:
            try:
                current = await self._update_owned(
                    current, backend, lambda j: replace(j, status=JobStatus.DONE, progress=1.0, last_updated=utcnow())
                )
            except JobLostError as e:
                logger.warning(f"Job {job.job_id} was reclaimed before completion on {backend.name}")
                return JobOutcome(OutcomeKind.LOST, job.job_id, error=e)

        deliverable = {
            "job_id": job.job_id,
            "submitter": job.submitter,
            "backend_id": backend.backend_id,
            "backend_name": backend.name,
            "type": payload.get("type", "txt2img"),
            "params": payload["params"],
            "images": result.images,
            "info": result.info,
            "started_at": started_at.isoformat(),
            "finished_at": utcnow().isoformat(),
        }
        await self.delivery_queue.enqueue(deliverable, self.delivery_policy)

        if current is not None:
            await self.job_store.delete(job.job_id)
        logger.info(f"Job {job.job_id} finished on {backend.name}")
        return JobOutcome(OutcomeKind.COMPLETED, job.job_id, retries_left=job.retry_budget)

    async def fail_job(
        self, job: Job, backend: BackendInstance, error: BaseException
    ) -> JobOutcome:
        """
        Consume one unit of retry budget, or fail the job when none is left.

        The failure is reported through ``on_failure`` in both cases. A
        failed job is removed after it has been reported.
        """
        backend_offline = bool(getattr(error, "marks_offline", False))
        try:
            current = await self._refresh_owned(job, backend)
        except JobLostError as e:
            return JobOutcome(OutcomeKind.LOST, job.job_id, error=e, backend_offline=backend_offline)
        if current is None:
            logger.info(f"Job {job.job_id} failed after it was removed: {error}")
            return JobOutcome(OutcomeKind.FAILED, job.job_id, error=error, backend_offline=backend_offline)

        message = str(error) or error.__class__.__name__
        if current.retry_budget > 0:
            retries_left = current.retry_budget - 1
            try:
                updated = await self._update_owned(
                    current,
                    backend,
                    lambda j: replace(
                        j.returned_to_pending(),
                        retry_budget=retries_left,
                        retry_after=self._retry_after(),
                        error_message=message,
                    ),
                )
            except JobLostError as e:
                return JobOutcome(OutcomeKind.LOST, job.job_id, error=e, backend_offline=backend_offline)
            logger.warning(
                f"Job {job.job_id} failed on {backend.name}, will retry {retries_left} more times: {message}"
            )
            await self._report_failure(updated or current, error, retries_left, final=False)
            return JobOutcome(
                OutcomeKind.RETRYING,
                job.job_id,
                error=error,
                retries_left=retries_left,
                backend_offline=backend_offline,
            )

        try:
            failed = await self._update_owned(
                current,
                backend,
                lambda j: replace(j, status=JobStatus.FAILED, error_message=message, last_updated=utcnow()),
            )
        except JobLostError as e:
            return JobOutcome(OutcomeKind.LOST, job.job_id, error=e, backend_offline=backend_offline)
        logger.error(f"Job {job.job_id} failed on {backend.name}, aborting: {message}")
        await self._report_failure(failed or current, error, 0, final=True)
        await self.job_store.delete(job.job_id)
        return JobOutcome(OutcomeKind.FAILED, job.job_id, error=error, backend_offline=backend_offline)

    def _retry_after(self) -> Optional[datetime]:
        if not self.retry_delay:
            return None
        return utcnow() + timedelta(seconds=self.retry_delay)

    async def _write_progress(
        self, current: Job, backend: BackendInstance, progress: float
    ) -> Optional[Job]:
        now = utcnow()
        updated = await self._update_owned(
            current, backend, lambda j: replace(j, progress=progress, last_updated=now)
        )
        if updated is None:
            logger.debug(f"Job {current.job_id} removed while running, ignoring progress")
            return None
        if self.on_progress:
            try:
                await self.on_progress(updated, progress)
            except Exception as e:
                logger.error(f"Progress callback failed for job {current.job_id}: {e}")
        return updated

    async def _refresh_owned(self, job: Job, backend: BackendInstance) -> Optional[Job]:
        """
        Re-read ``job``; None if removed, JobLostError if no longer ours.

        A Done record still carries our backend until it is deleted, so a
        failure between marking it done and deleting it stays ours to resolve.
        """
        fresh = await self.job_store.get(job.job_id)
        if fresh is None:
            return None
        owned = fresh.status in (JobStatus.IN_PROGRESS, JobStatus.DONE)
        if not owned or fresh.backend_id != backend.backend_id:
            raise JobLostError(f"Job {job.job_id} is now {fresh.status.value} on {fresh.backend_id}")
        return fresh

    async def _update_owned(
        self, current: Job, backend: BackendInstance, change: Callable[[Job], Job]
    ) -> Optional[Job]:
        """
        Version-checked write of ``change(current)``.

        On a failed check the record is re-read: a removed record yields
        None, a record owned by someone else raises JobLostError.
        """
        for attempt in range(MAX_WRITE_ATTEMPTS):
            updated = await self.job_store.update(change(current))
            if updated is not None:
                return updated
            current = await self._refresh_owned(current, backend)
            if current is None:
                return None
        raise JobLostError(f"Job {current.job_id} kept changing during update")

    async def _report_failure(self, job: Job, error: BaseException, retries_left: int, final: bool):
        if not self.on_failure:
            return
        try:
            await self.on_failure(job, error, retries_left, final)
        except Exception as e:
            logger.error(f"Failure handler raised for job {job.job_id}: {e}")

    async def _abort(self, main: asyncio.Task, client: ExecutionClient):
        """Cancel the submit call and ask the backend to stop working."""
        if main.done():
            if not main.cancelled():
                main.exception()
            return
        main.cancel()
        await asyncio.gather(main, return_exceptions=True)
        try:
            await client.interrupt()
        except BackendError as e:
            logger.debug(f"Interrupt failed: {e}")
