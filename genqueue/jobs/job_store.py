"""
Durable job records with optimistic concurrency.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from ..core.constants import JOBS_NAMESPACE, DEFAULT_RETRY_BUDGET
from ..storage.cache import KeyValueStore
from ..utils.ids import MonotonicIdGenerator
from .models import Job, JobStatus, utcnow

logger = logging.getLogger(__name__)


class JobStore:
    """
    Job persistence keyed by time-ordered ids.

    Every mutation goes through :meth:`update`, which only succeeds when the
    job's version still matches the stored one.
    """

    def __init__(self, store: KeyValueStore, default_retry_budget: int = DEFAULT_RETRY_BUDGET):
        self.store = store
        self.default_retry_budget = default_retry_budget
        self._ids = MonotonicIdGenerator()

    async def create(
        self,
        payload: Dict[str, Any],
        submitter: Optional[Dict[str, Any]] = None,
        retry_budget: Optional[int] = None,
    ) -> Job:
        """Create a new Pending job."""
        job = Job(
            job_id=self._ids.new(),
            payload=payload,
            submitter=submitter or {},
            retry_budget=self.default_retry_budget if retry_budget is None else retry_budget,
            created_at=utcnow(),
        )
        entry = await self.store.compare_and_set(JOBS_NAMESPACE, job.job_id, None, job.to_dict())
        if entry is None:
            raise RuntimeError(f"Job id collision for {job.job_id}")
        logger.info(f"Created job {job.job_id}")
        return replace(job, version=entry.version)

    async def get(self, job_id: str) -> Optional[Job]:
        entry = await self.store.get(JOBS_NAMESPACE, job_id)
        if entry is None:
            return None
        return Job.from_dict(entry.value, version=entry.version)

    async def list_jobs(self) -> List[Job]:
        """All jobs in creation order."""
        entries = await self.store.list(JOBS_NAMESPACE)
        return [Job.from_dict(entry.value, version=entry.version) for entry in entries]

    async def list_by_status(self, status: JobStatus) -> List[Job]:
        return [job for job in await self.list_jobs() if job.status == status]

    async def update(self, job: Job) -> Optional[Job]:
        """
        Persist ``job`` if nobody else wrote it since it was read.

        Returns:
            The job with its new version, or None if the record changed or
            no longer exists.
        """
        entry = await self.store.compare_and_set(
            JOBS_NAMESPACE, job.job_id, job.version, job.to_dict()
        )
        if entry is None:
            logger.debug(f"Version check failed for job {job.job_id} at version {job.version}")
            return None
        return replace(job, version=entry.version)

    async def delete(self, job_id: str) -> bool:
        """Remove a job regardless of its state. Missing jobs are ignored."""
        deleted = await self.store.delete(JOBS_NAMESPACE, job_id)
        if deleted:
            logger.info(f"Deleted job {job_id}")
        return deleted

    async def delete_if_unchanged(self, job: Job) -> bool:
        return await self.store.compare_and_delete(JOBS_NAMESPACE, job.job_id, job.version)

    async def count_active(self, user_id: Optional[str] = None) -> int:
        """Count Pending and InProgress jobs, optionally for one submitter."""
        count = 0
        for job in await self.list_jobs():
            if job.status not in (JobStatus.PENDING, JobStatus.IN_PROGRESS):
                continue
            if user_id is not None and job.user_id != str(user_id):
                continue
            count += 1
        return count
