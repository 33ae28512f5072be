"""
Unit tests for hung job reclamation.
"""

import pytest
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock

from genqueue.jobs.models import JobStatus
from genqueue.jobs.reclaimer import HangReclaimer


async def start_job(job_store, payload, backend_id, last_updated):
    job = await job_store.create(payload)
    return await job_store.update(job.claimed_by(backend_id, last_updated))


class TestHangReclaimer:
    """Test stall detection and race handling."""

    @pytest.mark.asyncio
    async def test_stalled_job_returned_to_pending(self, job_store, clock, sample_payload):
        on_reclaimed = AsyncMock()
        reclaimer = HangReclaimer(job_store, hang_threshold=120, clock=clock, on_reclaimed=on_reclaimed)
        stalled = await start_job(job_store, sample_payload, "b1", clock() - timedelta(seconds=121))
        fresh = await start_job(job_store, sample_payload, "b2", clock() - timedelta(seconds=30))

        assert await reclaimer.reclaim_hung_jobs() == 1

        reverted = await job_store.get(stalled.job_id)
        assert reverted.status == JobStatus.PENDING
        assert reverted.backend_id is None
        assert reverted.progress == 0.0
        assert reverted.retry_budget == stalled.retry_budget
        assert (await job_store.get(fresh.job_id)).status == JobStatus.IN_PROGRESS
        on_reclaimed.assert_awaited_once()
        assert reclaimer.reclaimed_total == 1

    @pytest.mark.asyncio
    async def test_reclaims_each_stall_once(self, job_store, clock, sample_payload):
        reclaimer = HangReclaimer(job_store, hang_threshold=120, clock=clock)
        await start_job(job_store, sample_payload, "b1", clock() - timedelta(minutes=10))

        assert await reclaimer.reclaim_hung_jobs() == 1
        assert await reclaimer.reclaim_hung_jobs() == 0

    @pytest.mark.asyncio
    async def test_pending_jobs_ignored(self, job_store, clock, sample_payload):
        reclaimer = HangReclaimer(job_store, hang_threshold=120, clock=clock)
        await job_store.create(sample_payload)

        assert await reclaimer.reclaim_hung_jobs() == 0

    @pytest.mark.asyncio
    async def test_loses_race_with_concurrent_completion(self, job_store, clock, sample_payload):
        stalled = await start_job(job_store, sample_payload, "b1", clock() - timedelta(minutes=5))
        snapshot = await job_store.list_by_status(JobStatus.IN_PROGRESS)

        # The owning worker finishes after the reclaimer listed the job
        await job_store.update(replace(stalled, status=JobStatus.DONE, progress=1.0))
        job_store.list_by_status = AsyncMock(return_value=snapshot)
        reclaimer = HangReclaimer(job_store, hang_threshold=120, clock=clock)

        assert await reclaimer.reclaim_hung_jobs() == 0
        assert (await job_store.get(stalled.job_id)).status == JobStatus.DONE
