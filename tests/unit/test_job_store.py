"""
Unit tests for job models and the job store.
"""

import pytest
from datetime import timedelta

from genqueue.jobs.models import Job, JobStatus, BackendInstance, HealthState, utcnow


class TestJobModel:
    """Test job state transitions and persistence format."""

    def test_round_trip_keeps_fields(self):
        now = utcnow()
        job = Job(
            job_id="01J",
            payload={"type": "txt2img", "params": {"prompt": "cat"}},
            submitter={"user_id": 42},
            status=JobStatus.IN_PROGRESS,
            backend_id="b1",
            progress=0.5,
            last_updated=now,
            retry_budget=2,
        )

        data = job.to_dict()
        assert "version" not in data
        assert data["status"] == "in_progress"

        restored = Job.from_dict(data, version=7)
        assert restored.version == 7
        assert restored.last_updated == now
        assert restored.user_id == "42"
        assert restored.backend_id == "b1"

    def test_claimable_respects_retry_after(self):
        now = utcnow()
        job = Job(job_id="01J", payload={})
        assert job.is_claimable(now)

        delayed = Job(job_id="01J", payload={}, retry_after=now + timedelta(seconds=30))
        assert not delayed.is_claimable(now)
        assert delayed.is_claimable(now + timedelta(seconds=30))

        running = job.claimed_by("b1", now)
        assert not running.is_claimable(now)

    def test_returned_to_pending_clears_assignment(self):
        running = Job(job_id="01J", payload={}).claimed_by("b1", utcnow())
        running.progress = 0.7

        pending = running.returned_to_pending()

        assert pending.status == JobStatus.PENDING
        assert pending.backend_id is None
        assert pending.progress == 0.0
        assert pending.last_updated is None


class TestBackendInstance:

    def test_public_dict_hides_credentials(self):
        backend = BackendInstance(
            backend_id="b1",
            name="GPU 1",
            endpoint="http://gpu1:7860",
            auth={"user": "sd", "password": "secret"},
            health=HealthState.ONLINE,
        )

        public = backend.to_public_dict()

        assert "auth" not in public
        assert public["health"] == "online"
        assert BackendInstance.from_dict(backend.to_dict()).auth == {"user": "sd", "password": "secret"}


class TestJobStore:
    """Test job persistence with version checks."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, job_store, sample_payload):
        job = await job_store.create(sample_payload, {"user_id": "u1"})

        assert job.status == JobStatus.PENDING
        assert job.retry_budget == 3
        assert job.version == 1

        stored = await job_store.get(job.job_id)
        assert stored.payload == sample_payload
        assert stored.submitter == {"user_id": "u1"}

    @pytest.mark.asyncio
    async def test_ids_are_time_ordered(self, job_store, sample_payload):
        created = [await job_store.create(sample_payload) for _ in range(5)]

        listed = await job_store.list_jobs()

        assert [j.job_id for j in listed] == [j.job_id for j in created]
        assert len({j.job_id for j in created}) == 5

    @pytest.mark.asyncio
    async def test_update_rejects_stale_version(self, job_store, sample_payload):
        job = await job_store.create(sample_payload)

        first = await job_store.update(job.claimed_by("b1", utcnow()))
        second = await job_store.update(job.claimed_by("b2", utcnow()))

        assert first is not None
        assert first.version == 2
        assert second is None
        assert (await job_store.get(job.job_id)).backend_id == "b1"

    @pytest.mark.asyncio
    async def test_update_of_deleted_job_returns_none(self, job_store, sample_payload):
        job = await job_store.create(sample_payload)
        await job_store.delete(job.job_id)

        assert await job_store.update(job.claimed_by("b1", utcnow())) is None
        assert await job_store.get(job.job_id) is None

    @pytest.mark.asyncio
    async def test_delete_if_unchanged(self, job_store, sample_payload):
        job = await job_store.create(sample_payload)
        await job_store.update(job.claimed_by("b1", utcnow()))

        assert await job_store.delete_if_unchanged(job) is False
        assert await job_store.get(job.job_id) is not None

    @pytest.mark.asyncio
    async def test_count_active_per_user(self, job_store, sample_payload):
        await job_store.create(sample_payload, {"user_id": "u1"})
        await job_store.create(sample_payload, {"user_id": 1})
        other = await job_store.create(sample_payload, {"user_id": "u2"})
        await job_store.update(other.claimed_by("b1", utcnow()))

        assert await job_store.count_active() == 3
        assert await job_store.count_active("u1") == 1
        assert await job_store.count_active("1") == 1
        assert await job_store.count_active("u2") == 1
        assert len(await job_store.list_by_status(JobStatus.IN_PROGRESS)) == 1
