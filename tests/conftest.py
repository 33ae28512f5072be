"""
Pytest configuration and fixtures for the generation queue tests.

This module provides a fake execution client, an in-memory store and
factories for the queue components shared by the unit and integration tests.
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from genqueue.backends.client import ExecutionClient, GenerationResult, ProgressStatus
from genqueue.delivery.queue import DeliveryQueue
from genqueue.jobs.backend_registry import BackendRegistry
from genqueue.jobs.job_store import JobStore
from genqueue.jobs.models import BackendInstance, Job, utcnow
from genqueue.stats.generation_store import GenerationStore
from genqueue.storage.cache import LocalKeyValueStore

TEST_IMAGE = "aW1hZ2U="  # base64 of "image"
TEST_ENDPOINT = "http://sd.test:7860"


class FakeExecutionClient(ExecutionClient):
    """
    Scriptable stand-in for a generation backend.

    ``progress`` values are returned by successive polls; the last value
    repeats once the list is exhausted. ``on_poll`` runs before each poll
    returns, which lets a test change the store while a job is running.
    """

    def __init__(
        self,
        images: Optional[List[str]] = None,
        progress: Optional[List[float]] = None,
        submit_delay: float = 0.0,
        submit_error: Optional[BaseException] = None,
        poll_error: Optional[BaseException] = None,
        probe_error: Optional[BaseException] = None,
        on_poll: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        self.images = [TEST_IMAGE] if images is None else images
        self.progress = list(progress or [])
        self.submit_delay = submit_delay
        self.submit_error = submit_error
        self.poll_error = poll_error
        self.probe_error = probe_error
        self.on_poll = on_poll
        self.submitted: List[Dict[str, Any]] = []
        self.polls = 0
        self.probes = 0
        self.interrupts = 0
        self.closed = False

    async def submit(self, payload: Dict[str, Any]) -> GenerationResult:
        self.submitted.append(payload)
        await asyncio.sleep(self.submit_delay)
        if self.submit_error is not None:
            raise self.submit_error
        return GenerationResult(images=list(self.images), info={"seed": 1234})

    async def poll_status(self, timeout: float) -> ProgressStatus:
        self.polls += 1
        if self.on_poll is not None:
            await self.on_poll()
        if self.poll_error is not None:
            raise self.poll_error
        if not self.progress:
            return ProgressStatus(progress=0.0)
        value = self.progress.pop(0) if len(self.progress) > 1 else self.progress[0]
        return ProgressStatus(progress=value)

    async def interrupt(self) -> None:
        self.interrupts += 1

    async def probe(self, timeout: float) -> None:
        self.probes += 1
        if self.probe_error is not None:
            raise self.probe_error

    async def close(self):
        self.closed = True


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_backend(backend_id: str = "b1", max_resolution: int = 1024 * 1024) -> BackendInstance:
    return BackendInstance(
        backend_id=backend_id,
        name=f"Backend {backend_id}",
        endpoint=TEST_ENDPOINT,
        max_resolution=max_resolution,
    )


async def claim(job_store: JobStore, job: Job, backend_id: str) -> Job:
    """Move ``job`` to InProgress on ``backend_id`` as a worker loop would."""
    claimed = await job_store.update(job.claimed_by(backend_id, utcnow()))
    assert claimed is not None
    return claimed


@pytest.fixture
def store() -> LocalKeyValueStore:
    return LocalKeyValueStore()


@pytest.fixture
def job_store(store) -> JobStore:
    return JobStore(store)


@pytest.fixture
def registry(store) -> BackendRegistry:
    return BackendRegistry(store)


@pytest.fixture
def delivery_queue(store) -> DeliveryQueue:
    return DeliveryQueue(store)


@pytest.fixture
def generations(store) -> GenerationStore:
    return GenerationStore(store)


@pytest.fixture
def backend() -> BackendInstance:
    return make_backend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sample_payload() -> Dict[str, Any]:
    return {"type": "txt2img", "params": {"prompt": "a lighthouse at dusk, (oil painting:1.2)"}}
