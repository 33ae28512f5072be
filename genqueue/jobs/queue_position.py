"""
Queue position reporting.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..core.constants import RANK_INTERVAL_SECONDS
from .job_store import JobStore
from .models import JobStatus

logger = logging.getLogger(__name__)

Ranks = List[Tuple[str, int]]
RankPublisher = Callable[[Ranks], Awaitable[Any]]


def rank_jobs(jobs) -> Ranks:
    """InProgress jobs rank 0; Pending jobs rank 1, 2, ... in store order."""
    ranks = []
    position = 0
    for job in jobs:
        if job.status == JobStatus.IN_PROGRESS:
            ranks.append((job.job_id, 0))
        elif job.status == JobStatus.PENDING:
            position += 1
            ranks.append((job.job_id, position))
    return ranks


class QueuePositionReporter:
    """Computes ranks and publishes them only when they change."""

    def __init__(
        self,
        job_store: JobStore,
        publisher: Optional[RankPublisher] = None,
        interval: float = RANK_INTERVAL_SECONDS,
    ):
        self.job_store = job_store
        self.publisher = publisher
        self.interval = interval
        self._last_published: Optional[Ranks] = None

    async def compute_ranks(self) -> Ranks:
        return rank_jobs(await self.job_store.list_jobs())

    async def list_jobs(self) -> List[Dict[str, Any]]:
        """Read-only view of the queue for dashboards."""
        jobs = await self.job_store.list_jobs()
        ranks = dict(rank_jobs(jobs))
        return [
            {
                "id": job.job_id,
                "rank": ranks[job.job_id],
                "status": job.status.value,
                "progress": job.progress,
            }
            for job in jobs
            if job.job_id in ranks
        ]

    async def publish_if_changed(self) -> bool:
        ranks = await self.compute_ranks()
        if ranks == self._last_published:
            return False
        if self.publisher:
            await self.publisher(ranks)
        self._last_published = ranks
        return True

    async def run(self):
        """Publish ranks periodically until cancelled."""
        while True:
            try:
                await self.publish_if_changed()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error publishing queue positions: {e}")
            await asyncio.sleep(self.interval)
