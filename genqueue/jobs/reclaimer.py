"""
Return stalled jobs to the queue.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..core.constants import HANG_THRESHOLD_SECONDS, RECLAIM_INTERVAL_SECONDS
from .job_store import JobStore
from .models import JobStatus, utcnow

logger = logging.getLogger(__name__)


class HangReclaimer:
    """
    Reverts InProgress jobs whose progress has not moved for longer than
    the hang threshold. Reclaiming does not consume retry budget.
    """

    def __init__(
        self,
        job_store: JobStore,
        hang_threshold: float = HANG_THRESHOLD_SECONDS,
        interval: float = RECLAIM_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
        on_reclaimed: Optional[Callable] = None,
    ):
        self.job_store = job_store
        self.hang_threshold = timedelta(seconds=hang_threshold)
        self.interval = interval
        self.clock = clock
        self.on_reclaimed = on_reclaimed
        self.reclaimed_total = 0

    async def reclaim_hung_jobs(self) -> int:
        """Revert every hung job once. Returns how many were reverted."""
        cutoff = self.clock() - self.hang_threshold
        reclaimed = 0
        for job in await self.job_store.list_by_status(JobStatus.IN_PROGRESS):
            if job.last_updated is None or job.last_updated >= cutoff:
                continue
            # Loses to a concurrent completion or progress write
            reverted = await self.job_store.update(job.returned_to_pending())
            if reverted is None:
                logger.debug(f"Skipped reclaiming job {job.job_id}: it changed meanwhile")
                continue
            reclaimed += 1
            logger.warning(
                f"Reclaimed job {job.job_id} from backend {job.backend_id} "
                f"(no progress since {job.last_updated.isoformat()})"
            )
            if self.on_reclaimed:
                await self.on_reclaimed(reverted)
        self.reclaimed_total += reclaimed
        return reclaimed

    async def run(self):
        """Reclaim periodically until cancelled."""
        while True:
            try:
                await self.reclaim_hung_jobs()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error reclaiming hung jobs: {e}")
            await asyncio.sleep(self.interval)
