"""
Append-only log of delivered generations.
"""

import logging
from dataclasses import dataclass, asdict, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.constants import GENERATIONS_NAMESPACE
from ..storage.cache import KeyValueStore
from ..utils.ids import MonotonicIdGenerator
from ..jobs.models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class GenerationRecord:
    """One delivered image generation."""
    record_id: str
    user_id: Optional[str]
    backend_id: Optional[str]
    started_at: Optional[datetime]
    finished_at: datetime
    width: int = 0
    height: int = 0
    steps: int = 0
    prompt: str = ""

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        data["finished_at"] = self.finished_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationRecord":
        data = dict(data)
        data["started_at"] = datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None
        data["finished_at"] = datetime.fromisoformat(data["finished_at"])
        return cls(**data)


class GenerationStore:
    """Generation records keyed by time-ordered ids."""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._ids = MonotonicIdGenerator()

    async def append(self, record: GenerationRecord) -> GenerationRecord:
        record = replace(record, record_id=record.record_id or self._ids.new())
        await self.store.set(GENERATIONS_NAMESPACE, record.record_id, record.to_dict())
        return record

    async def record_delivery(self, deliverable: Dict[str, Any]) -> GenerationRecord:
        """Append a record describing a delivered deliverable."""
        params = deliverable.get("params") or {}
        info = deliverable.get("info") or {}
        submitter = deliverable.get("submitter") or {}
        user_id = submitter.get("user_id")
        started_at = deliverable.get("started_at")
        finished_at = deliverable.get("finished_at")
        record = GenerationRecord(
            record_id="",
            user_id=str(user_id) if user_id is not None else None,
            backend_id=deliverable.get("backend_id"),
            started_at=datetime.fromisoformat(started_at) if started_at else None,
            finished_at=datetime.fromisoformat(finished_at) if finished_at else utcnow(),
            width=int(info.get("width") or params.get("width") or 0),
            height=int(info.get("height") or params.get("height") or 0),
            steps=int(info.get("steps") or params.get("steps") or 0),
            prompt=str(info.get("prompt") or params.get("prompt") or ""),
        )
        record = await self.append(record)
        logger.debug(f"Recorded generation {record.record_id} for job {deliverable.get('job_id')}")
        return record

    async def list_records(
        self,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> List[GenerationRecord]:
        """Records finished in ``[after, before)``, optionally for one user."""
        records = []
        for entry in await self.store.list(GENERATIONS_NAMESPACE):
            record = GenerationRecord.from_dict(entry.value)
            if after is not None and record.finished_at < after:
                continue
            if before is not None and record.finished_at >= before:
                continue
            if user_id is not None and record.user_id != str(user_id):
                continue
            records.append(record)
        return records

    async def first_record(self) -> Optional[GenerationRecord]:
        entries = await self.store.list(GENERATIONS_NAMESPACE)
        if not entries:
            return None
        return GenerationRecord.from_dict(entries[0].value)
