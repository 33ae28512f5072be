"""
Data models for the generation job queue.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional
from dataclasses import dataclass, field, asdict, replace

from ..core.constants import DEFAULT_RETRY_BUDGET, DEFAULT_MAX_RESOLUTION


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _load_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class JobStatus(Enum):
    """Job processing states."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class HealthState(Enum):
    """Backend liveness as last observed."""
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass
class Job:
    """
    A queued generation request.

    ``backend_id``, ``progress`` and ``last_updated`` are only meaningful
    while the job is IN_PROGRESS. ``version`` is assigned by the store and
    is not part of the persisted document.
    """
    job_id: str
    payload: Dict[str, Any]
    submitter: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    backend_id: Optional[str] = None
    progress: float = 0.0
    last_updated: Optional[datetime] = None
    retry_budget: int = DEFAULT_RETRY_BUDGET
    retry_after: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    error_message: Optional[str] = None
    version: int = 0

    @property
    def user_id(self) -> Optional[str]:
        user_id = self.submitter.get("user_id")
        return str(user_id) if user_id is not None else None

    def is_claimable(self, now: datetime) -> bool:
        if self.status != JobStatus.PENDING:
            return False
        return self.retry_after is None or self.retry_after <= now

    def claimed_by(self, backend_id: str, now: datetime) -> "Job":
        return replace(
            self,
            status=JobStatus.IN_PROGRESS,
            backend_id=backend_id,
            progress=0.0,
            last_updated=now,
        )

    def returned_to_pending(self) -> "Job":
        return replace(
            self,
            status=JobStatus.PENDING,
            backend_id=None,
            progress=0.0,
            last_updated=None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for store persistence."""
        data = asdict(self)
        data.pop("version")
        data["status"] = self.status.value
        for name in ["last_updated", "retry_after", "created_at"]:
            data[name] = _dump_time(getattr(self, name))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], version: int = 0) -> "Job":
        """Create instance from dictionary."""
        data = dict(data)
        data["status"] = JobStatus(data["status"])
        for name in ["last_updated", "retry_after", "created_at"]:
            data[name] = _load_time(data.get(name))
        return cls(**data, version=version)


@dataclass
class BackendErrorInfo:
    """Last error observed on a backend."""
    message: str
    time: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "time": self.time.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackendErrorInfo":
        return cls(message=data["message"], time=datetime.fromisoformat(data["time"]))


@dataclass
class BackendInstance:
    """
    A compute backend that jobs can be dispatched to.

    ``auth`` is either ``{"user": ..., "password": ...}`` for basic auth or
    ``{"header": ...}`` for a raw Authorization header value.
    """
    backend_id: str
    name: str
    endpoint: str
    auth: Optional[Dict[str, str]] = None
    max_resolution: int = DEFAULT_MAX_RESOLUTION
    health: HealthState = HealthState.UNKNOWN
    last_seen: Optional[datetime] = None
    last_error: Optional[BackendErrorInfo] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for store persistence."""
        return {
            "backend_id": self.backend_id,
            "name": self.name,
            "endpoint": self.endpoint,
            "auth": self.auth,
            "max_resolution": self.max_resolution,
            "health": self.health.value,
            "last_seen": _dump_time(self.last_seen),
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        """Dictionary without credentials for display."""
        data = self.to_dict()
        data.pop("auth")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], version: int = 0) -> "BackendInstance":
        """Create instance from dictionary."""
        last_error = data.get("last_error")
        return cls(
            backend_id=data["backend_id"],
            name=data["name"],
            endpoint=data["endpoint"],
            auth=data.get("auth"),
            max_resolution=data.get("max_resolution", DEFAULT_MAX_RESOLUTION),
            health=HealthState(data.get("health", HealthState.UNKNOWN.value)),
            last_seen=_load_time(data.get("last_seen")),
            last_error=BackendErrorInfo.from_dict(last_error) if last_error else None,
            version=version,
        )


class OutcomeKind(Enum):
    """How a job execution ended."""
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    LOST = "lost"


@dataclass
class JobOutcome:
    """Result of executing one job on one backend."""
    kind: OutcomeKind
    job_id: str
    error: Optional[BaseException] = None
    retries_left: int = 0
    backend_offline: bool = False

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.COMPLETED
