"""
Job queue: records, backend registry and the components that move jobs
through their lifecycle.

The dispatcher, processor, reclaimer and queue position reporter live in
their own modules and are imported from there.
"""

from .models import (
    JobStatus,
    HealthState,
    Job,
    BackendInstance,
    BackendErrorInfo,
    OutcomeKind,
    JobOutcome,
)
from .job_store import JobStore
from .backend_registry import BackendRegistry

__all__ = [
    "JobStatus",
    "HealthState",
    "Job",
    "BackendInstance",
    "BackendErrorInfo",
    "OutcomeKind",
    "JobOutcome",
    "JobStore",
    "BackendRegistry",
]
