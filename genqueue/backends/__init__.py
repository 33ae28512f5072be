"""
Backend execution clients.
"""

from .client import (
    ExecutionClient,
    SdExecutionClient,
    GenerationResult,
    ProgressStatus,
    default_client_factory,
)

__all__ = [
    "ExecutionClient",
    "SdExecutionClient",
    "GenerationResult",
    "ProgressStatus",
    "default_client_factory",
]
