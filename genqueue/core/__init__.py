"""Core module exports"""

from .exceptions import (
    GenQueueError,
    ConfigurationError,
    ValidationError,
    StoreError,
    ConcurrencyConflict,
    JobLostError,
    QueueFullError,
    BackendError,
    NetworkError,
    ProtocolError,
    EmptyResultError,
)
from .config import QueueConfig

__all__ = [
    # Exceptions
    "GenQueueError",
    "ConfigurationError",
    "ValidationError",
    "StoreError",
    "ConcurrencyConflict",
    "JobLostError",
    "QueueFullError",
    "BackendError",
    "NetworkError",
    "ProtocolError",
    "EmptyResultError",
    # Configuration
    "QueueConfig",
]
