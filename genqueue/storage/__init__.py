"""
Storage layer: versioned key-value stores and memoization.
"""

from .cache import (
    VersionedEntry,
    KeyValueStore,
    LocalKeyValueStore,
    RedisKeyValueStore,
    create_store,
)
from .memoize import MemoizePolicy, memoize, memoized

__all__ = [
    "VersionedEntry",
    "KeyValueStore",
    "LocalKeyValueStore",
    "RedisKeyValueStore",
    "create_store",
    "MemoizePolicy",
    "memoize",
    "memoized",
]
