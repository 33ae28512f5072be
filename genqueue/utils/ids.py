"""
Time-ordered identifiers.
"""

import time
import threading

import ulid


class MonotonicIdGenerator:
    """ULID generator whose ids strictly increase within one process."""

    def __init__(self):
        self._last_ms = 0
        self._lock = threading.Lock()

    def new(self) -> str:
        with self._lock:
            ms = int(time.time() * 1000)
            if ms <= self._last_ms:
                ms = self._last_ms + 1
            self._last_ms = ms
        return str(ulid.from_timestamp(ms.to_bytes(6, byteorder="big")))
