"""
Versioned key-value store with a local backend and a Redis backend.

Every write assigns the entry a new integer version. ``compare_and_set``
only applies a write when the caller's expected version still matches,
which is the single coordination primitive the queue relies on.
"""

import gzip
import json
import time
import threading
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis
import redis.asyncio as aioredis

from ..core.constants import (
    KEY_PREFIX,
    REDIS_HOST,
    REDIS_PORT,
    REDIS_DB,
    REDIS_PASSWORD,
)
from ..core.exceptions import StoreError

logger = logging.getLogger(__name__)

COMPRESSION_THRESHOLD = 2048  # 2KB


@dataclass
class VersionedEntry:
    """A stored value together with the version it was written at."""

    key: str
    value: Any
    version: int


def _serialize(value: Any) -> bytes:
    """Serialize value as JSON, gzip-compressed when large enough to benefit"""
    json_data = json.dumps(value, default=str).encode("utf-8")
    if len(json_data) > COMPRESSION_THRESHOLD:
        compressed = gzip.compress(json_data, compresslevel=6)
        if len(compressed) < len(json_data) * 0.9:
            return b"JSON_GZIP:" + compressed
    return b"JSON:" + json_data


def _deserialize(data: bytes) -> Any:
    if data.startswith(b"JSON_GZIP:"):
        return json.loads(gzip.decompress(data[10:]).decode("utf-8"))
    if data.startswith(b"JSON:"):
        return json.loads(data[5:].decode("utf-8"))
    raise StoreError(f"Unrecognized stored value format: {data[:16]!r}")


class KeyValueStore(ABC):
    """Abstract base class for versioned key-value stores"""

    def __init__(self, key_prefix: str = KEY_PREFIX):
        self._key_prefix = key_prefix

    def _make_key(self, namespace: str, key: str) -> str:
        """Create namespaced store key"""
        return f"{self._key_prefix}{namespace}:{key}"

    def _split_key(self, full_key: str, namespace: str) -> str:
        return full_key[len(self._key_prefix) + len(namespace) + 1:]

    @abstractmethod
    async def get(self, namespace: str, key: str) -> Optional[VersionedEntry]:
        """Get entry, or None if missing or expired"""
        pass

    @abstractmethod
    async def set(
        self, namespace: str, key: str, value: Any, ttl: Optional[float] = None
    ) -> VersionedEntry:
        """Unconditionally write value with optional TTL"""
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        namespace: str,
        key: str,
        expected_version: Optional[int],
        value: Any,
        ttl: Optional[float] = None,
    ) -> Optional[VersionedEntry]:
        """
        Write value only if the stored version equals ``expected_version``.

        ``expected_version=None`` means the key must not exist yet.
        Returns the new entry, or None when the check failed.
        """
        pass

    @abstractmethod
    async def delete(self, namespace: str, key: str) -> bool:
        """Delete key, returning whether it existed"""
        pass

    @abstractmethod
    async def compare_and_delete(
        self, namespace: str, key: str, expected_version: int
    ) -> bool:
        """Delete key only if its version equals ``expected_version``"""
        pass

    @abstractmethod
    async def list(self, namespace: str) -> List[VersionedEntry]:
        """List all live entries in a namespace in ascending key order"""
        pass

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        """Get store statistics"""
        pass

    async def close(self):
        """Release any held connections"""
        pass


class LocalKeyValueStore(KeyValueStore):
    """Thread-safe in-memory store for development and tests"""

    def __init__(
        self,
        key_prefix: str = KEY_PREFIX,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(key_prefix)
        self._clock = clock
        self._data: Dict[str, Tuple[bytes, int]] = {}
        self._expiry: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._stats = {"reads": 0, "writes": 0, "conflicts": 0, "deletes": 0}

    def _is_expired(self, full_key: str) -> bool:
        if full_key not in self._expiry:
            return False
        return self._clock() >= self._expiry[full_key]

    def _remove_key(self, full_key: str):
        self._data.pop(full_key, None)
        self._expiry.pop(full_key, None)

    def _current(self, full_key: str) -> Optional[Tuple[bytes, int]]:
        if full_key in self._data and self._is_expired(full_key):
            self._remove_key(full_key)
        return self._data.get(full_key)

    def _write(
        self, full_key: str, key: str, value: Any, version: int, ttl: Optional[float]
    ) -> VersionedEntry:
        self._data[full_key] = (_serialize(value), version)
        if ttl is not None and ttl > 0:
            self._expiry[full_key] = self._clock() + ttl
        else:
            self._expiry.pop(full_key, None)
        self._stats["writes"] += 1
        return VersionedEntry(key=key, value=_deserialize(self._data[full_key][0]), version=version)

    async def get(self, namespace: str, key: str) -> Optional[VersionedEntry]:
        full_key = self._make_key(namespace, key)
        with self._lock:
            self._stats["reads"] += 1
            current = self._current(full_key)
            if current is None:
                return None
            return VersionedEntry(key=key, value=_deserialize(current[0]), version=current[1])

    async def set(
        self, namespace: str, key: str, value: Any, ttl: Optional[float] = None
    ) -> VersionedEntry:
        full_key = self._make_key(namespace, key)
        with self._lock:
            current = self._current(full_key)
            version = current[1] + 1 if current else 1
            return self._write(full_key, key, value, version, ttl)

    async def compare_and_set(
        self,
        namespace: str,
        key: str,
        expected_version: Optional[int],
        value: Any,
        ttl: Optional[float] = None,
    ) -> Optional[VersionedEntry]:
        full_key = self._make_key(namespace, key)
        with self._lock:
            current = self._current(full_key)
            current_version = current[1] if current else None
            if current_version != expected_version:
                self._stats["conflicts"] += 1
                return None
            version = current_version + 1 if current_version else 1
            return self._write(full_key, key, value, version, ttl)

    async def delete(self, namespace: str, key: str) -> bool:
        full_key = self._make_key(namespace, key)
        with self._lock:
            if self._current(full_key) is None:
                return False
            self._remove_key(full_key)
            self._stats["deletes"] += 1
            return True

    async def compare_and_delete(
        self, namespace: str, key: str, expected_version: int
    ) -> bool:
        full_key = self._make_key(namespace, key)
        with self._lock:
            current = self._current(full_key)
            if current is None or current[1] != expected_version:
                self._stats["conflicts"] += 1
                return False
            self._remove_key(full_key)
            self._stats["deletes"] += 1
            return True

    async def list(self, namespace: str) -> List[VersionedEntry]:
        prefix = self._make_key(namespace, "")
        with self._lock:
            entries = []
            for full_key in sorted(k for k in self._data if k.startswith(prefix)):
                current = self._current(full_key)
                if current is None:
                    continue
                entries.append(
                    VersionedEntry(
                        key=self._split_key(full_key, namespace),
                        value=_deserialize(current[0]),
                        version=current[1],
                    )
                )
            return entries

    async def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {"backend": "local", "size": len(self._data), **self._stats}


class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store.

    Each key holds a serialized ``{"version": n, "value": ...}`` envelope.
    Conditional writes use WATCH/MULTI/EXEC, so a concurrent modification
    of the watched key surfaces as ``redis.WatchError`` and is reported to
    the caller as a failed check.
    """

    def __init__(
        self,
        host: str = REDIS_HOST,
        port: int = REDIS_PORT,
        db: int = REDIS_DB,
        password: Optional[str] = REDIS_PASSWORD,
        key_prefix: str = KEY_PREFIX,
        client: Optional[aioredis.Redis] = None,
    ):
        super().__init__(key_prefix)
        self.redis_client = client or aioredis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            decode_responses=False,  # We handle serialization ourselves
            socket_connect_timeout=10,
            socket_timeout=10,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        logger.info(f"Using Redis store at {host}:{port}/{db}")

    def _encode(self, value: Any, version: int) -> bytes:
        return _serialize({"version": version, "value": value})

    def _decode(self, key: str, data: Optional[bytes]) -> Optional[VersionedEntry]:
        if data is None:
            return None
        envelope = _deserialize(data)
        return VersionedEntry(key=key, value=envelope["value"], version=envelope["version"])

    @staticmethod
    def _ttl_ms(ttl: Optional[float]) -> Optional[int]:
        if ttl is None or ttl <= 0:
            return None
        return max(1, int(ttl * 1000))

    async def get(self, namespace: str, key: str) -> Optional[VersionedEntry]:
        try:
            data = await self.redis_client.get(self._make_key(namespace, key))
        except redis.RedisError as e:
            raise StoreError(f"Failed to read {namespace}:{key}: {e}") from e
        return self._decode(key, data)

    async def set(
        self, namespace: str, key: str, value: Any, ttl: Optional[float] = None
    ) -> VersionedEntry:
        while True:
            current = await self.get(namespace, key)
            expected = current.version if current else None
            entry = await self.compare_and_set(namespace, key, expected, value, ttl)
            if entry is not None:
                return entry
            logger.debug(f"Retrying unconditional write of {namespace}:{key} after collision")

    async def compare_and_set(
        self,
        namespace: str,
        key: str,
        expected_version: Optional[int],
        value: Any,
        ttl: Optional[float] = None,
    ) -> Optional[VersionedEntry]:
        full_key = self._make_key(namespace, key)
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                await pipe.watch(full_key)
                current = self._decode(key, await pipe.get(full_key))
                current_version = current.version if current else None
                if current_version != expected_version:
                    await pipe.unwatch()
                    return None

                version = current_version + 1 if current_version else 1
                pipe.multi()
                pipe.set(full_key, self._encode(value, version), px=self._ttl_ms(ttl))
                await pipe.execute()
                return VersionedEntry(key=key, value=value, version=version)
        except redis.WatchError:
            logger.debug(f"Conditional write collision on {full_key}")
            return None
        except redis.RedisError as e:
            raise StoreError(f"Failed to write {namespace}:{key}: {e}") from e

    async def delete(self, namespace: str, key: str) -> bool:
        try:
            return bool(await self.redis_client.delete(self._make_key(namespace, key)))
        except redis.RedisError as e:
            raise StoreError(f"Failed to delete {namespace}:{key}: {e}") from e

    async def compare_and_delete(
        self, namespace: str, key: str, expected_version: int
    ) -> bool:
        full_key = self._make_key(namespace, key)
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                await pipe.watch(full_key)
                current = self._decode(key, await pipe.get(full_key))
                if current is None or current.version != expected_version:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(full_key)
                await pipe.execute()
                return True
        except redis.WatchError:
            logger.debug(f"Conditional delete collision on {full_key}")
            return False
        except redis.RedisError as e:
            raise StoreError(f"Failed to delete {namespace}:{key}: {e}") from e

    async def list(self, namespace: str) -> List[VersionedEntry]:
        pattern = self._make_key(namespace, "*")
        try:
            full_keys = sorted(
                [k async for k in self.redis_client.scan_iter(match=pattern, count=500)]
            )
            if not full_keys:
                return []
            values = await self.redis_client.mget(full_keys)
        except redis.RedisError as e:
            raise StoreError(f"Failed to list namespace {namespace}: {e}") from e

        entries = []
        for full_key, data in zip(full_keys, values):
            # Key may have expired between SCAN and MGET
            entry = self._decode(self._split_key(full_key.decode("utf-8"), namespace), data)
            if entry is not None:
                entries.append(entry)
        return entries

    async def get_stats(self) -> Dict[str, Any]:
        try:
            await self.redis_client.ping()
            size = await self.redis_client.dbsize()
            return {"backend": "redis", "connected": True, "size": size}
        except redis.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return {"backend": "redis", "connected": False, "error": str(e)}

    async def close(self):
        await self.redis_client.aclose()


def create_store(config) -> KeyValueStore:
    """Create the store selected by configuration"""
    if config.use_local_only:
        logger.warning("Using local in-memory store (testing/development only)")
        return LocalKeyValueStore()
    return RedisKeyValueStore(
        host=config.redis_host,
        port=config.redis_port,
        db=config.redis_db,
        password=config.redis_password,
    )
