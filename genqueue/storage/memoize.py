"""
Memoization of expensive async computations on top of the key-value store.

Entries are keyed by a computation identity plus its arguments and carry
``computed_at``/``expires_at``. There is no locking: concurrent misses may
both recompute and the last write wins.
"""

import time
import hashlib
import logging
import functools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Union

from ..core.constants import CACHE_NAMESPACE
from .cache import KeyValueStore

logger = logging.getLogger(__name__)

ExpireIn = Union[float, Callable[..., float]]


class CacheOverride(Protocol):
    """Alternate storage for memoized values"""

    async def get(self, key: str, args: Sequence[Any]) -> Optional[dict]:
        """Return ``{"value", "computed_at", "expires_at"}`` or None"""
        ...

    async def set(self, key: str, args: Sequence[Any], value: Any, expire_in: float):
        ...


def _default_should_cache(result: Any, *args) -> bool:
    return result is not None


def _never_recalculate(value: Any, *args) -> bool:
    return False


@dataclass
class MemoizePolicy:
    """How long results live and whether to cache or recompute them."""

    expire_in: ExpireIn = 3600
    should_cache: Callable[..., bool] = _default_should_cache
    should_recalculate: Callable[..., bool] = _never_recalculate
    override: Optional[CacheOverride] = None

    def ttl_for(self, result: Any, *args) -> float:
        if callable(self.expire_in):
            return self.expire_in(result, *args)
        return self.expire_in


def cache_key(key: str, args: Sequence[Any]) -> str:
    """Composite key of computation identity and arguments"""
    if not args:
        return key
    arg_string = "|".join(str(arg) for arg in args)
    digest = hashlib.md5(arg_string.encode()).hexdigest()
    return f"{key}:{digest}"


def memoize(
    store: KeyValueStore,
    key: str,
    compute: Callable[..., Awaitable[Any]],
    policy: Optional[MemoizePolicy] = None,
    clock: Callable[[], float] = time.time,
) -> Callable[..., Awaitable[Any]]:
    """
    Wrap ``compute`` so results are served from the store while fresh.

    Args:
        store: Store holding cache entries (unused when the policy overrides storage)
        key: Identity of the computation
        compute: Coroutine function producing the value
        policy: Expiry, caching and recalculation rules
        clock: Time source in epoch seconds

    Returns:
        Coroutine function with the same arguments as ``compute``
    """
    policy = policy or MemoizePolicy()

    async def read_entry(args) -> Optional[dict]:
        if policy.override is not None:
            return await policy.override.get(key, args)
        entry = await store.get(CACHE_NAMESPACE, cache_key(key, args))
        return entry.value if entry else None

    async def write_entry(args, value: Any, expire_in: float):
        if policy.override is not None:
            await policy.override.set(key, args, value, expire_in)
            return
        now = clock()
        await store.set(
            CACHE_NAMESPACE,
            cache_key(key, args),
            {"value": value, "computed_at": now, "expires_at": now + expire_in},
            ttl=expire_in,
        )

    @functools.wraps(compute)
    async def cached_compute(*args):
        entry = await read_entry(args)
        if (
            entry is not None
            and entry.get("expires_at", 0) > clock()
            and not policy.should_recalculate(entry["value"], *args)
        ):
            return entry["value"]

        result = await compute(*args)

        if policy.should_cache(result, *args):
            expire_in = policy.ttl_for(result, *args)
            await write_entry(args, result, expire_in)
            logger.debug(f"Cached {key}{list(args)} for {expire_in:.0f}s")
        return result

    return cached_compute


def memoized(store: KeyValueStore, key: Optional[str] = None, policy: Optional[MemoizePolicy] = None):
    """Decorator form of :func:`memoize`"""

    def decorator(func):
        return memoize(store, key or func.__name__, func, policy)

    return decorator
