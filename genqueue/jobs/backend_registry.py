"""
Registry of backend compute instances.
"""

import logging
from dataclasses import replace
from typing import Callable, List, Optional

from ..core.constants import BACKENDS_NAMESPACE
from ..storage.cache import KeyValueStore
from .models import BackendInstance, BackendErrorInfo, HealthState, utcnow

logger = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 5


class BackendRegistry:
    """
    Stored set of backends.

    Operators create and remove backends; health fields are only changed
    through :meth:`mark_online`, :meth:`mark_offline` and :meth:`record_error`.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def list_backends(self) -> List[BackendInstance]:
        entries = await self.store.list(BACKENDS_NAMESPACE)
        return [BackendInstance.from_dict(e.value, version=e.version) for e in entries]

    async def get(self, backend_id: str) -> Optional[BackendInstance]:
        entry = await self.store.get(BACKENDS_NAMESPACE, backend_id)
        if entry is None:
            return None
        return BackendInstance.from_dict(entry.value, version=entry.version)

    async def upsert(
        self,
        backend_id: str,
        name: str,
        endpoint: str,
        auth=None,
        max_resolution: Optional[int] = None,
    ) -> BackendInstance:
        """Create or reconfigure a backend, keeping its health fields."""

        def configure(current: Optional[BackendInstance]) -> BackendInstance:
            if current is None:
                backend = BackendInstance(backend_id=backend_id, name=name, endpoint=endpoint, auth=auth)
            else:
                backend = replace(current, name=name, endpoint=endpoint, auth=auth)
            if max_resolution is not None:
                backend = replace(backend, max_resolution=max_resolution)
            return backend

        backend = await self._modify(backend_id, configure, create=True)
        logger.info(f"Registered backend {backend_id} ({endpoint})")
        return backend

    async def remove(self, backend_id: str) -> bool:
        removed = await self.store.delete(BACKENDS_NAMESPACE, backend_id)
        if removed:
            logger.info(f"Removed backend {backend_id}")
        return removed

    async def mark_online(self, backend_id: str) -> Optional[BackendInstance]:
        now = utcnow()
        return await self._modify(
            backend_id,
            lambda b: replace(b, health=HealthState.ONLINE, last_seen=now),
        )

    async def mark_offline(self, backend_id: str, message: str) -> Optional[BackendInstance]:
        error = BackendErrorInfo(message=message, time=utcnow())
        return await self._modify(
            backend_id,
            lambda b: replace(b, health=HealthState.OFFLINE, last_error=error),
        )

    async def record_error(self, backend_id: str, message: str) -> Optional[BackendInstance]:
        """Remember an error without changing the health state."""
        error = BackendErrorInfo(message=message, time=utcnow())
        return await self._modify(backend_id, lambda b: replace(b, last_error=error))

    async def _modify(
        self,
        backend_id: str,
        change: Callable,
        create: bool = False,
    ) -> Optional[BackendInstance]:
        """Read-modify-write with a version check, retried on collision."""
        for attempt in range(MAX_UPDATE_ATTEMPTS):
            current = await self.get(backend_id)
            if current is None and not create:
                logger.debug(f"Backend {backend_id} no longer registered")
                return None

            updated = change(current)
            expected = current.version if current else None
            entry = await self.store.compare_and_set(
                BACKENDS_NAMESPACE, backend_id, expected, updated.to_dict()
            )
            if entry is not None:
                return replace(updated, version=entry.version)
            logger.debug(f"Backend {backend_id} update collision, attempt {attempt + 1}")

        logger.warning(f"Backend {backend_id} update failed after {MAX_UPDATE_ATTEMPTS} attempts")
        return None
