"""
Backend liveness tracking.

The monitor owns the set of backends currently believed online. It is fed
by explicit probes and by the processor reporting connectivity failures.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from ..core.constants import PROBE_TIMEOUT_SECONDS
from ..core.exceptions import BackendError
from ..backends.client import ExecutionClient, default_client_factory
from ..jobs.backend_registry import BackendRegistry
from ..jobs.models import BackendInstance, utcnow

logger = logging.getLogger(__name__)


@dataclass
class HealthResult:
    """Outcome of a single probe."""
    backend_id: str
    online: bool
    error: Optional[str] = None
    checked_at: Optional[datetime] = None


class HealthMonitor:
    """Probes backends and tracks which ones are online."""

    def __init__(
        self,
        registry: BackendRegistry,
        client_factory: Callable[[BackendInstance], ExecutionClient] = default_client_factory,
        probe_timeout: float = PROBE_TIMEOUT_SECONDS,
    ):
        self.registry = registry
        self.client_factory = client_factory
        self.probe_timeout = probe_timeout
        self._online: Set[str] = set()
        self._last_results: Dict[str, HealthResult] = {}

    def is_online(self, backend_id: str) -> bool:
        return backend_id in self._online

    def online_backends(self) -> Set[str]:
        return set(self._online)

    async def probe(self, backend: BackendInstance) -> HealthResult:
        """Run one bounded liveness call and record the transition."""
        client = self.client_factory(backend)
        try:
            await client.probe(self.probe_timeout)
        except BackendError as e:
            result = HealthResult(backend.backend_id, False, str(e), utcnow())
        else:
            result = HealthResult(backend.backend_id, True, None, utcnow())
        finally:
            await client.close()

        if result.online:
            await self._set_online(backend)
        else:
            await self._set_offline(backend.backend_id, backend.name, result.error)
        self._last_results[backend.backend_id] = result
        return result

    async def mark_offline(self, backend: BackendInstance, error: str):
        """Take a backend out of rotation without waiting for the next probe."""
        await self._set_offline(backend.backend_id, backend.name, error)
        self._last_results[backend.backend_id] = HealthResult(
            backend.backend_id, False, error, utcnow()
        )

    def forget(self, backend_id: str):
        self._online.discard(backend_id)
        self._last_results.pop(backend_id, None)

    async def _set_online(self, backend: BackendInstance):
        if backend.backend_id not in self._online:
            logger.info(f"Backend {backend.name} is online")
        self._online.add(backend.backend_id)
        await self.registry.mark_online(backend.backend_id)

    async def _set_offline(self, backend_id: str, name: str, error: Optional[str]):
        if backend_id in self._online:
            logger.warning(f"Backend {name} went offline: {error}")
        else:
            logger.debug(f"Backend {name} is offline: {error}")
        self._online.discard(backend_id)
        await self.registry.mark_offline(backend_id, error or "offline")

    def check_health(self) -> Dict[str, Any]:
        """Summary of the last known state of every probed backend."""
        return {
            "online": sorted(self._online),
            "backends": {
                backend_id: {
                    "online": result.online,
                    "error": result.error,
                    "checked_at": result.checked_at.isoformat() if result.checked_at else None,
                }
                for backend_id, result in self._last_results.items()
            },
        }
