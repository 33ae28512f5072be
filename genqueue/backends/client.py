"""
HTTP client for Stable Diffusion WebUI style generation backends.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from ..core.exceptions import NetworkError, ProtocolError
from ..jobs.models import BackendInstance

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    """Output of a finished generation call."""
    images: List[str]
    parameters: Dict[str, Any] = field(default_factory=dict)
    info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProgressStatus:
    """Snapshot of a running generation."""
    progress: float
    eta_relative: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class ExecutionClient(ABC):
    """Operations the queue needs from a backend."""

    @abstractmethod
    async def submit(self, payload: Dict[str, Any]) -> GenerationResult:
        """Run a generation to completion. Cancellable."""
        pass

    @abstractmethod
    async def poll_status(self, timeout: float) -> ProgressStatus:
        pass

    @abstractmethod
    async def interrupt(self) -> None:
        pass

    @abstractmethod
    async def probe(self, timeout: float) -> None:
        """Liveness check. Raises on failure."""
        pass

    async def close(self):
        pass


class SdExecutionClient(ExecutionClient):
    """
    Client for the ``/sdapi/v1`` HTTP API.

    Transport failures and timeouts raise :class:`NetworkError`; non-2xx
    responses and undecodable bodies raise :class:`ProtocolError`.
    """

    def __init__(self, backend: BackendInstance):
        self.backend = backend
        self.base_url = backend.endpoint.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    def _auth_kwargs(self) -> Dict[str, Any]:
        auth = self.backend.auth or {}
        if auth.get("user"):
            return {"auth": aiohttp.BasicAuth(auth["user"], auth.get("password", ""))}
        if auth.get("header"):
            return {"headers": {"Authorization": auth["header"]}}
        return {}

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            # No blanket timeout: a generation may legitimately take minutes
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
        return self._session

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        prefix: str,
        json_body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        request_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None
        try:
            async with session.request(
                method, url, json=json_body, timeout=request_timeout, **self._auth_kwargs()
            ) as response:
                try:
                    text = await response.text()
                except UnicodeDecodeError as e:
                    raise ProtocolError(prefix, response.status, response.reason, "Response is not valid text") from e
                body = _parse_body(text)
                if response.status >= 400:
                    detail = body if body is not None else text[:200]
                    raise ProtocolError(prefix, response.status, response.reason, detail)
                if body is None and text:
                    raise ProtocolError(prefix, response.status, response.reason, "Response is not JSON")
                return body
        except asyncio.TimeoutError as e:
            raise NetworkError(f"{prefix}: timed out after {timeout}s") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"{prefix}: {e}") from e

    async def submit(self, payload: Dict[str, Any]) -> GenerationResult:
        task_type = payload.get("type", "txt2img")
        if task_type not in ("txt2img", "img2img"):
            raise ValueError(f"Unsupported task type: {task_type}")

        body = await self._request(
            "POST",
            f"/sdapi/v1/{task_type}",
            f"Generating image failed on {self.backend.name}",
            json_body=payload.get("params", {}),
        )
        if not isinstance(body, dict):
            raise ProtocolError(f"Generating image failed on {self.backend.name}", body=body)

        info = body.get("info") or {}
        if isinstance(info, str):
            try:
                info = json.loads(info)
            except ValueError:
                info = {"raw": info}

        return GenerationResult(
            images=body.get("images") or [],
            parameters=body.get("parameters") or {},
            info=info,
        )

    async def poll_status(self, timeout: float) -> ProgressStatus:
        body = await self._request(
            "GET",
            "/sdapi/v1/progress",
            f"Getting progress failed on {self.backend.name}",
            timeout=timeout,
        )
        if not isinstance(body, dict):
            raise ProtocolError(f"Getting progress failed on {self.backend.name}", body=body)
        return ProgressStatus(
            progress=float(body.get("progress") or 0.0),
            eta_relative=body.get("eta_relative"),
            raw=body,
        )

    async def interrupt(self) -> None:
        await self._request(
            "POST",
            "/sdapi/v1/interrupt",
            f"Interrupting failed on {self.backend.name}",
            timeout=10,
        )

    async def probe(self, timeout: float) -> None:
        await self._request(
            "GET",
            "/sdapi/v1/memory",
            f"Probing {self.backend.name} failed",
            timeout=timeout,
        )


def _parse_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def default_client_factory(backend: BackendInstance) -> ExecutionClient:
    return SdExecutionClient(backend)
