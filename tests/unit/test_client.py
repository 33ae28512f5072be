"""
Unit tests for the backend HTTP client and its error classification.
"""

import asyncio
import json
import pytest
import aiohttp
from unittest.mock import AsyncMock, MagicMock

from genqueue.backends.client import SdExecutionClient
from genqueue.core.exceptions import NetworkError, ProtocolError
from genqueue.jobs.models import BackendInstance
from tests.conftest import TEST_ENDPOINT


class FakeResponse:
    """Async context manager mimicking an aiohttp response."""

    def __init__(self, status=200, body=None, text=None, reason="OK"):
        self.status = status
        self.reason = reason
        self._text = text if text is not None else json.dumps(body)

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class UndecodableResponse(FakeResponse):
    """Response whose body is not valid UTF-8."""

    async def text(self):
        return b"\xff\xfe{".decode("utf-8")


def make_client(response=None, error=None, auth=None):
    backend = BackendInstance(backend_id="b1", name="GPU 1", endpoint=TEST_ENDPOINT + "/", auth=auth)
    client = SdExecutionClient(backend)
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    if error is not None:
        session.request.side_effect = error
    else:
        session.request.return_value = response
    client._session = session
    return client, session


class TestProtocolError:
    """Test error message formatting and offline classification."""

    def test_error_with_details(self):
        error = ProtocolError("Generating image failed on GPU 1", 500, "Internal Server Error",
                              {"error": "OutOfMemoryError", "errors": "CUDA out of memory"})

        assert str(error) == (
            "Generating image failed on GPU 1: 500 Internal Server Error: OutOfMemoryError - CUDA out of memory"
        )
        assert not error.marks_offline

    def test_validation_detail_list(self):
        error = ProtocolError("Generating image failed on GPU 1", 422, "Unprocessable Entity",
                              {"detail": [{"msg": "field required"}, {"msg": "value is not a valid integer"}]})

        assert str(error).endswith(": field required, value is not a valid integer")

    @pytest.mark.parametrize("status_code", [401, 403, 404])
    def test_auth_and_missing_endpoint_mark_offline(self, status_code):
        assert ProtocolError("Probing failed", status_code, "Nope").marks_offline

    def test_network_error_marks_offline(self):
        assert NetworkError("connection refused").marks_offline


class TestSdExecutionClient:
    """Test request building and response mapping."""

    @pytest.mark.asyncio
    async def test_submit_parses_result(self):
        body = {"images": ["aW1n"], "parameters": {"steps": 30}, "info": json.dumps({"seed": 42})}
        client, session = make_client(FakeResponse(body=body))

        result = await client.submit({"type": "txt2img", "params": {"prompt": "cat"}})

        assert result.images == ["aW1n"]
        assert result.info == {"seed": 42}
        method, url = session.request.call_args.args
        assert (method, url) == ("POST", f"{TEST_ENDPOINT}/sdapi/v1/txt2img")
        assert session.request.call_args.kwargs["json"] == {"prompt": "cat"}
        assert session.request.call_args.kwargs["timeout"] is None

    @pytest.mark.asyncio
    async def test_img2img_endpoint(self):
        client, session = make_client(FakeResponse(body={"images": ["aW1n"]}))

        await client.submit({"type": "img2img", "params": {"init_images": ["aW1n"]}})

        assert session.request.call_args.args[1].endswith("/sdapi/v1/img2img")

    @pytest.mark.asyncio
    async def test_unsupported_type_rejected(self):
        client, _ = make_client(FakeResponse(body={}))

        with pytest.raises(ValueError):
            await client.submit({"type": "upscale"})

    @pytest.mark.asyncio
    async def test_error_status_raises_protocol_error(self):
        body = {"error": "OutOfMemoryError", "errors": "CUDA out of memory"}
        client, _ = make_client(FakeResponse(500, body=body, reason="Internal Server Error"))

        with pytest.raises(ProtocolError) as exc_info:
            await client.submit({"type": "txt2img", "params": {}})

        assert exc_info.value.status_code == 500
        assert "CUDA out of memory" in str(exc_info.value)
        assert not exc_info.value.marks_offline

    @pytest.mark.asyncio
    async def test_non_json_body_raises_protocol_error(self):
        client, _ = make_client(FakeResponse(text="<html>gateway</html>"))

        with pytest.raises(ProtocolError, match="not JSON"):
            await client.poll_status(timeout=5)

    @pytest.mark.asyncio
    async def test_undecodable_body_raises_protocol_error(self):
        client, _ = make_client(UndecodableResponse())

        with pytest.raises(ProtocolError, match="not valid text") as exc_info:
            await client.probe(timeout=5)

        assert exc_info.value.status_code == 200
        assert isinstance(exc_info.value.__cause__, UnicodeDecodeError)

    @pytest.mark.asyncio
    async def test_connection_failure_raises_network_error(self):
        client, _ = make_client(error=aiohttp.ClientConnectionError("connection refused"))

        with pytest.raises(NetworkError, match="connection refused"):
            await client.probe(timeout=5)

    @pytest.mark.asyncio
    async def test_timeout_raises_network_error(self):
        client, _ = make_client(error=asyncio.TimeoutError())

        with pytest.raises(NetworkError, match="timed out after 5s"):
            await client.poll_status(timeout=5)

    @pytest.mark.asyncio
    async def test_poll_status(self):
        client, session = make_client(FakeResponse(body={"progress": 0.42, "eta_relative": 3.5}))

        status = await client.poll_status(timeout=15)

        assert status.progress == 0.42
        assert status.eta_relative == 3.5
        assert session.request.call_args.kwargs["timeout"].total == 15

    @pytest.mark.asyncio
    async def test_basic_auth(self):
        client, session = make_client(FakeResponse(body={}), auth={"user": "sd", "password": "pw"})

        await client.probe(timeout=5)

        assert session.request.call_args.kwargs["auth"] == aiohttp.BasicAuth("sd", "pw")

    @pytest.mark.asyncio
    async def test_header_auth(self):
        client, session = make_client(FakeResponse(body={}), auth={"header": "Bearer token"})

        await client.interrupt()

        assert session.request.call_args.kwargs["headers"] == {"Authorization": "Bearer token"}

    @pytest.mark.asyncio
    async def test_close(self):
        client, session = make_client(FakeResponse(body={}))

        await client.close()

        session.close.assert_awaited_once()
