"""Tests for the RESTlet remote adapter using httpx.MockTransport.

Tests cover:
- Update request shape (PUT, id + fields body, bearer token)
- Channel routing and the unconfigured interactive channel
- Status classification (429/5xx transient, 401/403 permission, 4xx rejected)
- 429 retried inside the call before surfacing
- success=false and non-JSON bodies
- Record reads and 404
"""

from __future__ import annotations

import json

import httpx
import pytest

from src.pricesync.sync.adapters.remote import UpdateChannel
from src.pricesync.sync.adapters.restlet import RestletRemoteAdapter
from src.pricesync.sync.errors import (
    RemoteConfigurationError,
    RemotePermissionError,
    RemoteRejectedError,
    RemoteTransientError,
)

PROGRAMMATIC_URL = "https://erp.test/restlet?script=pricing"
INTERACTIVE_URL = "https://erp.test/interactive"


def _adapter(handler, interactive_url: str | None = None) -> RestletRemoteAdapter:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        headers={"Authorization": "Bearer token-123"},
    )
    return RestletRemoteAdapter(
        PROGRAMMATIC_URL,
        interactive_url,
        client=client,
        rate_limit_attempts=3,
        backoff_multiplier=0,
    )


class TestUpdateRecord:
    async def test_request_shape(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "id": "1011"})

        adapter = _adapter(handler)
        result = await adapter.update_record(
            "1011", {"price_1_": 89.99, "price_1_5": 60.0}, UpdateChannel.PROGRAMMATIC
        )

        request = seen[0]
        assert request.method == "PUT"
        assert str(request.url) == PROGRAMMATIC_URL
        assert request.headers["Authorization"] == "Bearer token-123"
        assert json.loads(request.content) == {"id": "1011", "price_1_": 89.99, "price_1_5": 60.0}
        assert result.remote_id == "1011"
        assert result.channel == UpdateChannel.PROGRAMMATIC
        assert result.updated_fields == ["price_1_", "price_1_5"]

    async def test_interactive_channel_uses_its_own_endpoint(self):
        urls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(200, json={"success": True})

        adapter = _adapter(handler, interactive_url=INTERACTIVE_URL)
        await adapter.update_record("1011", {"price_1_": 1.0}, UpdateChannel.INTERACTIVE)
        assert urls == [INTERACTIVE_URL]

    async def test_unconfigured_channel(self):
        adapter = _adapter(lambda request: httpx.Response(200, json={"success": True}))
        with pytest.raises(RemoteConfigurationError):
            await adapter.update_record("1011", {"price_1_": 1.0}, UpdateChannel.INTERACTIVE)

    @pytest.mark.parametrize(
        "status_code, error_type",
        [
            (500, RemoteTransientError),
            (503, RemoteTransientError),
            (401, RemotePermissionError),
            (403, RemotePermissionError),
            (400, RemoteRejectedError),
            (404, RemoteRejectedError),
        ],
    )
    async def test_status_classification(self, status_code, error_type):
        adapter = _adapter(lambda request: httpx.Response(status_code, text="error"))
        with pytest.raises(error_type) as exc_info:
            await adapter.update_record("1011", {"price_1_": 1.0}, UpdateChannel.PROGRAMMATIC)
        assert exc_info.value.status_code == status_code
        assert exc_info.value.retryable is (error_type is RemoteTransientError)

    async def test_rate_limit_retried_then_succeeds(self):
        responses = [
            httpx.Response(429, text="slow down"),
            httpx.Response(429, text="slow down"),
            httpx.Response(200, json={"success": True}),
        ]
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return responses.pop(0)

        adapter = _adapter(handler)
        await adapter.update_record("1011", {"price_1_": 1.0}, UpdateChannel.PROGRAMMATIC)
        assert calls == 3

    async def test_rate_limit_exhausted(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(429, text="slow down")

        adapter = _adapter(handler)
        with pytest.raises(RemoteTransientError):
            await adapter.update_record("1011", {"price_1_": 1.0}, UpdateChannel.PROGRAMMATIC)
        assert calls == 3

    async def test_server_error_not_retried_in_call(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(502, text="bad gateway")

        adapter = _adapter(handler)
        with pytest.raises(RemoteTransientError):
            await adapter.update_record("1011", {"price_1_": 1.0}, UpdateChannel.PROGRAMMATIC)
        assert calls == 1

    async def test_success_false_is_rejected(self):
        adapter = _adapter(
            lambda request: httpx.Response(200, json={"success": False, "error": "Record locked"})
        )
        with pytest.raises(RemoteRejectedError, match="Record locked"):
            await adapter.update_record("1011", {"price_1_": 1.0}, UpdateChannel.PROGRAMMATIC)

    async def test_non_json_body_is_rejected(self):
        adapter = _adapter(lambda request: httpx.Response(200, text="<html>login</html>"))
        with pytest.raises(RemoteRejectedError):
            await adapter.update_record("1011", {"price_1_": 1.0}, UpdateChannel.PROGRAMMATIC)

    async def test_transport_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        adapter = _adapter(handler)
        with pytest.raises(RemoteTransientError):
            await adapter.update_record("1011", {"price_1_": 1.0}, UpdateChannel.PROGRAMMATIC)

    async def test_timeout_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        adapter = _adapter(handler)
        with pytest.raises(RemoteTransientError, match="timed out"):
            await adapter.update_record("1011", {"price_1_": 1.0}, UpdateChannel.PROGRAMMATIC)


class TestGetRecord:
    async def test_get_record(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"record": {"id": "1011", "price_1_": 89.99}})

        adapter = _adapter(handler)
        record = await adapter.get_record("1011")
        assert record == {"id": "1011", "price_1_": 89.99}
        assert seen[0].method == "GET"
        assert seen[0].url.params["id"] == "1011"

    async def test_get_missing_record(self):
        adapter = _adapter(lambda request: httpx.Response(404, text="not found"))
        assert await adapter.get_record("9999") is None


async def test_close_leaves_injected_client_open():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    adapter = RestletRemoteAdapter(PROGRAMMATIC_URL, client=client)
    await adapter.close()
    assert client.is_closed is False
    await client.aclose()
