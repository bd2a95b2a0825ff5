"""Remote adapter for the ERP's RESTlet endpoints.

The programmatic channel writes through a RESTlet, which runs outside the
UI context and therefore never fires the Remote's change webhook. The
interactive channel is a separately configured endpoint that does.

HTTP 429 is retried inside the call (tenacity, exponential backoff)
before surfacing as RemoteTransientError. Error classification:
- timeouts, transport errors, 429, 5xx -> RemoteTransientError
- 401 / 403                            -> RemotePermissionError
- other 4xx, or ``success: false``     -> RemoteRejectedError
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from src.pricesync.sync.adapters.remote import RemoteAdapter, RemoteUpdateResult, UpdateChannel
from src.pricesync.sync.errors import (
    RemoteConfigurationError,
    RemoteError,
    RemotePermissionError,
    RemoteRejectedError,
    RemoteTransientError,
)

logger = structlog.get_logger(__name__)


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, RemoteTransientError) and exc.status_code == 429


def _error_for_status(response: httpx.Response) -> RemoteError:
    code = response.status_code
    detail = f"Remote returned HTTP {code}: {response.text[:500]}"
    if code == 429 or code >= 500:
        return RemoteTransientError(detail, status_code=code)
    if code in (401, 403):
        return RemotePermissionError(detail, status_code=code)
    return RemoteRejectedError(detail, status_code=code)


class RestletRemoteAdapter(RemoteAdapter):
    """RemoteAdapter over httpx.

    Args:
        programmatic_url: RESTlet URL used for PROGRAMMATIC updates and reads.
        interactive_url: Endpoint for INTERACTIVE updates, None if unavailable.
        api_token: Bearer token sent with every request.
        timeout: Per-request timeout in seconds.
        rate_limit_attempts: Total attempts when the Remote answers 429.
        backoff_multiplier: tenacity exponential backoff multiplier (seconds).
        client: Optional pre-built httpx.AsyncClient (tests inject a MockTransport).
    """

    def __init__(
        self,
        programmatic_url: str,
        interactive_url: str | None = None,
        api_token: str = "",
        *,
        timeout: float = 30.0,
        rate_limit_attempts: int = 3,
        backoff_multiplier: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._urls = {
            UpdateChannel.PROGRAMMATIC: programmatic_url,
            UpdateChannel.INTERACTIVE: interactive_url,
        }
        self._rate_limit_attempts = rate_limit_attempts
        self._backoff_multiplier = backoff_multiplier
        headers = {"Content-Type": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = client or httpx.AsyncClient(headers=headers, timeout=timeout)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._rate_limit_attempts),
            wait=wait_exponential(multiplier=self._backoff_multiplier, min=0, max=10),
            retry=retry_if_exception(_is_rate_limited),
            reraise=True,
        )

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteTransientError(f"Remote request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise RemoteTransientError(f"Remote transport error: {exc}") from exc
        if response.status_code >= 400:
            raise _error_for_status(response)
        return response

    async def update_record(
        self,
        remote_id: str,
        fields: dict[str, Any],
        channel: UpdateChannel,
    ) -> RemoteUpdateResult:
        """PUT the mapped field values for one Remote record.

        Raises:
            RemoteConfigurationError: The channel has no configured endpoint.
            RemoteTransientError: Retryable failure.
            RemoteRejectedError / RemotePermissionError: Permanent failure.
        """
        url = self._urls.get(channel)
        if not url:
            raise RemoteConfigurationError(f"No endpoint configured for {channel.value} updates")

        body = {"id": str(remote_id), **fields}
        async for attempt in self._retrying():
            with attempt:
                response = await self._send("PUT", url, json=body)

        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteRejectedError(
                f"Remote returned a non-JSON body: {response.text[:200]}",
                status_code=response.status_code,
            ) from exc

        if not isinstance(data, dict) or not data.get("success", False):
            error = data.get("error") if isinstance(data, dict) else None
            raise RemoteRejectedError(f"Remote rejected update: {error or 'Unknown error'}")

        logger.info(
            "remote.record_updated",
            remote_id=str(remote_id),
            channel=channel.value,
            fields=sorted(fields),
        )
        return RemoteUpdateResult(
            remote_id=str(data.get("id", remote_id)),
            channel=channel,
            updated_fields=sorted(fields),
            response=data,
        )

    async def get_record(self, remote_id: str) -> dict[str, Any] | None:
        url = self._urls[UpdateChannel.PROGRAMMATIC]
        async for attempt in self._retrying():
            with attempt:
                try:
                    response = await self._send("GET", url, params={"id": str(remote_id)})
                except RemoteRejectedError as exc:
                    if exc.status_code == 404:
                        return None
                    raise
        data = response.json()
        if isinstance(data, dict) and "record" in data:
            return data["record"]
        return data
