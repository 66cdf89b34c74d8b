# unimodel_sdk/llm/transport.py
# SPDX-License-Identifier: Apache-2.0
"""
HTTP transport for provider adapters.

The transport is deliberately dumb: it issues a request and returns either a
complete response body (`execute`) or an async sequence of raw text chunks as
they arrive on the wire (`stream`). SSE framing is handled one layer up by
`unimodel_sdk.llm.sse`, and retry/timeout policy by
`unimodel_sdk.llm.execution`.

Errors are normalized at this boundary:
    - connect/read/write failures  -> TransientNetwork
    - client-side timeouts         -> DeadlineExceeded
    - 4xx/5xx responses            -> error_for_status(...) (1:1 per status)

Usage
-----
    transport = HttpxTransport()
    resp = await transport.execute(HttpRequest(url=..., method="GET"))
    async for text in transport.stream(HttpRequest(url=..., body="{...}")):
        ...
    await transport.close()
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Protocol, Type, runtime_checkable

import httpx

from unimodel_sdk.llm.errors import (
    AuthError,
    BadGateway,
    BadRequest,
    Conflict,
    DeadlineExceeded,
    GatewayTimeout,
    InternalServerError,
    LLMAdapterError,
    MalformedResponse,
    NotFound,
    PayloadTooLarge,
    PermissionDenied,
    RequestTimeout,
    ResourceExhausted,
    TransientNetwork,
    Unavailable,
    UnprocessableEntity,
)

LOG = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_S = 30.0
DEFAULT_READ_TIMEOUT_S = 300.0

# Error bodies are truncated before being attached to exceptions.
_MAX_ERROR_BODY_CHARS = 2048


# =============================================================================
# Status mapping
# =============================================================================

STATUS_ERRORS: Mapping[int, Type[LLMAdapterError]] = {
    400: BadRequest,
    401: AuthError,
    403: PermissionDenied,
    404: NotFound,
    408: RequestTimeout,
    409: Conflict,
    413: PayloadTooLarge,
    422: UnprocessableEntity,
    429: ResourceExhausted,
    500: InternalServerError,
    502: BadGateway,
    503: Unavailable,
    504: GatewayTimeout,
}


def parse_retry_after_ms(headers: Optional[Mapping[str, str]]) -> Optional[int]:
    """Best-effort Retry-After (seconds) extraction; returns milliseconds."""
    if not headers:
        return None
    val = headers.get("retry-after") or headers.get("Retry-After")
    if val is None:
        return None
    try:
        seconds = float(str(val).strip())
    except ValueError:
        return None
    return max(0, int(seconds * 1000))


def error_for_status(
    status_code: int,
    message: Optional[str] = None,
    *,
    body: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> LLMAdapterError:
    """
    Map an HTTP status to its error kind.

    Statuses without a dedicated kind fall back to BadRequest (4xx) or
    Unavailable (5xx and anything else).
    """
    cls = STATUS_ERRORS.get(status_code)
    if cls is None:
        cls = BadRequest if 400 <= status_code < 500 else Unavailable
    details: Dict[str, Any] = {}
    if body:
        details["body"] = body[:_MAX_ERROR_BODY_CHARS]
    return cls(
        message or f"HTTP request failed with status {status_code}",
        status_code=status_code,
        retry_after_ms=parse_retry_after_ms(headers),
        details=details,
    )


# =============================================================================
# Request / response values
# =============================================================================

@dataclass(frozen=True)
class HttpRequest:
    url: str
    method: str = "POST"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[str] = None


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    body: str
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_successful(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        try:
            return json.loads(self.body)
        except (TypeError, ValueError) as e:
            raise MalformedResponse(
                f"response body is not valid JSON: {e}",
                status_code=self.status_code,
            ) from e


@runtime_checkable
class HttpTransport(Protocol):
    """Contract consumed by provider adapters."""

    async def execute(self, request: HttpRequest) -> HttpResponse: ...

    def stream(self, request: HttpRequest) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


# =============================================================================
# httpx implementation
# =============================================================================

class HttpxTransport:
    """
    `HttpTransport` backed by `httpx.AsyncClient`.

    Parameters
    ----------
    client:
        Pre-configured AsyncClient (proxies, custom transports, limits).
        When omitted one is created and owned by this transport.
    connect_timeout, read_timeout:
        Socket-level timeouts in seconds for an owned client. Overall call
        budgets belong in ExecutionConfig.timeout.
    """

    def __init__(
        self,
        *,
        client: Optional[httpx.AsyncClient] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_S,
        read_timeout: float = DEFAULT_READ_TIMEOUT_S,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(read_timeout, connect=connect_timeout),
        )

    @staticmethod
    def _translate(err: httpx.HTTPError, request: HttpRequest) -> LLMAdapterError:
        if isinstance(err, httpx.TimeoutException):
            return DeadlineExceeded(
                f"HTTP {request.method} timed out: {type(err).__name__}",
            )
        return TransientNetwork(
            f"HTTP transport error: {err}" if str(err) else f"HTTP transport error: {type(err).__name__}",
        )

    async def execute(self, request: HttpRequest) -> HttpResponse:
        LOG.debug("HTTP %s %s", request.method, request.url)
        try:
            resp = await self._client.request(
                request.method,
                request.url,
                headers=dict(request.headers),
                content=request.body,
            )
        except httpx.HTTPError as e:
            raise self._translate(e, request) from e

        if resp.status_code >= 400:
            LOG.error("HTTP error: status=%d url=%s", resp.status_code, request.url)
            raise error_for_status(resp.status_code, body=resp.text, headers=resp.headers)

        return HttpResponse(
            status_code=resp.status_code,
            body=resp.text,
            headers=dict(resp.headers),
        )

    async def stream(self, request: HttpRequest) -> AsyncIterator[str]:
        """
        Yield decoded text chunks as they arrive.

        Closing the returned iterator early (or cancelling the consuming
        task) exits the `client.stream` context, which closes the response
        and releases the connection.
        """
        LOG.debug("HTTP %s %s (stream)", request.method, request.url)
        try:
            async with self._client.stream(
                request.method,
                request.url,
                headers=dict(request.headers),
                content=request.body,
            ) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    LOG.error("HTTP error: status=%d url=%s", resp.status_code, request.url)
                    raise error_for_status(resp.status_code, body=body, headers=resp.headers)
                async for text in resp.aiter_text():
                    if text:
                        yield text
        except httpx.HTTPError as e:
            raise self._translate(e, request) from e

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "STATUS_ERRORS",
    "error_for_status",
    "parse_retry_after_ms",
    "HttpRequest",
    "HttpResponse",
    "HttpTransport",
    "HttpxTransport",
]
