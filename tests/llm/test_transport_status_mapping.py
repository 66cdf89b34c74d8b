# SPDX-License-Identifier: Apache-2.0
"""
HTTP transport — status mapping and streaming.

Covers:
  • 1:1 status → error kind table; unmapped 4xx/5xx fallbacks
  • Retry-After hint, truncated body in details
  • Network failures → TransientNetwork, client timeouts → DeadlineExceeded
  • Streaming yields chunks; error statuses raise before any chunk
"""

import httpx
import pytest

from unimodel_sdk.llm.errors import (
    AuthError,
    BadGateway,
    BadRequest,
    Conflict,
    DeadlineExceeded,
    GatewayTimeout,
    InternalServerError,
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
from unimodel_sdk.llm.transport import (
    HttpRequest,
    HttpResponse,
    HttpxTransport,
    error_for_status,
    parse_retry_after_ms,
)

pytestmark = pytest.mark.asyncio


@pytest.mark.parametrize(
    "status, cls",
    [
        (400, BadRequest),
        (401, AuthError),
        (403, PermissionDenied),
        (404, NotFound),
        (408, RequestTimeout),
        (409, Conflict),
        (413, PayloadTooLarge),
        (422, UnprocessableEntity),
        (429, ResourceExhausted),
        (500, InternalServerError),
        (502, BadGateway),
        (503, Unavailable),
        (504, GatewayTimeout),
        (418, BadRequest),
        (507, Unavailable),
    ],
)
async def test_status_table(status, cls):
    err = error_for_status(status)
    assert type(err) is cls
    assert err.status_code == status
    assert isinstance(err.code, str) and err.code


async def test_error_carries_retry_after_and_truncated_body():
    err = error_for_status(429, body="x" * 5000, headers={"Retry-After": "2"})
    assert err.retry_after_ms == 2000
    assert len(err.details["body"]) == 2048


async def test_retry_after_parsing():
    assert parse_retry_after_ms(None) is None
    assert parse_retry_after_ms({"retry-after": "0.5"}) == 500
    assert parse_retry_after_ms({"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"}) is None


async def test_execute_success():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer k"
        assert request.content == b'{"q": 1}'
        return httpx.Response(200, json={"ok": True})

    transport = HttpxTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    resp = await transport.execute(
        HttpRequest(url="https://api.test/x", headers={"Authorization": "Bearer k"}, body='{"q": 1}')
    )

    assert resp.is_successful
    assert resp.json() == {"ok": True}
    await transport.close()


@pytest.mark.parametrize("status, cls", [(401, AuthError), (429, ResourceExhausted), (503, Unavailable)])
async def test_execute_maps_error_status(status, cls):
    transport = HttpxTransport(
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(status, text="nope")))
    )
    with pytest.raises(cls) as excinfo:
        await transport.execute(HttpRequest(url="https://api.test/x"))
    assert excinfo.value.details["body"] == "nope"


async def test_network_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    transport = HttpxTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(TransientNetwork):
        await transport.execute(HttpRequest(url="https://api.test/x"))


async def test_client_timeouts_are_deadline_exceeded():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    transport = HttpxTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(DeadlineExceeded):
        await transport.execute(HttpRequest(url="https://api.test/x"))


async def test_stream_yields_text_chunks():
    transport = HttpxTransport(
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, content=b"data: 1\n\ndata: 2\n\n"))
        )
    )
    text = "".join([chunk async for chunk in transport.stream(HttpRequest(url="https://api.test/s"))])
    assert text == "data: 1\n\ndata: 2\n\n"


async def test_stream_error_status_raises_before_chunks():
    transport = HttpxTransport(
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(500, text='{"code":"InternalError"}'))
        )
    )
    received = []
    with pytest.raises(InternalServerError) as excinfo:
        async for chunk in transport.stream(HttpRequest(url="https://api.test/s")):
            received.append(chunk)
    assert received == []
    assert "InternalError" in excinfo.value.details["body"]


async def test_response_json_malformed():
    with pytest.raises(MalformedResponse):
        HttpResponse(status_code=200, body="<html>").json()
