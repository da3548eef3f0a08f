from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from replicate_proxy.resolver import ModelInvocation
from replicate_proxy.upstream import (
    SYNTHETIC_FAILURE_STATUS,
    ReplicateClient,
    build_http_client,
    send_once,
)

BASE_URL = "https://api.replicate.com/v1"


def _client(handler: Any) -> ReplicateClient:
    return ReplicateClient(
        BASE_URL, httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


def _invocation(**overrides: Any) -> ModelInvocation:
    fields: dict[str, Any] = {
        "url": f"{BASE_URL}/models/bria-ai/bria-rmbg-2.0/predictions",
        "payload": {"input": {"image": "http://x"}},
        "operation": "model",
        "model": "bria-ai/bria-rmbg-2.0",
        "headers": {"Prefer": "wait"},
    }
    fields.update(overrides)
    return ModelInvocation(**fields)


def test_invoke_sends_token_payload_and_extra_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": "p1", "status": "starting"})

    client = _client(handler)
    result = asyncio.run(client.invoke(_invocation(), "tok"))
    asyncio.run(client.close())

    assert result.ok is True
    assert result.status == 201
    assert result.body == {"id": "p1", "status": "starting"}
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["authorization"] == "Token tok"
    assert request.headers["prefer"] == "wait"
    assert request.headers["content-type"] == "application/json"
    assert json.loads(request.content) == {"input": {"image": "http://x"}}


def test_poll_gets_prediction_by_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert str(request.url) == f"{BASE_URL}/predictions/abc123"
        assert request.headers["authorization"] == "Token tok"
        return httpx.Response(200, json={"id": "abc123", "status": "processing"})

    client = _client(handler)
    result = asyncio.run(client.poll("abc123", "tok"))
    asyncio.run(client.close())
    assert result.ok is True
    assert result.body["status"] == "processing"


def test_error_status_is_returned_not_raised() -> None:
    client = _client(lambda _request: httpx.Response(402, json={"detail": "pay up"}))
    result = asyncio.run(client.invoke(_invocation(), "tok"))
    asyncio.run(client.close())
    assert result.ok is False
    assert result.status == 402
    assert result.body == {"detail": "pay up"}


def test_unparseable_error_body_degrades_to_empty_mapping() -> None:
    client = _client(lambda _request: httpx.Response(500, content=b"<html>oops</html>"))
    result = asyncio.run(client.invoke(_invocation(), "tok"))
    asyncio.run(client.close())
    assert result.ok is False
    assert result.status == 500
    assert result.body == {}


def test_unparseable_success_body_becomes_synthetic_failure(caplog: Any) -> None:
    client = _client(lambda _request: httpx.Response(200, content=b"not json"))
    with caplog.at_level(logging.WARNING):
        result = asyncio.run(client.invoke(_invocation(), "tok"))
    asyncio.run(client.close())
    assert result.ok is False
    assert result.status == SYNTHETIC_FAILURE_STATUS
    assert result.body == {}
    assert "upstream_invalid_json" in caplog.text


def test_transport_error_becomes_synthetic_failure(caplog: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with caplog.at_level(logging.WARNING):
        result = asyncio.run(client.invoke(_invocation(), "secret-token"))
    asyncio.run(client.close())
    assert result.ok is False
    assert result.status == SYNTHETIC_FAILURE_STATUS
    assert result.body == {}
    assert result.error_type == "ConnectError"
    assert "upstream_request_error" in caplog.text
    assert "method=POST" in caplog.text
    assert "is_timeout=False" in caplog.text
    assert "bria-rmbg-2.0/predictions" in caplog.text
    assert "secret-token" not in caplog.text


def test_send_once_issues_exactly_one_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503, json={})

    async def _run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            request = client.build_request("GET", f"{BASE_URL}/predictions/x")
            result = await send_once(client, request)
            assert result.status == 503

    asyncio.run(_run())
    assert len(calls) == 1


def test_build_http_client_applies_timeouts() -> None:
    client = build_http_client(connect_timeout_seconds=1.5, read_timeout_seconds=60.0)
    assert client.timeout.connect == 1.5
    assert client.timeout.read == 60.0
    asyncio.run(client.aclose())
