from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from replicate_proxy.resolver import ModelInvocation, prediction_url

logger = logging.getLogger("uvicorn.error")

# Status reported when no usable upstream response exists (network failure or
# an unparseable success body).
SYNTHETIC_FAILURE_STATUS = 502


@dataclass(slots=True)
class UpstreamResult:
    ok: bool
    status: int
    body: Any = field(default_factory=dict)
    error_type: str | None = None


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_message = str(exc).strip() or repr(exc)
    return {
        "error": error_message,
        "error_type": exc.__class__.__name__ or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def parse_json_body(response: httpx.Response) -> Any | None:
    if not response.content:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


async def send_once(client: httpx.AsyncClient, request: httpx.Request) -> UpstreamResult:
    """Send ``request`` exactly once and never raise for transport problems."""
    started = time.perf_counter()
    try:
        response = await client.send(request)
    except httpx.RequestError as exc:
        error_details = _request_error_details(exc)
        logger.warning(
            "upstream_request_error method=%s url=%s error_type=%s is_timeout=%s error=%s",
            request.method,
            request.url,
            error_details["error_type"],
            error_details["is_timeout"],
            error_details["error"],
        )
        return UpstreamResult(
            ok=False,
            status=SYNTHETIC_FAILURE_STATUS,
            body={},
            error_type=error_details["error_type"],
        )

    latency_ms = (time.perf_counter() - started) * 1000.0
    parsed = parse_json_body(response)
    ok = response.is_success
    status = response.status_code
    if parsed is None:
        if ok:
            logger.warning(
                "upstream_invalid_json method=%s url=%s status=%d",
                request.method,
                request.url,
                status,
            )
            ok = False
            status = SYNTHETIC_FAILURE_STATUS
        parsed = {}
    logger.info(
        "upstream_response method=%s url=%s status=%d latency_ms=%.2f",
        request.method,
        request.url,
        response.status_code,
        latency_ms,
    )
    return UpstreamResult(ok=ok, status=status, body=parsed)


def build_http_client(
    *,
    connect_timeout_seconds: float = 5.0,
    read_timeout_seconds: float = 120.0,
    write_timeout_seconds: float = 30.0,
    pool_timeout_seconds: float = 5.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, connect_timeout_seconds),
            read=max(0.1, read_timeout_seconds),
            write=max(0.1, write_timeout_seconds),
            pool=max(0.1, pool_timeout_seconds),
        ),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        transport=transport,
    )


class ReplicateClient:
    def __init__(self, base_url: str, client: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client

    @staticmethod
    def _auth_headers(token: str) -> dict[str, str]:
        return {"Authorization": f"Token {token}"}

    async def invoke(self, invocation: ModelInvocation, token: str) -> UpstreamResult:
        headers = {
            **self._auth_headers(token),
            "Content-Type": "application/json",
            **invocation.headers,
        }
        request = self.client.build_request(
            "POST",
            invocation.url,
            json=invocation.payload,
            headers=headers,
        )
        return await send_once(self.client, request)

    async def poll(self, prediction_id: str, token: str) -> UpstreamResult:
        request = self.client.build_request(
            "GET",
            prediction_url(self.base_url, prediction_id),
            headers=self._auth_headers(token),
        )
        return await send_once(self.client, request)

    async def close(self) -> None:
        await self.client.aclose()
