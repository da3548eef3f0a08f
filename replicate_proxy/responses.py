from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse, Response

from replicate_proxy.errors import ClassifiedError


def cors_headers(allowed_methods: str = "GET, POST, OPTIONS") -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Headers": "Content-Type",
        "Access-Control-Allow-Methods": allowed_methods,
    }


def preflight_response(allowed_methods: str = "GET, POST, OPTIONS") -> Response:
    return Response(
        status_code=200,
        content=b"",
        media_type="application/json",
        headers=cors_headers(allowed_methods),
    )


def json_response(
    content: Any, status_code: int = 200, allowed_methods: str = "GET, POST, OPTIONS"
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=content,
        headers=cors_headers(allowed_methods),
    )


def success_response(
    upstream_body: Any, allowed_methods: str = "GET, POST, OPTIONS"
) -> JSONResponse:
    # Upstream payloads are relayed verbatim; only errors are re-shaped.
    return json_response(upstream_body, 200, allowed_methods)


def error_response(
    error: ClassifiedError, allowed_methods: str = "GET, POST, OPTIONS"
) -> JSONResponse:
    return json_response(error.to_envelope(), error.http_status, allowed_methods)
