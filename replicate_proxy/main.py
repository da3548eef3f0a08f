from __future__ import annotations

import logging
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.responses import Response

from replicate_proxy import __version__
from replicate_proxy.checkout import CheckoutCreator
from replicate_proxy.dispatcher import PredictionDispatcher
from replicate_proxy.gateway.audit import JsonlAuditLogger
from replicate_proxy.resolver import LEGACY_ENTRY_POINT, V2_ENTRY_POINT, EntryPoint
from replicate_proxy.settings import get_settings
from replicate_proxy.upstream import ReplicateClient, build_http_client

app = FastAPI(
    title="Replicate Proxy",
    description="Keeps Replicate and Stripe credentials server-side for browser clients.",
    version=__version__,
)

logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "OPTIONS", "PUT", "PATCH", "DELETE", "HEAD"]


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    http_client = build_http_client(
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        read_timeout_seconds=settings.upstream_read_timeout_seconds,
        write_timeout_seconds=settings.upstream_write_timeout_seconds,
        pool_timeout_seconds=settings.upstream_pool_timeout_seconds,
    )
    replicate_token = settings.replicate_token_value
    stripe_secret_key = settings.stripe_secret_key_value
    audit_logger = JsonlAuditLogger(
        path=settings.audit_log_path,
        enabled=settings.audit_log_enabled,
        secrets=[replicate_token, stripe_secret_key],
    )
    app.state.settings = settings
    app.state.http_client = http_client
    app.state.replicate_client = ReplicateClient(settings.replicate_base_url, http_client)
    app.state.replicate_token = replicate_token
    app.state.stripe_secret_key = stripe_secret_key
    app.state.audit_logger = audit_logger
    if replicate_token is None:
        logger.warning("startup REPLICATE_TOKEN is not configured; prediction requests will fail")
    logger.info(
        "startup complete replicate_base_url=%s replicate_token_configured=%s "
        "stripe_configured=%s audit_log_enabled=%s audit_log_path=%s",
        settings.replicate_base_url,
        replicate_token is not None,
        stripe_secret_key is not None,
        settings.audit_log_enabled,
        settings.audit_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    replicate_client: ReplicateClient | None = getattr(app.state, "replicate_client", None)
    if replicate_client is not None:
        await replicate_client.close()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


def _audit_hook() -> Callable[[dict[str, Any]], None] | None:
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is None or not audit_logger.enabled:
        return None
    return audit_logger.log


def _build_dispatcher(entry_point: EntryPoint) -> PredictionDispatcher:
    return PredictionDispatcher(
        entry_point=entry_point,
        client=app.state.replicate_client,
        token=app.state.replicate_token,
        audit_hook=_audit_hook(),
    )


async def _dispatch(request: Request, entry_point: EntryPoint) -> Response:
    dispatcher = _build_dispatcher(entry_point)
    raw_body = await request.body() if request.method == "POST" else None
    return await dispatcher.handle(
        request.method,
        query=dict(request.query_params),
        raw_body=raw_body,
    )


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.api_route("/api/replicate", methods=PROXY_METHODS)
async def replicate_v2(request: Request) -> Response:
    return await _dispatch(request, V2_ENTRY_POINT)


@app.api_route("/api/replicate/legacy", methods=PROXY_METHODS)
async def replicate_legacy(request: Request) -> Response:
    return await _dispatch(request, LEGACY_ENTRY_POINT)


@app.api_route("/api/checkout", methods=PROXY_METHODS)
async def checkout(request: Request) -> Response:
    creator = CheckoutCreator(
        client=app.state.http_client,
        base_url=app.state.settings.stripe_base_url,
        secret_key=app.state.stripe_secret_key,
    )
    raw_body = await request.body() if request.method == "POST" else None
    return await creator.handle(request.method, raw_body=raw_body)


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("replicate_proxy.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
