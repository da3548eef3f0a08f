from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Mapping

from fastapi.responses import Response

from replicate_proxy.errors import (
    ClassifiedError,
    ConfigurationError,
    ProxyError,
    UpstreamOperation,
    ValidationError,
    classify_exception,
    classify_upstream_failure,
)
from replicate_proxy.resolver import EntryPoint, ModelInvocation, resolve
from replicate_proxy.responses import error_response, preflight_response, success_response
from replicate_proxy.shapes import (
    ExplicitModelRequest,
    PollRequest,
    RequestShape,
    classify_poll,
    classify_post_body,
)
from replicate_proxy.upstream import ReplicateClient, UpstreamResult

logger = logging.getLogger("uvicorn.error")

ALLOWED_METHODS = "GET, POST, OPTIONS"
TOKEN_NOT_CONFIGURED = "REPLICATE_TOKEN not configured"
METHOD_NOT_ALLOWED = "Method not allowed"


def _parse_json_int(text: str) -> int | float:
    # Integers past the interpreter's digit limit become inf and are clamped later.
    try:
        return int(text)
    except ValueError:
        return float(text)


def parse_request_body(raw_body: bytes | str | None) -> Any:
    if raw_body is None or not raw_body.strip():
        raise ValidationError("Expected a JSON object request body.")
    try:
        return json.loads(raw_body, parse_int=_parse_json_int)
    except ValueError as exc:
        raise ValidationError(f"Expected JSON body: {exc}") from exc


class PredictionDispatcher:
    """Per-request dispatch of poll and prediction calls to Replicate.

    The dispatcher is cheap to build and holds no state between requests; the
    credential and HTTP client are injected so that the unconfigured path can
    be exercised without touching the environment.
    """

    def __init__(
        self,
        *,
        entry_point: EntryPoint,
        client: ReplicateClient,
        token: str | None,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.entry_point = entry_point
        self.client = client
        self.token = token
        self.audit_hook = audit_hook

    async def handle(
        self,
        method: str,
        query: Mapping[str, str] | None = None,
        raw_body: bytes | str | None = None,
    ) -> Response:
        method = method.upper()
        if method == "OPTIONS":
            return preflight_response(ALLOWED_METHODS)

        started = time.perf_counter()
        try:
            if not self.token:
                raise ConfigurationError(TOKEN_NOT_CONFIGURED)
            if method == "GET":
                return await self._poll(query, self.token, started)
            if method == "POST":
                return await self._predict(raw_body, self.token, started)
            return self._error(
                ClassifiedError(http_status=405, message=METHOD_NOT_ALLOWED),
                started=started,
                shape="unknown",
            )
        except ProxyError as exc:
            if isinstance(exc, ConfigurationError):
                logger.error(
                    "prediction_configuration_error entry_point=%s error=%s",
                    self.entry_point.name,
                    exc.message,
                )
            return self._error(
                classify_exception(exc, secret=self.token),
                started=started,
                shape="invalid",
            )
        except Exception as exc:
            logger.exception(
                "prediction_internal_error entry_point=%s error_type=%s",
                self.entry_point.name,
                exc.__class__.__name__,
            )
            return self._error(
                classify_exception(exc, secret=self.token),
                started=started,
                shape="unknown",
            )

    async def _poll(
        self, query: Mapping[str, str] | None, token: str, started: float
    ) -> Response:
        poll = classify_poll(query)
        result = await self.client.poll(poll.prediction_id, token)
        if not result.ok:
            return self._upstream_error(result, operation="poll", started=started)
        self._emit(
            "prediction_poll",
            started=started,
            status=200,
            outcome="success",
            shape=_shape_name(poll),
            prediction_id=poll.prediction_id,
            prediction_status=_prediction_status(result.body),
        )
        return success_response(result.body, ALLOWED_METHODS)

    async def _predict(
        self, raw_body: bytes | str | None, token: str, started: float
    ) -> Response:
        # Shape and payload are fully resolved before any network access.
        shape = classify_post_body(parse_request_body(raw_body))
        invocation = resolve(
            shape,
            base_url=self.client.base_url,
            entry_point=self.entry_point,
        )
        logger.info(
            "prediction_dispatch entry_point=%s shape=%s model=%s versioned=%s wait=%s",
            self.entry_point.name,
            _shape_name(shape),
            invocation.model,
            invocation.version is not None,
            "Prefer" in invocation.headers,
        )
        result = await self.client.invoke(invocation, token)
        if not result.ok:
            return self._upstream_error(
                result,
                operation=invocation.operation,
                started=started,
                invocation=invocation,
            )
        self._emit(
            "prediction_created",
            started=started,
            status=200,
            outcome="success",
            model=invocation.model,
            version=invocation.version,
            prediction_id=_prediction_field(result.body, "id"),
            prediction_status=_prediction_status(result.body),
        )
        return success_response(result.body, ALLOWED_METHODS)

    def _upstream_error(
        self,
        result: UpstreamResult,
        *,
        operation: UpstreamOperation,
        started: float,
        invocation: ModelInvocation | None = None,
    ) -> Response:
        classified = classify_upstream_failure(
            result, operation=operation, secret=self.token
        )
        logger.warning(
            "prediction_upstream_error entry_point=%s operation=%s model=%s status=%d code=%s",
            self.entry_point.name,
            operation,
            invocation.model if invocation is not None else None,
            result.status,
            classified.code,
        )
        self._emit(
            "prediction_upstream_error",
            started=started,
            status=classified.http_status,
            outcome="error",
            operation=operation,
            model=invocation.model if invocation is not None else None,
            code=classified.code,
            error_type=result.error_type,
        )
        return error_response(classified, ALLOWED_METHODS)

    def _error(self, classified: ClassifiedError, *, started: float, shape: str) -> Response:
        self._emit(
            "prediction_rejected",
            started=started,
            status=classified.http_status,
            outcome="error",
            shape=shape,
            error=classified.message,
        )
        return error_response(classified, ALLOWED_METHODS)

    def _emit(self, event: str, *, started: float, **fields: Any) -> None:
        if self.audit_hook is None:
            return
        self.audit_hook(
            {
                "event": event,
                "entry_point": self.entry_point.name,
                "latency_ms": round((time.perf_counter() - started) * 1000.0, 3),
                **fields,
            }
        )


def _shape_name(shape: RequestShape) -> str:
    if isinstance(shape, PollRequest):
        return "poll"
    if isinstance(shape, ExplicitModelRequest):
        return "explicit_model"
    return "legacy_upscale"


def _prediction_field(body: Any, key: str) -> Any:
    if isinstance(body, dict):
        return body.get(key)
    return None


def _prediction_status(body: Any) -> Any:
    # Relayed for observability only; the proxy never acts on it.
    return _prediction_field(body, "status")
