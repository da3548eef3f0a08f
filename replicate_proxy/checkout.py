from __future__ import annotations

import logging
from typing import Any

import httpx
from fastapi.responses import Response

from replicate_proxy.dispatcher import METHOD_NOT_ALLOWED, parse_request_body
from replicate_proxy.errors import (
    ClassifiedError,
    ConfigurationError,
    ProxyError,
    ValidationError,
    classify_exception,
    redact_secret,
)
from replicate_proxy.responses import error_response, json_response, preflight_response
from replicate_proxy.upstream import send_once

logger = logging.getLogger("uvicorn.error")

ALLOWED_METHODS = "POST, OPTIONS"
REQUIRED_FIELDS = ("priceId", "mode", "successUrl", "cancelUrl")


def build_checkout_form(body: dict[str, Any]) -> list[tuple[str, str]]:
    missing = [name for name in REQUIRED_FIELDS if not body.get(name)]
    if missing:
        raise ValidationError(
            "Missing parameters: " + ", ".join(REQUIRED_FIELDS),
            details={"missing": missing},
        )

    form = [
        ("mode", str(body["mode"])),
        ("line_items[0][price]", str(body["priceId"])),
        ("line_items[0][quantity]", "1"),
        ("success_url", str(body["successUrl"])),
        ("cancel_url", str(body["cancelUrl"])),
    ]
    if body.get("email"):
        form.append(("customer_email", str(body["email"])))
    form.append(("allow_promotion_codes", "true"))
    return form


class CheckoutCreator:
    """Creates Stripe checkout sessions for the browser without exposing the key."""

    def __init__(
        self, *, client: httpx.AsyncClient, base_url: str, secret_key: str | None
    ) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key

    async def handle(self, method: str, raw_body: bytes | str | None = None) -> Response:
        method = method.upper()
        if method == "OPTIONS":
            return preflight_response(ALLOWED_METHODS)
        if method != "POST":
            return error_response(
                ClassifiedError(http_status=405, message=METHOD_NOT_ALLOWED),
                ALLOWED_METHODS,
            )

        try:
            if not self.secret_key:
                logger.error("checkout_configuration_error error=STRIPE_SECRET_KEY missing")
                raise ConfigurationError("Stripe is not configured")
            body = parse_request_body(raw_body)
            if not isinstance(body, dict):
                raise ValidationError("Expected a JSON object request body.")
            return await self._create_session(build_checkout_form(body), self.secret_key)
        except ProxyError as exc:
            return error_response(
                classify_exception(exc, secret=self.secret_key), ALLOWED_METHODS
            )
        except Exception as exc:
            logger.exception("checkout_internal_error error_type=%s", exc.__class__.__name__)
            return error_response(classify_exception(exc), ALLOWED_METHODS)

    async def _create_session(self, form: list[tuple[str, str]], secret_key: str) -> Response:
        request = self.client.build_request(
            "POST",
            f"{self.base_url}/checkout/sessions",
            data=dict(form),
            headers={"Authorization": f"Bearer {secret_key}"},
        )
        result = await send_once(self.client, request)
        data = result.body if isinstance(result.body, dict) else {}

        if not result.ok:
            upstream_error = data.get("error")
            if not isinstance(upstream_error, dict):
                upstream_error = {}
            logger.warning(
                "checkout_upstream_error status=%d code=%s",
                result.status,
                upstream_error.get("code"),
            )
            return error_response(
                ClassifiedError(
                    http_status=result.status,
                    message=redact_secret(
                        upstream_error.get("message") or "Stripe error", secret_key
                    ),
                    code=upstream_error.get("code") or "unknown",
                ),
                ALLOWED_METHODS,
            )

        if not data.get("url"):
            return error_response(
                ClassifiedError(
                    http_status=500, message="Stripe did not return a checkout URL"
                ),
                ALLOWED_METHODS,
            )

        logger.info("checkout_session_created session_id=%s", data.get("id"))
        return json_response(
            {"url": data["url"], "sessionId": data.get("id")}, 200, ALLOWED_METHODS
        )
