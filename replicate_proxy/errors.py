from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from replicate_proxy.upstream import UpstreamResult

INSUFFICIENT_CREDIT = "INSUFFICIENT_CREDIT"
INTERNAL_ERROR_MESSAGE = "Internal server error"
REDACTED = "[redacted]"

UpstreamOperation = Literal["poll", "model", "upscale"]

_UPSTREAM_ERROR_LABELS: dict[str, str] = {
    "poll": "Replicate poll error",
    "model": "Replicate model error",
    "upscale": "Replicate API error",
}
_BILLING_LABELS: dict[str, str] = {
    "poll": "Insufficient Replicate credits",
    "model": "Insufficient Replicate credits",
    "upscale": "Insufficient credit",
}
BILLING_HINT = (
    "There are no Replicate credits left on this account. "
    "Top up at replicate.com/account/billing"
)


@dataclass(slots=True)
class ClassifiedError:
    http_status: int
    message: str
    code: str | None = None
    details: Any = None
    hint: str | None = None

    def to_envelope(self) -> dict[str, Any]:
        envelope: dict[str, Any] = {"error": self.message}
        if self.code is not None:
            envelope["code"] = self.code
        if self.hint is not None:
            envelope["hint"] = self.hint
        if self.details is not None:
            envelope["details"] = self.details
        return envelope


class ProxyError(Exception):
    """Base class for errors that map onto the client-facing error envelope."""

    status_code = 500
    code: str | None = None

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_classified(self) -> ClassifiedError:
        return ClassifiedError(
            http_status=self.status_code,
            message=self.message,
            code=self.code,
            details=self.details,
        )


class ValidationError(ProxyError):
    """Missing or malformed request input, raised before any network access."""

    status_code = 400


class ConfigurationError(ProxyError):
    """A required secret is not configured for this process."""

    status_code = 500


class UpstreamError(ProxyError):
    def __init__(self, message: str, *, status_code: int, details: Any = None) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class UpstreamBillingError(UpstreamError):
    code = INSUFFICIENT_CREDIT

    def __init__(
        self, message: str, *, details: Any = None, hint: str | None = None
    ) -> None:
        super().__init__(message, status_code=402, details=details)
        self.hint = hint

    def to_classified(self) -> ClassifiedError:
        classified = super().to_classified()
        classified.hint = self.hint
        return classified


class InternalError(ProxyError):
    status_code = 500

    def __init__(self, message: str = INTERNAL_ERROR_MESSAGE) -> None:
        super().__init__(message)


def upstream_failure_to_error(
    result: UpstreamResult,
    *,
    operation: UpstreamOperation,
    secret: str | None = None,
) -> UpstreamError:
    details = redact_secret(result.body, secret)
    if result.status == 402:
        return UpstreamBillingError(
            _BILLING_LABELS[operation],
            details=details,
            hint=BILLING_HINT if operation == "upscale" else None,
        )
    return UpstreamError(
        _UPSTREAM_ERROR_LABELS[operation],
        status_code=result.status,
        details=details,
    )


def classify_upstream_failure(
    result: UpstreamResult,
    *,
    operation: UpstreamOperation,
    secret: str | None = None,
) -> ClassifiedError:
    return upstream_failure_to_error(
        result, operation=operation, secret=secret
    ).to_classified()


def classify_exception(exc: BaseException, *, secret: str | None = None) -> ClassifiedError:
    if isinstance(exc, ProxyError):
        classified = exc.to_classified()
        classified.message = redact_secret(classified.message, secret)
        classified.details = redact_secret(classified.details, secret)
        return classified
    return InternalError().to_classified()


def redact_secret(value: Any, secret: str | None) -> Any:
    if not secret:
        return value
    if isinstance(value, str):
        return value.replace(secret, REDACTED)
    if isinstance(value, dict):
        return {
            redact_secret(key, secret): redact_secret(item, secret)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact_secret(item, secret) for item in value]
    return value
