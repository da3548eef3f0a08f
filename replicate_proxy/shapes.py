from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union

from replicate_proxy.errors import ValidationError

MISSING_PREDICTION_ID = "Missing prediction ID"
MISSING_POST_FIELDS = "Missing image or scale (or model/input for effect calls)"


@dataclass(frozen=True, slots=True)
class PollRequest:
    prediction_id: str


@dataclass(frozen=True, slots=True)
class ExplicitModelRequest:
    model: str
    input: Any
    version: str | None = None


@dataclass(frozen=True, slots=True)
class LegacyUpscaleRequest:
    image: Any
    scale: Any


RequestShape = Union[PollRequest, ExplicitModelRequest, LegacyUpscaleRequest]
PostShape = Union[ExplicitModelRequest, LegacyUpscaleRequest]


def _is_present(value: Any) -> bool:
    # Browser clients send "", 0 and null for unset form fields.
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return value != ""
    if isinstance(value, (int, float)):
        return value != 0
    return True


def classify_poll(query: Mapping[str, str] | None) -> PollRequest:
    prediction_id = (query or {}).get("id")
    if not prediction_id or not prediction_id.strip():
        raise ValidationError(MISSING_PREDICTION_ID)
    return PollRequest(prediction_id=prediction_id.strip())


def classify_post_body(body: Any) -> PostShape:
    """Decide the request shape of a parsed POST body.

    ``model`` + ``input`` wins over ``image`` + ``scale`` when both pairs are
    present. Anything else is rejected before the upstream is contacted.
    """
    if not isinstance(body, dict):
        raise ValidationError("Expected a JSON object request body.")

    model = body.get("model")
    model_input = body.get("input")
    if _is_present(model) and _is_present(model_input):
        if not isinstance(model, str):
            raise ValidationError("Field 'model' must be a string.")
        version = body.get("version")
        if _is_present(version) and not isinstance(version, str):
            raise ValidationError("Field 'version' must be a string.")
        return ExplicitModelRequest(
            model=model,
            input=model_input,
            version=version if _is_present(version) else None,
        )

    image = body.get("image")
    scale = body.get("scale")
    if _is_present(image) and _is_present(scale):
        return LegacyUpscaleRequest(image=image, scale=scale)

    raise ValidationError(MISSING_POST_FIELDS)
