from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from replicate_proxy.errors import UpstreamOperation, ValidationError
from replicate_proxy.shapes import ExplicitModelRequest, LegacyUpscaleRequest, PostShape

BACKGROUND_REMOVAL_MODEL = "bria-ai/bria-rmbg-2.0"
FACE_TO_STICKER_MARKER = "face-to-sticker"
FACE_TO_STICKER_VERSION = (
    "764d4827ea159608a07cdde8ddf1c6000019627515eb02b6b449695fd547e5ef"
)
REAL_ESRGAN_VERSION = "42fed1c4974146d4d2414e2be2c5277c7fcf05fcc3a73abf41610695738c1d7b"


@dataclass(frozen=True, slots=True)
class EntryPoint:
    """Constants that differ between the public URLs of the prediction proxy."""

    name: str
    scale_min: int
    scale_max: int
    face_enhance: bool


# The two entry points disagree on the clamp range and on face enhancement.
# Both are kept as-is because existing clients depend on each.
LEGACY_ENTRY_POINT = EntryPoint(name="legacy", scale_min=2, scale_max=10, face_enhance=False)
V2_ENTRY_POINT = EntryPoint(name="v2", scale_min=2, scale_max=4, face_enhance=True)


@dataclass(frozen=True, slots=True)
class ModelInvocation:
    url: str
    payload: dict[str, Any]
    operation: UpstreamOperation
    model: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def version(self) -> str | None:
        return self.payload.get("version")


def split_versioned_model(model: str) -> tuple[str, str | None]:
    if ":" not in model:
        return model, None
    name, version = model.split(":")[:2]
    return name, version or None


def predictions_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/predictions"


def model_path(model: str) -> str:
    segments = model.split("/")
    if len(segments) != 2 or any(
        not segment or segment in (".", "..") or "?" in segment or "#" in segment
        for segment in segments
    ):
        raise ValidationError(
            "Field 'model' must be of the form 'owner/name'.",
            details={"model": model},
        )
    return "/".join(quote(segment, safe="") for segment in segments)


def model_predictions_url(base_url: str, model: str) -> str:
    return f"{base_url.rstrip('/')}/models/{model_path(model)}/predictions"


def prediction_url(base_url: str, prediction_id: str) -> str:
    return f"{base_url.rstrip('/')}/predictions/{quote(prediction_id, safe='')}"


def resolve_explicit_model(
    request: ExplicitModelRequest, *, base_url: str
) -> ModelInvocation:
    model = request.model
    if model == BACKGROUND_REMOVAL_MODEL:
        return ModelInvocation(
            url=model_predictions_url(base_url, model),
            payload={"input": request.input},
            operation="model",
            model=model,
            headers={"Prefer": "wait"},
        )

    if FACE_TO_STICKER_MARKER in model:
        return ModelInvocation(
            url=predictions_url(base_url),
            payload={"version": FACE_TO_STICKER_VERSION, "input": request.input},
            operation="model",
            model=model,
        )

    version = request.version
    model_name = model
    if version is None:
        model_name, version = split_versioned_model(model)

    if version is not None:
        return ModelInvocation(
            url=predictions_url(base_url),
            payload={"version": version, "input": request.input},
            operation="model",
            model=model_name,
        )

    return ModelInvocation(
        url=model_predictions_url(base_url, model_name),
        payload={"input": request.input},
        operation="model",
        model=model_name,
    )


def parse_scale(raw: Any) -> int | float:
    """Parse a scale into an int or float; infinities are kept for clamping."""
    if isinstance(raw, bool):
        raise ValidationError("Field 'scale' must be a number.")
    if isinstance(raw, (int, float)):
        value = raw
    elif isinstance(raw, str):
        text = raw.strip()
        try:
            value = int(text)
        except ValueError:
            try:
                value = float(text)
            except ValueError as exc:
                raise ValidationError("Field 'scale' must be a number.") from exc
    else:
        raise ValidationError("Field 'scale' must be a number.")
    if isinstance(value, float) and math.isnan(value):
        raise ValidationError("Field 'scale' must be a number.")
    return value


def clamp_scale(raw: Any, entry_point: EntryPoint) -> int:
    value = parse_scale(raw)
    if isinstance(value, float):
        if math.isinf(value):
            return entry_point.scale_max if value > 0 else entry_point.scale_min
        # Half-up rounding, so 2.5 becomes 3 rather than 2.
        value = math.floor(value + 0.5)
    return min(max(value, entry_point.scale_min), entry_point.scale_max)


def resolve_legacy_upscale(
    request: LegacyUpscaleRequest, *, base_url: str, entry_point: EntryPoint
) -> ModelInvocation:
    return ModelInvocation(
        url=predictions_url(base_url),
        payload={
            "version": REAL_ESRGAN_VERSION,
            "input": {
                "image": request.image,
                "scale": clamp_scale(request.scale, entry_point),
                "face_enhance": entry_point.face_enhance,
            },
        },
        operation="upscale",
        model="nightmareai/real-esrgan",
    )


def resolve(
    shape: PostShape, *, base_url: str, entry_point: EntryPoint
) -> ModelInvocation:
    if isinstance(shape, ExplicitModelRequest):
        return resolve_explicit_model(shape, base_url=base_url)
    return resolve_legacy_upscale(shape, base_url=base_url, entry_point=entry_point)
