"""
Pipeline Stage Implementations

Each stage is a plain function (state, spec, context) -> StageResult. A
stage whose field is absent from the TransformSpec returns the state unchanged.
Stages never mutate the image they receive; every Pillow call used here
returns a new image, so the previous state stays intact if a later stage
fails.
"""

import dataclasses
import functools
import io
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from PIL import Image, ImageOps

from mediaxform.core.exceptions import (
    InvalidSpecError,
    InvalidWatermarkSourceError,
    MediaXformError,
    PipelineFailureError,
    UnsupportedFormatError,
)
from mediaxform.core.logging import get_logger
from mediaxform.engines.transform.schemas import (
    SUPPORTED_FORMATS,
    TransformSpec,
    WatermarkPosition,
)

logger = get_logger(__name__)

# Color recombination rows for sepia: out_c = r*m[0] + g*m[1] + b*m[2]
SEPIA_MATRIX = (
    0.3588, 0.7044, 0.1368, 0,
    0.299, 0.587, 0.114, 0,
    0.2392, 0.4696, 0.0912, 0,
)

PIL_FORMATS = {
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "gif": "GIF",
    "tiff": "TIFF",
    "avif": "AVIF",
}


# =============================================================================
# State & Results
# =============================================================================

@dataclass(frozen=True)
class PipelineState:
    """Immutable snapshot passed from stage to stage."""
    image: Image.Image
    format: str
    save_options: Mapping[str, Any] = field(default_factory=dict)

    def replace(self, **changes) -> "PipelineState":
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class StageContext:
    """Inputs a stage needs beyond the TransformSpec (prefetched remote data)."""
    watermark_bytes: Optional[bytes] = None
    watermark_width_ratio: float = 0.2


@dataclass(frozen=True)
class StageResult:
    """Either the next state or the error that stops the pipeline."""
    stage: str
    state: Optional[PipelineState] = None
    error: Optional[MediaXformError] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


StageFn = Callable[[PipelineState, TransformSpec, StageContext], StageResult]


def stage(name: str):
    """
    Wrap a stage body so it always returns a StageResult.

    Service errors pass through as the result's error; anything raised by
    the codec becomes a PipelineFailureError for this stage.
    """
    def decorator(func: Callable[[PipelineState, TransformSpec, StageContext], PipelineState]) -> StageFn:
        @functools.wraps(func)
        def wrapper(state: PipelineState, spec: TransformSpec, context: StageContext) -> StageResult:
            try:
                return StageResult(stage=name, state=func(state, spec, context))
            except MediaXformError as e:
                return StageResult(stage=name, error=e)
            except Exception as e:
                return StageResult(
                    stage=name,
                    error=PipelineFailureError(f"Stage '{name}' failed: {e}", stage=name),
                )
        wrapper.stage_name = name
        return wrapper
    return decorator


# =============================================================================
# Helpers
# =============================================================================

def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA")


def _transparent_fill(mode: str):
    return {
        "RGBA": (0, 0, 0, 0),
        "LA": (0, 0),
        "RGB": (0, 0, 0),
        "L": 0,
    }.get(mode, 0)


def _normalize_mode(image: Image.Image) -> Image.Image:
    """Bring decoded images into one of L, LA, RGB, RGBA."""
    if image.mode in ("L", "LA", "RGB", "RGBA"):
        return image
    if image.mode == "PA" or (image.mode == "P" and "transparency" in image.info):
        return image.convert("RGBA")
    if image.mode in ("I;16", "I", "F"):
        return image.convert("L")
    return image.convert("RGB")


def decode_image(data: bytes, fmt: str) -> PipelineState:
    """Decode source bytes into the initial state (first frame for animations)."""
    try:
        with Image.open(io.BytesIO(data)) as opened:
            opened.seek(0)
            image = _normalize_mode(opened.copy())
    except Exception as e:
        raise PipelineFailureError(f"Source could not be decoded: {e}", stage="decode")
    return PipelineState(image=image, format=fmt)


def encode_image(state: PipelineState) -> bytes:
    """Encode the final state with the target codec and its options."""
    if state.format not in PIL_FORMATS:
        raise UnsupportedFormatError(state.format)

    image = state.image
    if state.format == "jpeg" and _has_alpha(image):
        # JPEG has no alpha channel
        image = image.convert("L" if image.mode == "LA" else "RGB")

    buffer = io.BytesIO()
    try:
        image.save(buffer, format=PIL_FORMATS[state.format], **dict(state.save_options))
    except (KeyError, OSError, ValueError) as e:
        raise PipelineFailureError(f"Encoding to {state.format} failed: {e}", stage="encode")
    return buffer.getvalue()


def _anchor_offset(
    position: WatermarkPosition,
    canvas: Tuple[int, int],
    overlay: Tuple[int, int]
) -> Tuple[int, int]:
    cw, ch = canvas
    ow, oh = overlay
    left, center_x, right = 0, (cw - ow) // 2, cw - ow
    top, center_y, bottom = 0, (ch - oh) // 2, ch - oh
    return {
        WatermarkPosition.NORTH: (center_x, top),
        WatermarkPosition.NORTHEAST: (right, top),
        WatermarkPosition.EAST: (right, center_y),
        WatermarkPosition.SOUTHEAST: (right, bottom),
        WatermarkPosition.SOUTH: (center_x, bottom),
        WatermarkPosition.SOUTHWEST: (left, bottom),
        WatermarkPosition.WEST: (left, center_y),
        WatermarkPosition.NORTHWEST: (left, top),
        WatermarkPosition.CENTER: (center_x, center_y),
    }[position]


# =============================================================================
# Stages (in application order)
# =============================================================================

@stage("resize")
def resize_stage(state: PipelineState, spec: TransformSpec, context: StageContext) -> PipelineState:
    if spec.resize is None:
        return state
    size = (spec.resize.width, spec.resize.height)
    return state.replace(image=state.image.resize(size, Image.Resampling.LANCZOS))


@stage("rotate")
def rotate_stage(state: PipelineState, spec: TransformSpec, context: StageContext) -> PipelineState:
    if spec.rotate is None or spec.rotate % 360 == 0:
        return state
    image = state.image
    # Pillow rotates counter-clockwise; requests are clockwise
    rotated = image.rotate(
        -spec.rotate,
        resample=Image.Resampling.BICUBIC,
        expand=True,
        fillcolor=_transparent_fill(image.mode),
    )
    return state.replace(image=rotated)


@stage("crop")
def crop_stage(state: PipelineState, spec: TransformSpec, context: StageContext) -> PipelineState:
    if spec.crop is None:
        return state
    crop = spec.crop
    width, height = state.image.size
    if crop.x + crop.width > width or crop.y + crop.height > height:
        raise InvalidSpecError(
            "Crop rectangle exceeds image bounds",
            details={
                "image": {"width": width, "height": height},
                "crop": crop.model_dump(),
            },
        )
    box = (crop.x, crop.y, crop.x + crop.width, crop.y + crop.height)
    return state.replace(image=state.image.crop(box))


@stage("format")
def format_stage(state: PipelineState, spec: TransformSpec, context: StageContext) -> PipelineState:
    target = spec.format or state.format
    if target not in SUPPORTED_FORMATS:
        raise UnsupportedFormatError(target)
    return state.replace(format=target)


@stage("filters")
def filters_stage(state: PipelineState, spec: TransformSpec, context: StageContext) -> PipelineState:
    if spec.filters is None:
        return state
    image = state.image

    if spec.filters.grayscale:
        image = image.convert("LA" if _has_alpha(image) else "L")

    if spec.filters.sepia:
        alpha = image.getchannel("A") if _has_alpha(image) else None
        base = image.convert("RGB")
        toned = base.convert("RGB", SEPIA_MATRIX)
        if alpha is not None:
            toned.putalpha(alpha)
        image = toned

    return state.replace(image=image)


@stage("flip")
def flip_stage(state: PipelineState, spec: TransformSpec, context: StageContext) -> PipelineState:
    image = state.image
    if spec.flip:
        image = ImageOps.flip(image)
    if spec.mirror:
        image = ImageOps.mirror(image)
    return state if image is state.image else state.replace(image=image)


@stage("compress")
def compress_stage(state: PipelineState, spec: TransformSpec, context: StageContext) -> PipelineState:
    if spec.compress is None:
        return state
    quality = spec.compress.quality

    if state.format in ("jpeg", "webp", "avif"):
        options: Dict[str, Any] = {"quality": quality}
        if state.format == "jpeg":
            options["optimize"] = True
    elif state.format == "png":
        # Lossless codec: quality maps onto maximum deflate effort
        options = {"optimize": True, "compress_level": 9}
    else:
        logger.debug("compress_not_applicable", format=state.format)
        return state

    return state.replace(save_options={**state.save_options, **options})


@stage("watermark")
def watermark_stage(state: PipelineState, spec: TransformSpec, context: StageContext) -> PipelineState:
    if spec.watermark is None:
        return state
    if context.watermark_bytes is None:
        raise InvalidWatermarkSourceError("Watermark image was not fetched", url=spec.watermark.url)

    try:
        with Image.open(io.BytesIO(context.watermark_bytes)) as opened:
            opened.seek(0)
            overlay = opened.convert("RGBA")
    except Exception:
        raise InvalidWatermarkSourceError("Watermark is not a decodable image", url=spec.watermark.url)

    base = state.image
    canvas_w, canvas_h = base.size

    # Scale proportionally to a fixed share of the canvas width
    target_w = max(1, math.floor(canvas_w * context.watermark_width_ratio))
    target_h = max(1, round(overlay.height * target_w / overlay.width))
    overlay = overlay.resize((target_w, target_h), Image.Resampling.LANCZOS)

    if spec.watermark.opacity is not None:
        opacity = spec.watermark.opacity
        alpha = overlay.getchannel("A").point(lambda a: round(a * opacity))
        overlay.putalpha(alpha)

    layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
    layer.paste(overlay, _anchor_offset(spec.watermark.position, (canvas_w, canvas_h), overlay.size))
    composed = Image.alpha_composite(base.convert("RGBA"), layer)

    if not _has_alpha(base):
        composed = composed.convert("RGB")
    return state.replace(image=composed)


# Application order is fixed here, never by the order fields arrive in.
STAGES: Tuple[StageFn, ...] = (
    resize_stage,
    rotate_stage,
    crop_stage,
    format_stage,
    filters_stage,
    flip_stage,
    compress_stage,
    watermark_stage,
)
