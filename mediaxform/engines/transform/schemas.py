"""
Transform Spec & Queue Message Schemas

A TransformSpec is logically a set of optional stages. The order fields
appear in a request never matters: the pipeline engine fixes the order of
application, and the fingerprint canonicalises the serialization.
"""

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from mediaxform.core.config import settings
from mediaxform.core.exceptions import InvalidSpecError, UnsupportedFormatError

# Output codecs the pipeline can encode to
SUPPORTED_FORMATS = ("jpeg", "png", "webp", "gif", "tiff", "avif")

FORMAT_ALIASES = {"jpg": "jpeg", "tif": "tiff"}


def normalize_format(value: str) -> str:
    value = value.strip().lower()
    return FORMAT_ALIASES.get(value, value)


def _error_list(error: ValidationError) -> List[Dict[str, str]]:
    return [
        {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
        for err in error.errors()
    ]


class WatermarkPosition(str, Enum):
    """Compass anchors for the watermark overlay."""
    NORTH = "north"
    NORTHEAST = "northeast"
    EAST = "east"
    SOUTHEAST = "southeast"
    SOUTH = "south"
    SOUTHWEST = "southwest"
    WEST = "west"
    NORTHWEST = "northwest"
    CENTER = "center"


class _Stage(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ResizeSpec(_Stage):
    width: int = Field(..., gt=0, le=settings.MAX_IMAGE_DIMENSION)
    height: int = Field(..., gt=0, le=settings.MAX_IMAGE_DIMENSION)


class CropSpec(_Stage):
    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)
    width: int = Field(..., gt=0, le=settings.MAX_IMAGE_DIMENSION)
    height: int = Field(..., gt=0, le=settings.MAX_IMAGE_DIMENSION)


class FiltersSpec(_Stage):
    grayscale: bool = False
    sepia: bool = False


class CompressSpec(_Stage):
    quality: int = Field(..., ge=1, le=100)


class WatermarkSpec(_Stage):
    url: str = Field(..., min_length=1, max_length=2048)
    position: WatermarkPosition
    opacity: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @field_validator("url")
    @classmethod
    def validate_url_scheme(cls, v: str) -> str:
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError("watermark url must be http(s)")
        return v

    @field_validator("position", mode="before")
    @classmethod
    def normalize_position(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return "center" if v == "centre" else v
        return v


class TransformSpec(_Stage):
    """Optional stages; absent means the stage is a no-op."""

    resize: Optional[ResizeSpec] = None
    rotate: Optional[float] = Field(default=None, ge=-360, le=360)
    crop: Optional[CropSpec] = None
    format: Optional[str] = None
    filters: Optional[FiltersSpec] = None
    flip: bool = False
    mirror: bool = False
    compress: Optional[CompressSpec] = None
    watermark: Optional[WatermarkSpec] = None

    @field_validator("format", mode="before")
    @classmethod
    def validate_format_type(cls, v: Any) -> Any:
        if v is None:
            return v
        if not isinstance(v, str) or not v.strip():
            raise ValueError("format must be a non-empty string")
        return normalize_format(v)

    @model_validator(mode="before")
    @classmethod
    def drop_empty_filters(cls, data: Any) -> Any:
        if isinstance(data, dict):
            filters = data.get("filters")
            if (
                isinstance(filters, dict)
                and set(filters) <= {"grayscale", "sepia"}
                and not any(value is True for value in filters.values())
                and all(isinstance(value, bool) for value in filters.values())
            ):
                data = {key: value for key, value in data.items() if key != "filters"}
        return data

    @classmethod
    def parse(cls, payload: Any) -> "TransformSpec":
        """
        Validate a raw payload into a TransformSpec.

        Raises:
            InvalidSpecError: on any structural or range violation
        """
        if isinstance(payload, TransformSpec):
            return payload
        if not isinstance(payload, dict):
            raise InvalidSpecError("Transform spec must be an object")
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise InvalidSpecError("Invalid transform spec", details={"errors": _error_list(e)})

    def ensure_supported_format(self) -> None:
        """Raise UnsupportedFormatError when the target format is not allow-listed."""
        if self.format is not None and self.format not in SUPPORTED_FORMATS:
            raise UnsupportedFormatError(self.format)

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_defaults=True)


class TransformMessage(BaseModel):
    """Queue payload carried from dispatcher to worker."""
    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    source_object_id: str
    transform_spec: Dict[str, Any]

    @classmethod
    def parse(cls, payload: Any) -> "TransformMessage":
        """Validate a raw queue payload; InvalidSpecError when malformed."""
        if isinstance(payload, TransformMessage):
            return payload
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise InvalidSpecError("Malformed transform message", details={"errors": _error_list(e)})


class TransformRequest(BaseModel):
    """HTTP body for POST /media/{id}/transform."""
    transformations: Dict[str, Any]
