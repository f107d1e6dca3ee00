"""
Transformation Schemas

Typed, validated transformation requests and the job message carried on the
queue. A TransformationSpec is frozen once built, so the executor, the cache
and the queue only ever see checked values.

Wire names are camelCase (``withoutEnlargement``, ``fontSize``); Python
attributes are snake_case.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional, Literal, Union, Dict, Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
    ValidationError as PydanticValidationError,
)
from pydantic.alias_generators import to_camel

from src.core.exceptions import ValidationError


Gravity = Literal[
    "north", "northeast", "east", "southeast",
    "south", "southwest", "west", "northwest", "center",
]
FitPolicy = Literal["cover", "contain", "fill", "inside", "outside"]
OutputFormat = Literal["jpeg", "jpg", "png", "webp", "gif", "tiff", "tif", "bmp", "avif"]

DEFAULT_BLUR_SIGMA = 3.0


class _SpecModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


class ResizeSpec(_SpecModel):
    width: Optional[int] = Field(default=None, ge=1, le=10000)
    height: Optional[int] = Field(default=None, ge=1, le=10000)
    fit: FitPolicy = "cover"
    position: Gravity = "center"
    without_enlargement: bool = False

    @model_validator(mode="after")
    def check_target(self) -> "ResizeSpec":
        if self.width is None and self.height is None:
            raise ValueError("resize requires width or height")
        return self


class CropSpec(_SpecModel):
    x: int = Field(default=0, ge=0)
    y: int = Field(default=0, ge=0)
    width: int = Field(gt=0)
    height: int = Field(gt=0)


class FilterSpec(_SpecModel):
    grayscale: Optional[bool] = None
    sepia: Optional[bool] = None
    blur: Optional[float] = Field(default=None, ge=0)
    sharpen: Optional[bool] = None
    negate: Optional[bool] = None
    normalize: Optional[bool] = None
    gamma: Optional[float] = Field(default=None, ge=1.0, le=3.0)
    brightness: Optional[float] = Field(default=None, gt=0)
    saturation: Optional[float] = Field(default=None, ge=0)
    hue: Optional[int] = None

    @field_validator("blur", mode="before")
    @classmethod
    def blur_flag(cls, v):
        # blur: true means a default-strength blur
        if v is True:
            return DEFAULT_BLUR_SIGMA
        if v is False:
            return None
        return v


class WatermarkSpec(_SpecModel):
    text: str = Field(min_length=1, max_length=200)
    font_size: int = Field(default=24, ge=1, le=512)
    font_color: str = "rgba(255,255,255,0.5)"
    font_family: str = "Arial"
    background_color: str = "rgba(0,0,0,0.3)"
    padding: int = Field(default=10, ge=0, le=500)
    position: Gravity = "southeast"


class TransformationSpec(_SpecModel):
    """Full parameter set of one transformation request."""

    resize: Optional[ResizeSpec] = None
    crop: Optional[CropSpec] = None
    rotate: Optional[int] = None
    flip: Optional[bool] = None
    flop: Optional[bool] = None
    filters: Optional[FilterSpec] = None
    watermark: Optional[WatermarkSpec] = None
    format: Optional[OutputFormat] = None
    quality: Optional[int] = Field(default=None, ge=1, le=100)
    compress: Optional[bool] = None

    @field_validator("format", mode="before")
    @classmethod
    def lower_format(cls, v):
        return v.lower() if isinstance(v, str) else v

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready dict with wire names; absent fields are omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_spec(data: Union[TransformationSpec, Dict[str, Any], None]) -> TransformationSpec:
    """Validate raw input into a TransformationSpec, raising the service ValidationError."""
    if isinstance(data, TransformationSpec):
        return data
    try:
        return TransformationSpec.model_validate(data or {})
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError("Invalid transformation spec", errors=errors)


class JobMessage(BaseModel):
    """Queue payload for one transformation job."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    image_id: str
    owner_id: str
    source_path: str
    original_filename: str
    transformations: TransformationSpec
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "JobMessage":
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed job message: {e.error_count()} error(s)")
