"""
Pipeline Models

Watermark configuration, EXIF summary and processing results.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from ..errors import ValidationError


MAX_LAYERS = 6

POSITIONS = (
    "top-left", "top-center", "top-right",
    "center-left", "center", "center-right",
    "bottom-left", "bottom-center", "bottom-right",
)

POSITION_ALIASES = {
    "northwest": "top-left",
    "north": "top-center",
    "northeast": "top-right",
    "west": "center-left",
    "middle": "center",
    "east": "center-right",
    "southwest": "bottom-left",
    "south": "bottom-center",
    "southeast": "bottom-right",
}


# ============================================================================
# Watermark
# ============================================================================

class WatermarkLayer(BaseModel):
    """One text or logo overlay."""
    id: str | None = None
    kind: Literal["text", "logo"] = Field(default="text", alias="type")
    text: str | None = None
    logo_url: str | None = Field(default=None, alias="logoUrl")
    opacity: float = Field(default=0.5, ge=0.0, le=1.0)
    position: str = "center"
    size: int | None = Field(default=None, gt=0)
    margin: float = Field(default=5.0, ge=0.0, le=20.0)  # percent of the short edge
    enabled: bool = True

    class Config:
        populate_by_name = True
        frozen = True

    @field_validator("position", mode="before")
    @classmethod
    def normalize_position(cls, value):
        if value is None or value == "":
            return "center"
        position = str(value).strip().lower().replace("_", "-")
        position = POSITION_ALIASES.get(position, position)
        if position not in POSITIONS:
            raise ValueError(f"Unknown watermark position: {value}")
        return position

    @field_validator("opacity", mode="before")
    @classmethod
    def default_opacity(cls, value):
        return 0.5 if value is None else value

    @field_validator("margin", mode="before")
    @classmethod
    def default_margin(cls, value):
        return 5.0 if value is None else value


class WatermarkConfig(BaseModel):
    """Watermark settings for one processing run."""
    enabled: bool = False
    layers: list[WatermarkLayer] = Field(default_factory=list, max_length=MAX_LAYERS)
    legacy: bool = False

    class Config:
        frozen = True

    @property
    def active_layers(self) -> list[WatermarkLayer]:
        if not self.enabled:
            return []
        return [layer for layer in self.layers if layer.enabled]

    @property
    def is_active(self) -> bool:
        return bool(self.active_layers)

    @classmethod
    def disabled(cls) -> WatermarkConfig:
        return cls(enabled=False)

    @classmethod
    def from_album(
        cls,
        enabled: bool,
        watermark_type: str | None,
        raw: dict | None,
    ) -> WatermarkConfig:
        """
        Build the config from an album's stored watermark settings.

        Accepts the multi-layer format ``{"watermarks": [...]}`` and the
        legacy single-watermark format ``{"type", "text", "logoUrl",
        "opacity", "position"}``.

        Args:
            enabled: Album-level watermark switch
            watermark_type: Album column used by the legacy format
            raw: Stored watermark_config blob

        Returns:
            Parsed WatermarkConfig

        Raises:
            ValidationError: The blob is malformed
        """
        if not enabled:
            return cls.disabled()

        raw = raw or {}
        if not isinstance(raw, dict):
            raise ValidationError(f"Watermark config must be an object, got {type(raw).__name__}")

        try:
            watermarks = raw.get("watermarks")
            if watermarks is not None:
                if not isinstance(watermarks, list):
                    raise ValidationError("Watermark config 'watermarks' must be a list")
                if len(watermarks) > MAX_LAYERS:
                    raise ValidationError(f"At most {MAX_LAYERS} watermarks are supported, got {len(watermarks)}")
                layers = [WatermarkLayer.model_validate(item) for item in watermarks]
                return cls(enabled=True, layers=layers, legacy=False)

            layer = WatermarkLayer(
                kind=watermark_type or raw.get("type") or "text",
                text=raw.get("text"),
                logo_url=raw.get("logoUrl"),
                opacity=raw.get("opacity"),
                position=raw.get("position"),
                size=raw.get("size"),
            )
            return cls(enabled=True, layers=[layer], legacy=True)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid watermark config: {e}") from e


# ============================================================================
# EXIF
# ============================================================================

class ExifData(BaseModel):
    """Camera metadata kept on a photo. Location data is never stored."""
    make: str | None = None
    model: str | None = None
    lens_model: str | None = None
    software: str | None = None
    orientation: int | None = None
    datetime_original: str | None = None
    exposure_time: float | None = None
    f_number: float | None = None
    iso: int | None = None
    focal_length: float | None = None
    flash: int | None = None
    width: int | None = None
    height: int | None = None

    def to_dict(self) -> dict:
        return self.model_dump(exclude_none=True)


# ============================================================================
# Results
# ============================================================================

@dataclass
class ProcessedResult:
    """Derivatives and metadata produced from one original."""
    width: int
    height: int
    format: str
    exif: ExifData
    blur_hash: str
    thumb_buffer: bytes
    preview_buffer: bytes
