"""
PIS Image Pipeline

Decoding, EXIF, grading, derivatives and watermarking.
"""

from .models import ExifData, ProcessedResult, WatermarkConfig, WatermarkLayer
from .processor import PhotoProcessor
from .watermark import WatermarkCompositor, compute_position
from .logo import LogoFetcher, validate_logo_url
from .presets import STYLE_PRESETS, apply_preset, get_available_presets

__all__ = [
    # Models
    "ExifData",
    "ProcessedResult",
    "WatermarkConfig",
    "WatermarkLayer",
    # Processing
    "PhotoProcessor",
    # Watermarking
    "WatermarkCompositor",
    "compute_position",
    "LogoFetcher",
    "validate_logo_url",
    # Style presets
    "STYLE_PRESETS",
    "apply_preset",
    "get_available_presets",
]
