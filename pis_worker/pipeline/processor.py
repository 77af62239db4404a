"""
Photo Processor

Turns one original into the derivatives a gallery needs:
- sanitized EXIF
- BlurHash placeholder
- thumbnail (grid view)
- preview (lightbox view, optionally watermarked)
"""

import io
import logging

import blurhash
from PIL import Image, ImageOps, UnidentifiedImageError

from ..errors import ProcessingError
from .exif import extract_exif
from .models import ProcessedResult, WatermarkConfig
from .presets import apply_preset
from .watermark import WatermarkCompositor

logger = logging.getLogger(__name__)

# Transposes for clockwise rotations; Pillow's ROTATE_* constants turn counter-clockwise
CLOCKWISE_TRANSPOSE = {
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}


class PhotoProcessor:
    """Decodes, orients, grades and resizes photos."""

    def __init__(
        self,
        compositor: WatermarkCompositor | None = None,
        thumb_max_size: int = 400,
        thumb_quality: int = 80,
        preview_max_size: int = 2560,
        preview_quality: int = 85,
        blur_grid: int = 32,
    ):
        self.compositor = compositor
        self.thumb_max_size = thumb_max_size
        self.thumb_quality = thumb_quality
        self.preview_max_size = preview_max_size
        self.preview_quality = preview_quality
        self.blur_grid = blur_grid

    def process(
        self,
        data: bytes,
        watermark_config: WatermarkConfig | None = None,
        rotation: int | None = None,
        style_preset: str | None = None,
    ) -> ProcessedResult:
        """
        Process an original image.

        Args:
            data: Original file bytes
            watermark_config: Watermark applied to the preview only
            rotation: Extra clockwise rotation in degrees, applied after EXIF orientation
            style_preset: Color-grading preset id

        Returns:
            ProcessedResult with JPEG thumb and preview buffers
        """
        image, fmt = self.decode(data)
        exif = extract_exif(image)

        image = self.orient(image, rotation)
        image = self.to_rgb(image)

        if style_preset:
            try:
                image = apply_preset(image, style_preset)
            except ValueError as e:
                logger.warning(f"Skipping style preset: {e}")

        blur_hash = self.blur_hash(image)

        thumb = self.resize(image, self.thumb_max_size)
        thumb_buffer = self.encode_jpeg(thumb, self.thumb_quality)

        preview = self.resize(image, self.preview_max_size)
        if watermark_config is not None and watermark_config.is_active:
            if self.compositor is None:
                raise ProcessingError("Watermark requested but no compositor is configured")
            preview = self.compositor.apply(preview, watermark_config)
        preview_buffer = self.encode_jpeg(preview, self.preview_quality)

        return ProcessedResult(
            width=image.width,
            height=image.height,
            format=fmt,
            exif=exif,
            blur_hash=blur_hash,
            thumb_buffer=thumb_buffer,
            preview_buffer=preview_buffer,
        )

    def watermark(self, data: bytes, watermark_config: WatermarkConfig, rotation: int | None = None) -> bytes:
        """Preview-sized watermarked JPEG, used when packaging without a stored preview."""
        return self.process(data, watermark_config=watermark_config, rotation=rotation).preview_buffer

    def decode(self, data: bytes) -> tuple[Image.Image, str]:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
            raise ProcessingError(f"Could not decode image: {e}") from e
        return image, (image.format or "unknown").lower()

    def orient(self, image: Image.Image, rotation: int | None = None) -> Image.Image:
        """Apply EXIF orientation, then a manual clockwise rotation."""
        try:
            image = ImageOps.exif_transpose(image)
        except Exception as e:
            logger.warning(f"Ignoring unusable EXIF orientation: {e}")

        degrees = (rotation or 0) % 360
        if not degrees:
            return image
        if degrees in CLOCKWISE_TRANSPOSE:
            return image.transpose(CLOCKWISE_TRANSPOSE[degrees])
        return image.rotate(-degrees, resample=Image.Resampling.BICUBIC, expand=True, fillcolor="white")

    def to_rgb(self, image: Image.Image) -> Image.Image:
        """Flatten transparency onto white and drop to RGB."""
        if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.getchannel("A"))
            return background
        if image.mode != "RGB":
            return image.convert("RGB")
        return image

    def resize(self, image: Image.Image, max_size: int) -> Image.Image:
        """Bound the longest edge by max_size. Never upscales."""
        resized = image.copy()
        if max(image.size) > max_size:
            resized.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
        return resized

    def blur_hash(self, image: Image.Image) -> str:
        small = self.resize(image, self.blur_grid)
        return blurhash.encode(small, x_components=4, y_components=4)

    def encode_jpeg(self, image: Image.Image, quality: int) -> bytes:
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=quality, optimize=True, progressive=True)
        return buffer.getvalue()
