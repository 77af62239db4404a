"""
Watermark Compositor

Draws text and logo layers onto preview images. Layers composite in
order; every overlay is clamped so it always lands fully on the canvas.
"""

import io
import logging
import math
from functools import lru_cache

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from ..errors import PipelineError, ProcessingError
from ..metrics import watermark_layers_skipped
from .logo import LogoFetcher
from .models import WatermarkConfig, WatermarkLayer

logger = logging.getLogger(__name__)

MIN_FONT_SIZE = 12
MAX_FONT_SIZE = 72
LOGO_SCALE = 0.15  # logo box as a fraction of the short edge

FONT_CANDIDATES = [
    "DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/TTF/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
    "/System/Library/Fonts/Supplemental/Arial Bold.ttf",
    "arialbd.ttf",
]


def default_font_size(width: int, height: int) -> int:
    """Font size scaled to the canvas area, kept readable on small images."""
    size = math.floor(math.sqrt(width * height) * 0.01)
    return max(MIN_FONT_SIZE, min(MAX_FONT_SIZE, size))


def compute_position(
    canvas_size: tuple[int, int],
    overlay_size: tuple[int, int],
    position: str,
    margin_percent: float = 5.0,
) -> tuple[int, int]:
    """
    Top-left offset for an overlay at one of the nine anchors.

    Args:
        canvas_size: (W, H) of the image
        overlay_size: (w, h) of the overlay
        position: Anchor such as ``bottom-right`` or ``center``
        margin_percent: Margin as a percentage of the canvas short edge

    Returns:
        (x, y) clamped to [0, W-w] x [0, H-h]
    """
    canvas_w, canvas_h = canvas_size
    overlay_w, overlay_h = overlay_size
    margin = min(canvas_w, canvas_h) * margin_percent / 100

    if position == "center":
        vertical, horizontal = "center", "center"
    else:
        vertical, horizontal = position.split("-", 1)

    if horizontal == "left":
        x = margin
    elif horizontal == "right":
        x = canvas_w - overlay_w - margin
    else:
        x = (canvas_w - overlay_w) / 2

    if vertical == "top":
        y = margin
    elif vertical == "bottom":
        y = canvas_h - overlay_h - margin
    else:
        y = (canvas_h - overlay_h) / 2

    x = max(0, min(int(round(x)), canvas_w - overlay_w))
    y = max(0, min(int(round(y)), canvas_h - overlay_h))
    return x, y


def fit_overlay(overlay: Image.Image, canvas_size: tuple[int, int]) -> Image.Image:
    """Scale an overlay down, keeping aspect ratio, until it fits the canvas."""
    canvas_w, canvas_h = canvas_size
    if overlay.width <= canvas_w and overlay.height <= canvas_h:
        return overlay
    return ImageOps.contain(overlay, (canvas_w, canvas_h), Image.Resampling.LANCZOS)


@lru_cache(maxsize=64)
def load_font(font_path: str, size: int) -> ImageFont.ImageFont:
    candidates = [font_path] if font_path else []
    for candidate in candidates + FONT_CANDIDATES:
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    logger.debug("No TrueType font found, using Pillow's default font")
    return ImageFont.load_default(size=size)


class WatermarkCompositor:
    """Applies a WatermarkConfig to an image."""

    def __init__(self, logo_fetcher: LogoFetcher | None = None, font_path: str = ""):
        self.logo_fetcher = logo_fetcher or LogoFetcher()
        self.font_path = font_path

    def apply(self, image: Image.Image, config: WatermarkConfig) -> Image.Image:
        """
        Composite every enabled layer onto the image.

        A failing layer is logged and skipped for multi-layer configs. For the
        legacy single-watermark format the failure is raised instead.

        Args:
            image: Preview-sized image
            config: Watermark settings

        Returns:
            New RGB image, or the input untouched when no layer is active
        """
        if not config.is_active:
            return image

        canvas = image.convert("RGBA")
        for layer in config.active_layers:
            try:
                overlay = self.render_layer(layer, canvas.size)
                if overlay is None:
                    continue
                overlay = fit_overlay(overlay, canvas.size)
                offset = compute_position(canvas.size, overlay.size, layer.position, layer.margin)
                canvas.alpha_composite(overlay, dest=offset)
            except Exception as e:
                if config.legacy:
                    if isinstance(e, PipelineError):
                        raise
                    raise ProcessingError(f"Watermark failed: {e}") from e
                watermark_layers_skipped.labels(kind=layer.kind).inc()
                logger.warning(f"Skipping {layer.kind} watermark at {layer.position}: {e}")

        return canvas.convert("RGB")

    def render_layer(self, layer: WatermarkLayer, canvas_size: tuple[int, int]) -> Image.Image | None:
        """Render one layer to an RGBA overlay, or None when it has no content."""
        if layer.kind == "logo":
            if not layer.logo_url:
                return None
            return self.render_logo(layer, canvas_size)
        if not layer.text:
            return None
        return self.render_text(layer, canvas_size)

    def render_text(self, layer: WatermarkLayer, canvas_size: tuple[int, int]) -> Image.Image:
        canvas_w, canvas_h = canvas_size
        size = layer.size or default_font_size(canvas_w, canvas_h)
        font = load_font(self.font_path, size)
        measure = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
        left, top, right, bottom = measure.textbbox((0, 0), layer.text, font=font)

        # Shrink until the text fits the canvas
        while (right - left > canvas_w or bottom - top > canvas_h) and size > 1:
            size = max(1, int(size * 0.9))
            font = load_font(self.font_path, size)
            left, top, right, bottom = measure.textbbox((0, 0), layer.text, font=font)

        overlay = Image.new("RGBA", (max(1, right - left), max(1, bottom - top)), (0, 0, 0, 0))
        alpha = int(round(255 * layer.opacity))
        ImageDraw.Draw(overlay).text((-left, -top), layer.text, font=font, fill=(255, 255, 255, alpha))
        return overlay

    def render_logo(self, layer: WatermarkLayer, canvas_size: tuple[int, int]) -> Image.Image:
        data = self.logo_fetcher.fetch(layer.logo_url)
        try:
            logo = Image.open(io.BytesIO(data))
            logo.load()
        except (UnidentifiedImageError, OSError) as e:
            raise ProcessingError(f"Logo at {layer.logo_url} is not a readable image") from e

        box = layer.size or max(1, int(min(canvas_size) * LOGO_SCALE))
        logo = ImageOps.contain(logo.convert("RGBA"), (box, box), Image.Resampling.LANCZOS)
        if layer.opacity < 1.0:
            alpha = logo.getchannel("A").point(lambda a: int(round(a * layer.opacity)))
            logo.putalpha(alpha)
        return logo
