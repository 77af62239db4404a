"""
PIS Style Presets

Curated color-grading presets an album can apply to every derivative.
Lightroom-style adjustments kept simple enough that admins just pick one.
"""

import logging

import numpy as np
from PIL import Image, ImageEnhance

logger = logging.getLogger(__name__)

# Style presets with their grading parameters
#   brightness  0.0 - 2.0, 1.0 = unchanged
#   contrast   -1.0 - 1.0, 0.0 = unchanged
#   saturation  0.0 - 2.0, 1.0 = unchanged
#   gamma       0.1 - 3.0, 1.0 = unchanged
#   hue         degrees of hue rotation
#   tint        per-channel multiplier as an (r, g, b) color, white = unchanged
STYLE_PRESETS = {
    # Portrait
    "japanese-fresh": {
        "name": "Japanese Fresh",
        "category": "portrait",
        "description": "Warm soft light and a gentle, airy mood for portraits",
        "config": {
            "brightness": 1.05,
            "contrast": -0.1,
            "saturation": 0.9,
            "gamma": 1.05,
            "hue": 10,
            "tint": (255, 250, 245),
        },
    },
    "film-portrait": {
        "name": "Film Portrait",
        "category": "portrait",
        "description": "Film-like texture with added depth",
        "config": {
            "brightness": 1.0,
            "contrast": 0.15,
            "saturation": 1.1,
            "gamma": 1.1,
            "hue": 5,
            "tint": (255, 252, 248),
        },
    },
    "cinematic-portrait": {
        "name": "Cinematic Portrait",
        "category": "portrait",
        "description": "Soft highlights and warm tones for romantic scenes",
        "config": {
            "brightness": 0.95,
            "contrast": 0.25,
            "saturation": 0.85,
            "gamma": 1.15,
            "hue": 15,
            "tint": (255, 248, 240),
        },
    },
    "realistic-portrait": {
        "name": "Realistic Portrait",
        "category": "portrait",
        "description": "True color with natural skin texture",
        "config": {
            "brightness": 1.02,
            "contrast": 0.1,
            "saturation": 1.05,
            "gamma": 1.0,
            "hue": 0,
        },
    },
    "warm-portrait": {
        "name": "Warm Portrait",
        "category": "portrait",
        "description": "Warm tones for portraits and indoor shoots",
        "config": {
            "brightness": 1.05,
            "saturation": 1.1,
            "gamma": 1.05,
            "hue": 10,
            "tint": (255, 250, 245),
        },
    },
    # Landscape
    "natural-landscape": {
        "name": "Natural Landscape",
        "category": "landscape",
        "description": "Balanced natural color with the original texture",
        "config": {
            "brightness": 1.0,
            "contrast": 0.1,
            "saturation": 1.15,
            "gamma": 1.0,
            "hue": 0,
        },
    },
    "cinematic-landscape": {
        "name": "Cinematic Landscape",
        "category": "landscape",
        "description": "Moody cinematic grading",
        "config": {
            "brightness": 0.95,
            "contrast": 0.3,
            "saturation": 0.9,
            "gamma": 1.2,
            "hue": 5,
            "tint": (255, 250, 245),
        },
    },
    "film-landscape": {
        "name": "Film Landscape",
        "category": "landscape",
        "description": "Retro 35mm film look",
        "config": {
            "brightness": 1.0,
            "contrast": 0.2,
            "saturation": 1.1,
            "gamma": 1.1,
            "hue": 8,
            "tint": (255, 252, 248),
        },
    },
    "vibrant-landscape": {
        "name": "Vibrant Landscape",
        "category": "landscape",
        "description": "Bright, saturated color",
        "config": {
            "brightness": 1.1,
            "saturation": 1.3,
            "contrast": 0.1,
            "gamma": 1.0,
        },
    },
    "golden-hour": {
        "name": "Golden Hour",
        "category": "landscape",
        "description": "Warm golden tones for sunsets",
        "config": {
            "brightness": 1.05,
            "saturation": 1.2,
            "gamma": 1.05,
            "hue": 20,
            "tint": (255, 245, 235),
        },
    },
    # General
    "black-white": {
        "name": "Black & White",
        "category": "general",
        "description": "Classic monochrome",
        "config": {
            "saturation": 0,
            "contrast": 0.2,
            "brightness": 1.0,
        },
    },
    "vintage": {
        "name": "Vintage",
        "category": "general",
        "description": "Warm retro tones with extra contrast",
        "config": {
            "brightness": 1.05,
            "contrast": 0.15,
            "saturation": 1.1,
            "hue": 15,
            "gamma": 1.1,
        },
    },
    "cool": {
        "name": "Cool",
        "category": "general",
        "description": "Crisp cool tones",
        "config": {
            "brightness": 1.0,
            "saturation": 0.9,
            "hue": -10,
        },
    },
}

CATEGORY_ORDER = ["portrait", "landscape", "general"]


def get_preset(preset_id: str) -> dict:
    """
    Get the grading config for a preset.

    Args:
        preset_id: Preset key (japanese-fresh, golden-hour, ...)

    Returns:
        Grading parameters
    """
    if preset_id not in STYLE_PRESETS:
        raise ValueError(f"Unknown style preset: {preset_id}. Available: {list(STYLE_PRESETS.keys())}")
    return STYLE_PRESETS[preset_id]["config"]


def get_available_presets(category: str | None = None) -> list[dict]:
    """
    Get list of presets with metadata, ordered by category.

    Returns:
        List of preset dictionaries with id, name, category and description
    """
    presets = [
        {
            "id": key,
            "name": preset["name"],
            "category": preset["category"],
            "description": preset["description"],
        }
        for key, preset in STYLE_PRESETS.items()
        if category is None or preset["category"] == category
    ]
    return sorted(presets, key=lambda p: CATEGORY_ORDER.index(p["category"]))


def _rotate_hue(image: Image.Image, degrees: float) -> Image.Image:
    hsv = np.array(image.convert("HSV"), dtype=np.int16)
    shift = int(round(degrees / 360 * 256))
    hsv[..., 0] = (hsv[..., 0] + shift) % 256
    return Image.fromarray(hsv.astype(np.uint8), "HSV").convert("RGB")


def apply_preset(image: Image.Image, preset_id: str) -> Image.Image:
    """
    Apply a style preset to an RGB image.

    Adjustments run in a fixed order (brightness, contrast, saturation,
    gamma, hue, tint) so identical input always grades identically.
    """
    config = get_preset(preset_id)
    image = image.convert("RGB")

    brightness = config.get("brightness", 1.0)
    if brightness != 1.0:
        image = ImageEnhance.Brightness(image).enhance(brightness)

    contrast = config.get("contrast", 0.0)
    if contrast:
        image = ImageEnhance.Contrast(image).enhance(1.0 + contrast)

    saturation = config.get("saturation", 1.0)
    if saturation != 1.0:
        image = ImageEnhance.Color(image).enhance(saturation)

    gamma = config.get("gamma", 1.0)
    if gamma != 1.0:
        lut = [min(255, int(round(255 * (i / 255) ** (1.0 / gamma)))) for i in range(256)]
        image = image.point(lut * 3)

    hue = config.get("hue", 0)
    if hue:
        image = _rotate_hue(image, hue)

    tint = config.get("tint")
    if tint:
        lut = []
        for channel in tint:
            lut.extend(min(255, int(round(i * channel / 255))) for i in range(256))
        image = image.point(lut)

    logger.debug(f"Applied style preset {preset_id}")
    return image
