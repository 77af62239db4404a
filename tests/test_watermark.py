"""
Watermark compositor tests.

Logos come from a fake fetcher so nothing touches the network.
"""

import io

import pytest
from PIL import Image

from pis_worker.errors import ProcessingError, TransientNetworkError, ValidationError
from pis_worker.pipeline.models import POSITIONS, WatermarkConfig
from pis_worker.pipeline.watermark import (
    WatermarkCompositor,
    compute_position,
    default_font_size,
    fit_overlay,
)


def png_bytes(size=(100, 100), color=(255, 0, 0, 255)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeLogoFetcher:
    """Returns canned bytes per URL, or raises the mapped exception."""

    def __init__(self, responses: dict):
        self.responses = responses
        self.calls = []

    def fetch(self, url):
        self.calls.append(url)
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


def multi(*layers) -> WatermarkConfig:
    return WatermarkConfig.from_album(True, None, {"watermarks": list(layers)})


# =============================================================================
# Placement
# =============================================================================

class TestComputePosition:
    """Anchor math and clamping."""

    @pytest.mark.parametrize("position", POSITIONS)
    @pytest.mark.parametrize("margin", [0, 1, 5, 10, 15, 20])
    def test_overlay_stays_on_canvas(self, position, margin):
        x, y = compute_position((100, 100), (40, 40), position, margin)
        assert 0 <= x <= 60
        assert 0 <= y <= 60

    def test_anchors(self):
        assert compute_position((1000, 500), (100, 50), "top-left", 5) == (25, 25)
        assert compute_position((1000, 500), (100, 50), "bottom-right", 5) == (875, 425)
        assert compute_position((1000, 500), (100, 50), "center", 5) == (450, 225)
        assert compute_position((1000, 500), (100, 50), "top-center", 0) == (450, 0)

    def test_oversized_overlay_clamps_to_origin(self):
        assert compute_position((100, 100), (150, 120), "bottom-right", 20) == (0, 0)

    def test_fit_overlay_scales_down(self):
        overlay = Image.new("RGBA", (200, 50))
        assert fit_overlay(overlay, (100, 100)).size == (100, 25)

    def test_fit_overlay_leaves_small_overlays(self):
        overlay = Image.new("RGBA", (20, 10))
        assert fit_overlay(overlay, (100, 100)) is overlay

    def test_default_font_size_bounds(self):
        assert default_font_size(100, 100) == 12
        assert default_font_size(4000, 3000) == 34
        assert default_font_size(20000, 20000) == 72


# =============================================================================
# Compositing
# =============================================================================

class TestCompositor:
    """Layer rendering and failure policy."""

    @pytest.fixture
    def canvas(self):
        return Image.new("RGB", (200, 200), (0, 0, 0))

    def test_inactive_config_returns_input(self, canvas):
        compositor = WatermarkCompositor(FakeLogoFetcher({}))
        assert compositor.apply(canvas, WatermarkConfig.disabled()) is canvas

    def test_logo_lands_at_anchor(self, canvas):
        fetcher = FakeLogoFetcher({"https://cdn.example.com/logo.png": png_bytes()})
        config = multi({
            "type": "logo",
            "logoUrl": "https://cdn.example.com/logo.png",
            "opacity": 1,
            "position": "bottom-right",
            "size": 40,
            "margin": 0,
        })

        result = WatermarkCompositor(fetcher).apply(canvas, config)

        assert result.mode == "RGB"
        assert result.getpixel((180, 180)) == (255, 0, 0)
        assert result.getpixel((150, 150)) == (0, 0, 0)
        assert result.getpixel((10, 10)) == (0, 0, 0)

    def test_logo_opacity(self, canvas):
        fetcher = FakeLogoFetcher({"https://cdn.example.com/logo.png": png_bytes()})
        config = multi({
            "type": "logo",
            "logoUrl": "https://cdn.example.com/logo.png",
            "opacity": 0.5,
            "position": "center",
            "size": 40,
        })

        r, g, b = WatermarkCompositor(fetcher).apply(canvas, config).getpixel((100, 100))
        assert 120 <= r <= 135
        assert g == b == 0

    def test_text_layer_draws(self, canvas):
        config = multi({"type": "text", "text": "PIS", "opacity": 1, "position": "center", "size": 60})
        result = WatermarkCompositor(FakeLogoFetcher({})).apply(canvas, config)
        assert result.getbbox() is not None

    def test_long_text_fits_canvas(self):
        canvas = Image.new("RGB", (120, 60), (0, 0, 0))
        config = multi({"type": "text", "text": "A very long studio name " * 4, "opacity": 1, "size": 48})
        result = WatermarkCompositor(FakeLogoFetcher({})).apply(canvas, config)
        assert result.size == (120, 60)
        assert result.getbbox() is not None

    def test_layers_without_content_are_skipped(self, canvas):
        config = multi({"type": "text", "text": ""}, {"type": "logo"})
        result = WatermarkCompositor(FakeLogoFetcher({})).apply(canvas, config)
        assert result.getbbox() is None

    def test_disabled_layer_not_rendered(self, canvas):
        fetcher = FakeLogoFetcher({})
        config = multi({"type": "logo", "logoUrl": "https://cdn.example.com/logo.png", "enabled": False})
        assert WatermarkCompositor(fetcher).apply(canvas, config) is canvas
        assert fetcher.calls == []

    def test_multi_layer_failure_skips_layer(self, canvas):
        fetcher = FakeLogoFetcher({
            "https://cdn.example.com/broken.png": TransientNetworkError("timed out"),
            "https://cdn.example.com/logo.png": png_bytes(),
        })
        config = multi(
            {"type": "logo", "logoUrl": "https://cdn.example.com/broken.png", "position": "top-left", "margin": 0, "size": 40, "opacity": 1},
            {"type": "logo", "logoUrl": "https://cdn.example.com/logo.png", "position": "bottom-right", "margin": 0, "size": 40, "opacity": 1},
        )

        result = WatermarkCompositor(fetcher).apply(canvas, config)

        assert result.getpixel((10, 10)) == (0, 0, 0)
        assert result.getpixel((180, 180)) == (255, 0, 0)

    def test_legacy_failure_is_raised(self, canvas):
        fetcher = FakeLogoFetcher({"http://10.0.0.1/logo.png": ValidationError("private address")})
        config = WatermarkConfig.from_album(True, "logo", {"logoUrl": "http://10.0.0.1/logo.png"})
        with pytest.raises(ValidationError):
            WatermarkCompositor(fetcher).apply(canvas, config)

    def test_legacy_unreadable_logo(self, canvas):
        fetcher = FakeLogoFetcher({"https://cdn.example.com/logo.png": b"<html>not a logo</html>"})
        config = WatermarkConfig.from_album(True, "logo", {"logoUrl": "https://cdn.example.com/logo.png"})
        with pytest.raises(ProcessingError):
            WatermarkCompositor(fetcher).apply(canvas, config)
