"""
Photo processor tests.

Images are generated in memory; no fixtures on disk.
"""

import io

import pytest
from PIL import Image

from pis_worker.errors import ProcessingError
from pis_worker.pipeline import PhotoProcessor, WatermarkCompositor, WatermarkConfig
from pis_worker.pipeline.exif import parse_exif_datetime

from conftest import make_exif, make_image_bytes, open_image


@pytest.fixture
def processor() -> PhotoProcessor:
    return PhotoProcessor(compositor=WatermarkCompositor())


def text_watermark(text: str = "PIS Studio") -> WatermarkConfig:
    return WatermarkConfig.from_album(True, "text", {"text": text, "opacity": 0.8, "position": "center"})


# =============================================================================
# Derivatives
# =============================================================================

class TestDerivatives:
    """Thumbnail, preview and BlurHash output."""

    def test_basic_jpeg(self, processor, jpeg_bytes):
        result = processor.process(jpeg_bytes)

        assert (result.width, result.height) == (800, 600)
        assert result.format == "jpeg"

        thumb = open_image(result.thumb_buffer)
        preview = open_image(result.preview_buffer)
        assert thumb.format == "JPEG"
        assert thumb.size == (400, 300)
        assert preview.size == (800, 600)

    def test_small_images_are_not_upscaled(self, processor):
        result = processor.process(make_image_bytes(120, 80))
        assert open_image(result.thumb_buffer).size == (120, 80)
        assert open_image(result.preview_buffer).size == (120, 80)

    def test_large_images_are_bounded(self, processor):
        result = processor.process(make_image_bytes(3000, 1000))
        assert open_image(result.preview_buffer).size == (2560, 853)
        assert open_image(result.thumb_buffer).size == (400, 133)
        assert (result.width, result.height) == (3000, 1000)

    def test_blur_hash(self, processor, jpeg_bytes):
        result = processor.process(jpeg_bytes)
        # 4x4 components: size flag, max AC, DC and 15 AC values
        assert isinstance(result.blur_hash, str)
        assert len(result.blur_hash) == 36

    def test_processing_is_repeatable(self, processor, jpeg_bytes):
        first = processor.process(jpeg_bytes, watermark_config=text_watermark())
        second = processor.process(jpeg_bytes, watermark_config=text_watermark())
        assert first.thumb_buffer == second.thumb_buffer
        assert first.preview_buffer == second.preview_buffer
        assert first.blur_hash == second.blur_hash

    def test_png_transparency_flattened_to_white(self, processor):
        image = Image.new("RGBA", (50, 50), (0, 0, 0, 0))
        image.paste((255, 0, 0, 255), (0, 0, 25, 50))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")

        result = processor.process(buffer.getvalue())

        assert result.format == "png"
        preview = open_image(result.preview_buffer)
        assert preview.mode == "RGB"
        r, g, b = preview.getpixel((45, 25))
        assert min(r, g, b) > 240

    def test_undecodable_input(self, processor):
        with pytest.raises(ProcessingError):
            processor.process(b"definitely not an image")

    def test_truncated_input(self, processor, jpeg_bytes):
        with pytest.raises(ProcessingError):
            processor.process(jpeg_bytes[:200])


# =============================================================================
# Orientation
# =============================================================================

class TestOrientation:
    """EXIF orientation and manual rotation."""

    def test_exif_orientation_applied(self, processor):
        data = make_image_bytes(800, 600, exif=make_exif(orientation=6))
        result = processor.process(data)
        assert (result.width, result.height) == (600, 800)
        assert open_image(result.preview_buffer).size == (600, 800)

    @pytest.mark.parametrize("rotation, size", [
        (0, (800, 600)),
        (90, (600, 800)),
        (180, (800, 600)),
        (270, (600, 800)),
        (-90, (600, 800)),
        (450, (600, 800)),
    ])
    def test_manual_rotation(self, processor, jpeg_bytes, rotation, size):
        result = processor.process(jpeg_bytes, rotation=rotation)
        assert (result.width, result.height) == size

    def test_rotation_is_clockwise(self, processor):
        # Left half red, right half blue
        image = Image.new("RGB", (200, 100), (0, 0, 255))
        image.paste((255, 0, 0), (0, 0, 100, 100))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")

        result = processor.process(buffer.getvalue(), rotation=90)

        # After a clockwise quarter turn the red half sits on top
        preview = open_image(result.preview_buffer)
        top = preview.getpixel((50, 20))
        bottom = preview.getpixel((50, 180))
        assert top[0] > 200 and top[2] < 60
        assert bottom[2] > 200 and bottom[0] < 60

    def test_arbitrary_angle_expands_canvas(self, processor, jpeg_bytes):
        result = processor.process(jpeg_bytes, rotation=45)
        assert result.width > 800
        assert result.height > 600


# =============================================================================
# EXIF
# =============================================================================

class TestExif:
    """EXIF extraction and stripping."""

    def test_camera_fields_extracted(self, processor):
        result = processor.process(make_image_bytes(exif=make_exif()))
        exif = result.exif.to_dict()
        assert exif["make"] == "Canon"
        assert exif["model"] == "EOS R5"
        assert exif["iso"] == 400
        assert exif["datetime_original"] == "2024:05:01 10:30:00"

    def test_missing_exif_is_empty(self, processor, jpeg_bytes):
        assert processor.process(jpeg_bytes).exif.to_dict() == {}

    def test_derivatives_carry_no_exif(self, processor):
        result = processor.process(make_image_bytes(exif=make_exif()))
        assert not open_image(result.thumb_buffer).getexif()
        assert not open_image(result.preview_buffer).getexif()

    def test_parse_exif_datetime(self):
        parsed = parse_exif_datetime("2024:05:01 10:30:00")
        assert (parsed.year, parsed.month, parsed.day, parsed.hour) == (2024, 5, 1, 10)
        assert parse_exif_datetime("garbage") is None
        assert parse_exif_datetime(None) is None


# =============================================================================
# Grading and watermark
# =============================================================================

class TestGradingAndWatermark:

    def test_unknown_preset_is_skipped(self, processor, jpeg_bytes):
        plain = processor.process(jpeg_bytes)
        graded = processor.process(jpeg_bytes, style_preset="no-such-preset")
        assert graded.preview_buffer == plain.preview_buffer

    def test_preset_changes_output(self, processor, jpeg_bytes):
        plain = processor.process(jpeg_bytes)
        graded = processor.process(jpeg_bytes, style_preset="vintage")
        assert graded.preview_buffer != plain.preview_buffer

    def test_watermark_only_touches_preview(self, processor, jpeg_bytes):
        plain = processor.process(jpeg_bytes)
        marked = processor.process(jpeg_bytes, watermark_config=text_watermark())
        assert marked.thumb_buffer == plain.thumb_buffer
        assert marked.preview_buffer != plain.preview_buffer

    def test_disabled_watermark_is_ignored(self, processor, jpeg_bytes):
        plain = processor.process(jpeg_bytes)
        result = processor.process(jpeg_bytes, watermark_config=WatermarkConfig.disabled())
        assert result.preview_buffer == plain.preview_buffer

    def test_watermark_without_compositor(self, jpeg_bytes):
        with pytest.raises(ProcessingError):
            PhotoProcessor().process(jpeg_bytes, watermark_config=text_watermark())

    def test_watermark_helper_returns_preview(self, processor, jpeg_bytes):
        data = processor.watermark(jpeg_bytes, text_watermark())
        assert open_image(data).size == (800, 600)
