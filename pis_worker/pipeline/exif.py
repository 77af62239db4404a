"""
EXIF Extraction

Reads the camera fields worth showing in a gallery and drops everything
else, GPS included. Derivatives are re-encoded without EXIF, so location
data never leaves the original.
"""

import logging
from datetime import datetime

from PIL import ExifTags, Image

from .models import ExifData

logger = logging.getLogger(__name__)

EXIF_IFD = 0x8769

BASE_FIELDS = {
    "make": ExifTags.Base.Make,
    "model": ExifTags.Base.Model,
    "software": ExifTags.Base.Software,
    "orientation": ExifTags.Base.Orientation,
}

EXIF_FIELDS = {
    "lens_model": ExifTags.Base.LensModel,
    "datetime_original": ExifTags.Base.DateTimeOriginal,
    "exposure_time": ExifTags.Base.ExposureTime,
    "f_number": ExifTags.Base.FNumber,
    "iso": ExifTags.Base.ISOSpeedRatings,
    "focal_length": ExifTags.Base.FocalLength,
    "flash": ExifTags.Base.Flash,
    "width": ExifTags.Base.ExifImageWidth,
    "height": ExifTags.Base.ExifImageHeight,
}

INT_FIELDS = {"orientation", "iso", "flash", "width", "height"}
FLOAT_FIELDS = {"exposure_time", "f_number", "focal_length"}


def _clean(name: str, value):
    if isinstance(value, (tuple, list)):
        value = value[0] if value else None
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    if name in INT_FIELDS:
        return int(value)
    if name in FLOAT_FIELDS:
        return round(float(value), 6)
    text = str(value).replace("\x00", "").strip()
    return text or None


def extract_exif(image: Image.Image) -> ExifData:
    """
    Extract sanitized EXIF from a decoded image.

    Malformed EXIF yields an empty ExifData rather than an error.
    """
    try:
        exif = image.getexif()
        if not exif:
            return ExifData()

        values = {}
        for name, tag in BASE_FIELDS.items():
            if tag in exif:
                values[name] = _clean(name, exif[tag])

        sub_ifd = exif.get_ifd(EXIF_IFD)
        for name, tag in EXIF_FIELDS.items():
            if tag in sub_ifd:
                values[name] = _clean(name, sub_ifd[tag])

        return ExifData(**values)
    except Exception as e:
        logger.warning(f"Ignoring malformed EXIF: {e}")
        return ExifData()


def parse_exif_datetime(value: str | None) -> datetime | None:
    """Parse an EXIF ``YYYY:MM:DD HH:MM:SS`` timestamp."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%Y:%m:%d %H:%M:%S")
    except ValueError:
        logger.debug(f"Unparseable EXIF timestamp: {value}")
        return None
