"""
Package Creator

Builds album download archives. Each photo can appear twice: the untouched
original and a watermarked copy, in separate folders.
"""

import io
import logging
import posixpath
import zipfile
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import BinaryIO

from .errors import PipelineError, ValidationError
from .metrics import package_photos
from .pipeline.models import WatermarkConfig
from .pipeline.processor import PhotoProcessor
from .records import PhotoAsset
from .storage.base import StorageAdapter

logger = logging.getLogger(__name__)

ORIGINAL_FOLDER = "无水印"
WATERMARKED_FOLDER = "有水印"

Entry = tuple[str, str, bytes]  # folder, filename, data


@dataclass
class PackageResult:
    """Outcome of building one archive."""
    included: int
    skipped: int
    skipped_ids: list[str] = field(default_factory=list)
    data: bytes | None = None  # set when the archive was built in memory


def _entry_name(photo: PhotoAsset) -> str:
    name = posixpath.basename((photo.filename or "").replace("\\", "/"))
    return name or f"{photo.id}.jpg"


def _jpeg_name(name: str) -> str:
    stem, ext = posixpath.splitext(name)
    if ext.lower() in (".jpg", ".jpeg"):
        return name
    return f"{stem}.jpg"


class _NameRegistry:
    """Hands out unique names per folder: ``a.jpg``, ``a (1).jpg``, ..."""

    def __init__(self):
        self._used: dict[str, set[str]] = {}

    def claim(self, folder: str, name: str) -> str:
        used = self._used.setdefault(folder, set())
        candidate = name
        stem, ext = posixpath.splitext(name)
        n = 1
        while candidate.lower() in used:
            candidate = f"{stem} ({n}){ext}"
            n += 1
        used.add(candidate.lower())
        return f"{folder}/{candidate}"


class PackageCreator:
    """Streams photos from storage into a ZIP archive."""

    def __init__(self, storage: StorageAdapter, processor: PhotoProcessor, workers: int = 4):
        self.storage = storage
        self.processor = processor
        self.workers = max(1, workers)

    def create_package(
        self,
        photos: list[PhotoAsset],
        watermark_config: WatermarkConfig | None = None,
        include_original: bool = True,
        include_watermarked: bool = True,
        output: BinaryIO | None = None,
    ) -> PackageResult:
        """
        Build a ZIP of the given photos.

        Photos are prepared in parallel but written in input order. A photo
        that fails to download or watermark is logged and left out; a
        failure writing the archive itself aborts the package.

        Args:
            photos: Photos to include, in archive order
            watermark_config: Album watermark; disabled means the
                watermarked folder holds the originals
            include_original: Add the ``无水印/`` folder
            include_watermarked: Add the ``有水印/`` folder
            output: Writable stream; an in-memory buffer when omitted

        Returns:
            PackageResult, with ``data`` set when no output stream was given

        Raises:
            ValidationError: no photos, or both folders switched off
        """
        if not photos:
            raise ValidationError("Cannot create a package without photos")
        if not include_original and not include_watermarked:
            raise ValidationError("Package must include originals, watermarked copies, or both")

        watermark_config = watermark_config or WatermarkConfig.disabled()
        buffer = output if output is not None else io.BytesIO()
        names = _NameRegistry()
        result = PackageResult(included=0, skipped=0)
        window = self.workers * 2
        pending: deque[tuple[PhotoAsset, Future]] = deque()

        with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_STORED) as archive:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="package") as pool:
                try:
                    for photo in photos:
                        future = pool.submit(
                            self._prepare, photo, watermark_config, include_original, include_watermarked,
                        )
                        pending.append((photo, future))
                        if len(pending) >= window:
                            self._write_next(archive, pending, names, result)
                    while pending:
                        self._write_next(archive, pending, names, result)
                except Exception:
                    for _, future in pending:
                        future.cancel()
                    raise

        logger.info(f"Package built: {result.included} photos included, {result.skipped} skipped")
        if output is None:
            result.data = buffer.getvalue()
        return result

    def _write_next(self, archive: zipfile.ZipFile, pending: deque, names: _NameRegistry, result: PackageResult):
        photo, future = pending.popleft()
        try:
            entries = future.result()
        except Exception as e:
            logger.error(f"Failed to prepare photo {photo.id} for package: {e}")
            result.skipped += 1
            result.skipped_ids.append(photo.id)
            package_photos.labels(result="skipped").inc()
            return

        for folder, filename, data in entries:
            archive.writestr(names.claim(folder, filename), data)
        result.included += 1
        package_photos.labels(result="included").inc()

    def _prepare(
        self,
        photo: PhotoAsset,
        watermark_config: WatermarkConfig,
        include_original: bool,
        include_watermarked: bool,
    ) -> list[Entry]:
        original = self.storage.download(photo.original_key)
        name = _entry_name(photo)
        entries = []
        if include_original:
            entries.append((ORIGINAL_FOLDER, name, original))
        if include_watermarked:
            if watermark_config.is_active:
                entries.append((WATERMARKED_FOLDER, _jpeg_name(name), self._watermarked(photo, original, watermark_config)))
            else:
                entries.append((WATERMARKED_FOLDER, name, original))
        return entries

    def _watermarked(self, photo: PhotoAsset, original: bytes, watermark_config: WatermarkConfig) -> bytes:
        """Stored preview if there is one, otherwise watermark the original again."""
        if photo.preview_key:
            try:
                return self.storage.download(photo.preview_key)
            except PipelineError as e:
                logger.warning(f"Preview for photo {photo.id} unavailable ({e}), re-rendering watermark")
        return self.processor.watermark(original, watermark_config, rotation=photo.rotation)
