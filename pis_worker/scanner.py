"""
Sync-Folder Scanner

Imports photos dropped into ``sync/{albumId}/`` (FTP, rclone, bucket
sync) as if they had been uploaded through the web app.
"""

import logging
import posixpath
import uuid
from dataclasses import dataclass

from .errors import PipelineError
from .jobs import enqueue_photo
from .queue import RedisQueue
from .records import RecordStore
from .storage.base import StorageAdapter

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".heic", ".webp"}


@dataclass
class ScanResult:
    found: int = 0
    added: int = 0
    skipped: int = 0
    failed: int = 0


class AlbumScanner:
    """Moves new sync-folder images into the album and queues them."""

    def __init__(self, storage: StorageAdapter, records: RecordStore, queue: RedisQueue):
        self.storage = storage
        self.records = records
        self.queue = queue

    def scan(self, album_id: str) -> ScanResult:
        """
        Import new images from an album's sync folder.

        Files whose name is already used by a photo in the album are left
        where they are.

        Args:
            album_id: Album to scan

        Returns:
            ScanResult with found / added / skipped / failed counts
        """
        prefix = f"sync/{album_id}/"
        images = [
            obj for obj in self.storage.list_objects(prefix)
            if posixpath.splitext(obj.key)[1].lower() in IMAGE_EXTENSIONS
        ]
        result = ScanResult(found=len(images))
        logger.info(f"Found {len(images)} images in {prefix}")
        if not images:
            return result

        existing = {p.filename for p in self.records.list_photos(album_id=album_id) if p.filename}

        for obj in images:
            filename = posixpath.basename(obj.key)
            if filename in existing:
                logger.debug(f"Skipping existing file {filename}")
                result.skipped += 1
                continue

            try:
                self._import(album_id, obj.key, filename, obj.size)
            except PipelineError as e:
                logger.error(f"Failed to import {obj.key}: {e}")
                result.failed += 1
                continue

            existing.add(filename)
            result.added += 1

        logger.info(f"Scan of album {album_id}: {result.added} added, {result.skipped} skipped, {result.failed} failed")
        return result

    def _import(self, album_id: str, source_key: str, filename: str, size: int):
        photo_id = str(uuid.uuid4())
        ext = posixpath.splitext(filename)[1].lower().lstrip(".")
        raw_key = f"raw/{album_id}/{photo_id}.{ext}"

        self.storage.copy(source_key, raw_key)
        try:
            photo = self.records.create_photo({
                "id": photo_id,
                "album_id": album_id,
                "original_key": raw_key,
                "filename": filename,
                "file_size": size,
                "status": "pending",
            })
        except PipelineError:
            try:
                self.storage.delete(raw_key)
            except PipelineError as cleanup_error:
                logger.error(f"Failed to clean up copied file {raw_key}: {cleanup_error}")
            raise

        enqueue_photo(self.queue, photo)

        try:
            self.storage.delete(source_key)
        except PipelineError as e:
            logger.warning(f"Failed to delete source file {source_key}: {e}")
