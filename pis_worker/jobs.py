"""
Job Handlers

What the worker does with each queue's jobs:
- photo-processing: build derivatives for one uploaded photo
- package-downloads: build and publish an album download archive
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

import redis

from .errors import PipelineError, ValidationError
from .metrics import photos_processed
from .packager import PackageCreator
from .pipeline.exif import parse_exif_datetime
from .pipeline.models import WatermarkConfig
from .pipeline.processor import PhotoProcessor
from .queue import Job, RedisQueue
from .records import AlbumCache, PhotoAsset, RecordStore
from .storage.base import StorageAdapter

logger = logging.getLogger(__name__)

PHOTO_JOB = "process-photo"
PACKAGE_JOB = "create-package"


def thumb_key(album_id: str, photo_id: str) -> str:
    return f"processed/thumbs/{album_id}/{photo_id}.jpg"


def preview_key(album_id: str, photo_id: str) -> str:
    return f"processed/previews/{album_id}/{photo_id}.jpg"


def package_key(album_id: str, package_id: str) -> str:
    return f"packages/{album_id}/{package_id}.zip"


def enqueue_photo(queue: RedisQueue, photo: PhotoAsset) -> str:
    """Queue a photo for processing. The photo id doubles as the job id."""
    return queue.enqueue(
        {"photoId": photo.id, "albumId": photo.album_id, "originalKey": photo.original_key},
        job_id=photo.id,
        name=PHOTO_JOB,
    )


def content_disposition(title: str) -> str:
    """Attachment header carrying a UTF-8 filename with an ASCII fallback."""
    filename = f"{title or 'photos'}.zip"
    fallback = filename.encode("ascii", "ignore").decode().replace('"', "").strip() or "photos.zip"
    if fallback == ".zip":
        fallback = "photos.zip"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


class PhotoJobHandler:
    """Turns an uploaded original into thumb, preview and metadata."""

    def __init__(
        self,
        storage: StorageAdapter,
        records: RecordStore,
        processor: PhotoProcessor,
        albums: AlbumCache,
    ):
        self.storage = storage
        self.records = records
        self.processor = processor
        self.albums = albums

    def __call__(self, job: Job) -> dict[str, Any]:
        photo_id = job.payload["photoId"]
        album_id = job.payload["albumId"]
        original_key = job.payload["originalKey"]
        logger.info(f"[{job.id}] Processing photo {photo_id} for album {album_id}")

        photo = self.records.get_photo(photo_id)
        if photo is None:
            logger.info(f"[{job.id}] Photo record not found, skipping")
            photos_processed.labels(result="skipped").inc()
            return {"skipped": "missing"}
        if photo.status == "completed":
            logger.info(f"[{job.id}] Photo already completed, skipping")
            photos_processed.labels(result="skipped").inc()
            return {"skipped": "completed"}

        if not self.records.update_photo(photo_id, {"status": "processing"}):
            logger.info(f"[{job.id}] Photo record disappeared, skipping")
            return {"skipped": "missing"}

        try:
            result = self._process(job, photo, album_id, original_key)
        except Exception:
            photos_processed.labels(result="failed").inc()
            try:
                self.records.update_photo(photo_id, {"status": "failed"})
            except PipelineError as update_error:
                logger.warning(f"[{job.id}] Could not mark photo failed: {update_error}")
            raise

        photos_processed.labels(result="completed").inc()
        return result

    def _process(self, job: Job, photo: PhotoAsset, album_id: str, original_key: str) -> dict[str, Any]:
        original = self.storage.download(original_key)

        album = self.albums.get(album_id)
        if album is None:
            logger.warning(f"[{job.id}] Album {album_id} not found, processing without watermark")
            watermark, style_preset = WatermarkConfig.disabled(), None
        else:
            watermark, style_preset = album.watermark(), album.style_preset

        result = self.processor.process(
            original,
            watermark_config=watermark,
            rotation=photo.rotation,
            style_preset=style_preset,
        )

        thumb = thumb_key(album_id, photo.id)
        preview = preview_key(album_id, photo.id)
        jpeg = {"Content-Type": "image/jpeg"}
        with ThreadPoolExecutor(max_workers=2) as uploads:
            futures = [
                uploads.submit(self.storage.upload, thumb, result.thumb_buffer, jpeg),
                uploads.submit(self.storage.upload, preview, result.preview_buffer, jpeg),
            ]
            for future in futures:
                future.result()

        captured_at = parse_exif_datetime(result.exif.datetime_original) or datetime.now(timezone.utc)
        now = datetime.now(timezone.utc)
        self.records.update_photo(photo.id, {
            "status": "completed",
            "thumb_key": thumb,
            "preview_key": preview,
            "width": result.width,
            "height": result.height,
            "blur_data": result.blur_hash,
            "exif": result.exif.to_dict(),
            "file_size": len(original),
            "mime_type": f"image/{result.format}",
            "captured_at": captured_at,
            "updated_at": now,
        })
        logger.info(f"[{job.id}] Photo {photo.id} completed ({result.width}x{result.height})")
        return {"thumbKey": thumb, "previewKey": preview}


class PackageJobHandler:
    """Builds a ZIP for an album download request and publishes a link."""

    def __init__(
        self,
        storage: StorageAdapter,
        records: RecordStore,
        creator: PackageCreator,
        albums: AlbumCache,
        url_ttl: int = 3600,
    ):
        self.storage = storage
        self.records = records
        self.creator = creator
        self.albums = albums
        self.url_ttl = url_ttl

    def __call__(self, job: Job) -> dict[str, Any]:
        payload = job.payload
        package_id = payload["packageId"]
        album_id = payload["albumId"]
        logger.info(f"[{job.id}] Building package {package_id} for album {album_id}")

        self.records.update_package(package_id, {"status": "processing"})
        try:
            return self._build(job, package_id, album_id, payload)
        except Exception:
            try:
                self.records.update_package(package_id, {"status": "failed"})
            except PipelineError as update_error:
                logger.warning(f"[{job.id}] Could not mark package failed: {update_error}")
            raise

    def _build(self, job: Job, package_id: str, album_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        album = self.albums.get(album_id)
        watermark = album.watermark() if album else WatermarkConfig.disabled()

        photo_ids = list(payload.get("photoIds") or [])
        photos = self.records.list_photos(status="completed", photo_ids=photo_ids) if photo_ids else []
        order = {photo_id: i for i, photo_id in enumerate(photo_ids)}
        photos = sorted((p for p in photos if p.id in order), key=lambda p: order[p.id])
        if not photos:
            raise ValidationError(f"No completed photos found for package {package_id}")

        result = self.creator.create_package(
            photos,
            watermark_config=watermark,
            include_original=payload.get("includeOriginal", True),
            include_watermarked=payload.get("includeWatermarked", True),
        )

        key = package_key(album_id, package_id)
        self.storage.upload(key, result.data, {
            "Content-Type": "application/zip",
            "Content-Disposition": content_disposition(album.title if album else ""),
        })

        download_url = self.storage.presigned_get_url(key, self.url_ttl)
        now = datetime.now(timezone.utc)
        self.records.update_package(package_id, {
            "status": "completed",
            "zip_key": key,
            "file_size": len(result.data),
            "download_url": download_url,
            "expires_at": now + timedelta(seconds=self.url_ttl),
            "completed_at": now,
        })
        logger.info(f"[{job.id}] Package {package_id} ready: {result.included} photos, {result.skipped} skipped")
        return {"zipKey": key, "included": result.included, "skipped": result.skipped}


def recover_stuck_photos(records: RecordStore, queue: RedisQueue) -> dict[str, int]:
    """
    Repair photos left in ``processing`` by a worker that died mid-job.

    Photos with a live job are left alone. Photos whose derivative keys were
    already recorded are marked completed; the rest go back to pending and
    are queued again.
    """
    stuck = records.list_photos(status="processing")
    if not stuck:
        logger.info("No stuck processing photos found")
        return {"completed": 0, "requeued": 0}

    live = queue.live_job_ids()
    completed = requeued = 0
    for photo in stuck:
        if photo.id in live:
            continue
        try:
            if photo.thumb_key and photo.preview_key:
                records.update_photo(photo.id, {"status": "completed"})
                completed += 1
            else:
                records.update_photo(photo.id, {"status": "pending"})
                enqueue_photo(queue, photo)
                requeued += 1
        except (PipelineError, redis.RedisError) as e:
            logger.error(f"Failed to recover photo {photo.id}: {e}")

    logger.info(f"Recovered stuck photos: {completed} marked completed, {requeued} requeued")
    return {"completed": completed, "requeued": requeued}


def requeue_photos(
    records: RecordStore,
    queue: RedisQueue,
    album_id: str | None = None,
    statuses: tuple[str, ...] = ("pending", "failed"),
    dry_run: bool = False,
) -> dict[str, int]:
    """
    Queue photos that never finished processing.

    Photos that already have a live job are skipped.

    Returns:
        Counts of queued, skipped and errored photos
    """
    live = queue.live_job_ids()
    counts = {"queued": 0, "skipped": 0, "errors": 0}
    for status in statuses:
        for photo in records.list_photos(album_id=album_id, status=status):
            if photo.id in live:
                counts["skipped"] += 1
                continue
            if dry_run:
                counts["queued"] += 1
                continue
            try:
                enqueue_photo(queue, photo)
                counts["queued"] += 1
            except redis.RedisError as e:
                logger.error(f"Failed to queue photo {photo.id}: {e}")
                counts["errors"] += 1
    return counts
