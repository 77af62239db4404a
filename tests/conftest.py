"""
Pytest fixtures for the worker tests.

Storage and records are in-memory fakes; Redis is fakeredis; images are
generated with Pillow.
"""

import io
import threading
from datetime import datetime, timezone

import fakeredis
import pytest
from PIL import Image

from pis_worker.errors import NotFoundError, PipelineError, TransientStorageError
from pis_worker.queue import RedisQueue
from pis_worker.records import AlbumSettings, PhotoAsset, RecordStore
from pis_worker.storage.base import CompletedPart, StorageAdapter, StorageObject, UploadResult


# =============================================================================
# Fakes
# =============================================================================

class MemoryStorage(StorageAdapter):
    """Dict-backed storage adapter."""

    def __init__(self):
        self.bucket = "test-bucket"
        self.objects: dict[str, bytes] = {}
        self.metadata: dict[str, dict] = {}
        self.failing_keys: set[str] = set()
        self.uploads: list[str] = []
        self._lock = threading.Lock()

    def _check(self, key: str):
        if key in self.failing_keys:
            raise TransientStorageError(f"simulated failure for {key}")

    def download(self, key):
        self._check(key)
        with self._lock:
            if key not in self.objects:
                raise NotFoundError(key)
            return self.objects[key]

    def upload(self, key, data, metadata=None):
        self._check(key)
        with self._lock:
            self.objects[key] = bytes(data)
            self.metadata[key] = dict(metadata or {})
            self.uploads.append(key)
        return UploadResult(etag=f"etag-{len(data)}")

    def presigned_put_url(self, key, ttl=None):
        return f"https://storage.test/{key}?op=put&ttl={ttl}"

    def presigned_get_url(self, key, ttl=None):
        return f"https://storage.test/{key}?op=get&ttl={ttl}"

    def init_multipart(self, key):
        return "upload-1"

    def upload_part(self, key, upload_id, part_number, data):
        return {"etag": f"part-{part_number}"}

    def presigned_part_url(self, key, upload_id, part_number, ttl=None):
        return f"https://storage.test/{key}?uploadId={upload_id}&partNumber={part_number}"

    def complete_multipart(self, key, upload_id, parts: list[CompletedPart]):
        with self._lock:
            self.objects[key] = b""

    def abort_multipart(self, key, upload_id):
        pass

    def delete(self, key):
        self._check(key)
        with self._lock:
            self.objects.pop(key, None)

    def exists(self, key):
        with self._lock:
            return key in self.objects

    def list_objects(self, prefix):
        with self._lock:
            return [
                StorageObject(key=k, size=len(v), last_modified=datetime.now(timezone.utc), etag="x")
                for k, v in sorted(self.objects.items())
                if k.startswith(prefix)
            ]

    def copy(self, src_key, dest_key):
        self._check(src_key)
        with self._lock:
            if src_key not in self.objects:
                raise NotFoundError(src_key)
            self.objects[dest_key] = self.objects[src_key]


class MemoryRecordStore(RecordStore):
    """Dict-backed record store."""

    def __init__(self):
        self.photos: dict[str, PhotoAsset] = {}
        self.albums: dict[str, AlbumSettings] = {}
        self.packages: dict[str, dict] = {}
        self.photo_updates: list[tuple[str, dict]] = []
        self.album_reads = 0
        self.fail_create = False
        self._lock = threading.Lock()

    def add_photo(self, **fields) -> PhotoAsset:
        photo = PhotoAsset(**fields)
        self.photos[photo.id] = photo
        return photo

    def get_photo(self, photo_id):
        return self.photos.get(photo_id)

    def update_photo(self, photo_id, fields):
        with self._lock:
            photo = self.photos.get(photo_id)
            if photo is None:
                return False
            self.photo_updates.append((photo_id, dict(fields)))
            self.photos[photo_id] = photo.model_copy(update=fields)
            return True

    def list_photos(self, album_id=None, status=None, photo_ids=None):
        return [
            p for p in self.photos.values()
            if (album_id is None or p.album_id == album_id)
            and (status is None or p.status == status)
            and (photo_ids is None or p.id in photo_ids)
        ]

    def create_photo(self, fields):
        if self.fail_create:
            raise PipelineError("simulated insert failure")
        return self.add_photo(**fields)

    def get_album(self, album_id):
        self.album_reads += 1
        return self.albums.get(album_id)

    def update_package(self, package_id, fields):
        with self._lock:
            self.packages.setdefault(package_id, {}).update(fields)
        return True


# =============================================================================
# Image helpers
# =============================================================================

def make_image_bytes(
    width: int = 800,
    height: int = 600,
    color=(200, 120, 40),
    fmt: str = "JPEG",
    exif: Image.Exif | None = None,
) -> bytes:
    image = Image.new("RGB", (width, height), color)
    # A gradient keeps JPEG and BlurHash output non-trivial
    for x in range(0, width, max(1, width // 16)):
        image.paste((x * 255 // max(1, width), 80, 160), (x, 0, min(width, x + 4), height))
    buffer = io.BytesIO()
    kwargs = {"exif": exif} if exif is not None else {}
    image.save(buffer, format=fmt, **kwargs)
    return buffer.getvalue()


def make_exif(orientation: int | None = None) -> Image.Exif:
    exif = Image.Exif()
    exif[0x010F] = "Canon"  # Make
    exif[0x0110] = "EOS R5"  # Model
    if orientation:
        exif[0x0112] = orientation
    exif[0x8769] = {
        0x9003: "2024:05:01 10:30:00",  # DateTimeOriginal
        0x8827: 400,  # ISOSpeedRatings
    }
    return exif


def open_image(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def records() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def queue(redis_client) -> RedisQueue:
    return RedisQueue(redis_client, "photo-processing", prefix="test:queue", attempts=3, backoff_delay=0)


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def no_network(monkeypatch):
    """Fail the test if anything tries to resolve a hostname."""
    import socket

    def _blocked(*args, **kwargs):
        raise AssertionError("unexpected DNS lookup")

    monkeypatch.setattr(socket, "getaddrinfo", _blocked)
