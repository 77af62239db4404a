"""
Record Store

Photo, album and package records live behind the web app's internal API.
The worker reads and patches them over HTTP.
"""
from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable

import httpx
from pydantic import BaseModel

from .errors import PipelineError, TransientNetworkError
from .pipeline.models import WatermarkConfig

logger = logging.getLogger(__name__)


# ============================================================================
# Records
# ============================================================================

class PhotoAsset(BaseModel):
    """A photo record, as far as the worker cares."""
    id: str
    album_id: str
    original_key: str
    filename: str | None = None
    status: str = "pending"
    thumb_key: str | None = None
    preview_key: str | None = None
    width: int | None = None
    height: int | None = None
    blur_data: str | None = None
    exif: dict[str, Any] | None = None
    file_size: int | None = None
    mime_type: str | None = None
    captured_at: datetime | None = None
    rotation: int | None = None


class AlbumSettings(BaseModel):
    """Album fields that shape processing."""
    id: str
    title: str = ""
    watermark_enabled: bool = False
    watermark_type: str | None = None
    watermark_config: dict[str, Any] | None = None
    color_grading: dict[str, Any] | None = None

    @property
    def style_preset(self) -> str | None:
        return (self.color_grading or {}).get("preset") or None

    def watermark(self) -> WatermarkConfig:
        """Parse this album's watermark settings."""
        return WatermarkConfig.from_album(
            self.watermark_enabled,
            self.watermark_type,
            self.watermark_config,
        )


# ============================================================================
# Store contract
# ============================================================================

class RecordStore(ABC):
    """Persistence the worker needs for photos, albums and packages."""

    @abstractmethod
    def get_photo(self, photo_id: str) -> PhotoAsset | None:
        """Fetch a photo, or None if it does not exist."""

    @abstractmethod
    def update_photo(self, photo_id: str, fields: dict[str, Any]) -> bool:
        """Patch a photo. Returns False if it does not exist."""

    @abstractmethod
    def list_photos(
        self,
        album_id: str | None = None,
        status: str | None = None,
        photo_ids: list[str] | None = None,
    ) -> list[PhotoAsset]:
        """List photos matching every given filter."""

    @abstractmethod
    def create_photo(self, fields: dict[str, Any]) -> PhotoAsset:
        """Create a photo record."""

    @abstractmethod
    def get_album(self, album_id: str) -> AlbumSettings | None:
        """Fetch album settings, or None if the album does not exist."""

    @abstractmethod
    def update_package(self, package_id: str, fields: dict[str, Any]) -> bool:
        """Patch a download package. Returns False if it does not exist."""

    def health_check(self) -> bool:
        return True


def _jsonable(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in fields.items()}


class ApiRecordStore(RecordStore):
    """RecordStore backed by the web app's internal API."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.client = httpx.Client(
            base_url=api_url.rstrip("/"),
            headers={"X-API-Key": api_key},
            timeout=timeout,
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response | None:
        """
        Send a request to the internal API.

        Returns:
            The response, or None on 404

        Raises:
            TransientNetworkError: transport failure, timeout or 5xx
            PipelineError: any other 4xx
        """
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {path} failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 500:
            raise TransientNetworkError(f"{method} {path} returned {response.status_code}")
        if response.status_code >= 400:
            raise PipelineError(f"{method} {path} returned {response.status_code}: {response.text[:200]}")
        return response

    def get_photo(self, photo_id: str) -> PhotoAsset | None:
        response = self._request("GET", f"/api/internal/photos/{photo_id}")
        if response is None:
            return None
        return PhotoAsset.model_validate(response.json())

    def update_photo(self, photo_id: str, fields: dict[str, Any]) -> bool:
        response = self._request("PATCH", f"/api/internal/photos/{photo_id}", json=_jsonable(fields))
        if response is None:
            logger.warning(f"Photo {photo_id} not found while updating {sorted(fields)}")
            return False
        return True

    def list_photos(
        self,
        album_id: str | None = None,
        status: str | None = None,
        photo_ids: list[str] | None = None,
    ) -> list[PhotoAsset]:
        params = {}
        if album_id:
            params["album_id"] = album_id
        if status:
            params["status"] = status
        if photo_ids:
            params["ids"] = ",".join(photo_ids)
        response = self._request("GET", "/api/internal/photos", params=params)
        if response is None:
            return []
        return [PhotoAsset.model_validate(item) for item in response.json().get("photos", [])]

    def create_photo(self, fields: dict[str, Any]) -> PhotoAsset:
        response = self._request("POST", "/api/internal/photos", json=_jsonable(fields))
        if response is None:
            raise PipelineError(f"Album {fields.get('album_id')} not found while creating photo")
        return PhotoAsset.model_validate(response.json())

    def get_album(self, album_id: str) -> AlbumSettings | None:
        response = self._request("GET", f"/api/internal/albums/{album_id}")
        if response is None:
            return None
        return AlbumSettings.model_validate(response.json())

    def update_package(self, package_id: str, fields: dict[str, Any]) -> bool:
        response = self._request("PATCH", f"/api/internal/packages/{package_id}", json=_jsonable(fields))
        if response is None:
            logger.warning(f"Package {package_id} not found while updating {sorted(fields)}")
            return False
        return True

    def health_check(self) -> bool:
        try:
            response = self.client.get("/api/health")
            return response.status_code < 500
        except httpx.HTTPError:
            return False

    def close(self):
        self.client.close()


# ============================================================================
# Album cache
# ============================================================================

class AlbumCache:
    """TTL cache in front of album lookups, shared by all job threads."""

    def __init__(self, records: RecordStore, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.records = records
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[str, tuple[float, AlbumSettings]] = {}
        self._lock = threading.Lock()

    def get(self, album_id: str) -> AlbumSettings | None:
        now = self.clock()
        with self._lock:
            entry = self._entries.get(album_id)
            if entry and now - entry[0] <= self.ttl:
                return entry[1]
            self._entries.pop(album_id, None)

        album = self.records.get_album(album_id)
        if album is not None:
            with self._lock:
                self._entries[album_id] = (now, album)
        return album

    def invalidate(self, album_id: str | None = None):
        with self._lock:
            if album_id is None:
                self._entries.clear()
            else:
                self._entries.pop(album_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
