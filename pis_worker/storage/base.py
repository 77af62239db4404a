"""
Storage Adapter Contract

Backend-agnostic interface over object storage. Callers never branch on
the backend type; they receive one adapter built at startup.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime


MAX_PART_NUMBER = 10000


@dataclass(frozen=True)
class StorageObject:
    """Listing entry for a stored object."""
    key: str
    size: int
    last_modified: datetime
    etag: str


@dataclass(frozen=True)
class UploadResult:
    """Result of a single PUT."""
    etag: str
    version_id: str | None = None
    url: str | None = None


@dataclass(frozen=True)
class CompletedPart:
    """One uploaded chunk of a multipart upload."""
    part_number: int
    etag: str


class StorageAdapter(ABC):
    """Uniform contract implemented by every storage backend."""

    bucket: str

    @abstractmethod
    def download(self, key: str) -> bytes:
        """
        Download an object.

        Raises:
            NotFoundError: the key does not exist
            TransientStorageError: network error or backend 5xx
        """

    @abstractmethod
    def upload(
        self,
        key: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
    ) -> UploadResult:
        """Upload bytes, overwriting any existing object under the key."""

    @abstractmethod
    def presigned_put_url(self, key: str, ttl: int | None = None) -> str:
        """Time-boxed URL for a direct client upload."""

    @abstractmethod
    def presigned_get_url(self, key: str, ttl: int | None = None) -> str:
        """Time-boxed URL for a direct client download."""

    @abstractmethod
    def init_multipart(self, key: str) -> str:
        """Start a multipart upload and return its upload id."""

    @abstractmethod
    def upload_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        data: bytes,
    ) -> dict[str, str]:
        """Upload one part; returns ``{"etag": ...}`` without quotes."""

    @abstractmethod
    def presigned_part_url(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        ttl: int | None = None,
    ) -> str:
        """Time-boxed URL for a client uploading one part directly."""

    @abstractmethod
    def complete_multipart(
        self,
        key: str,
        upload_id: str,
        parts: list[CompletedPart],
    ) -> None:
        """
        Finalize a multipart upload.

        Calling again with the same parts after a successful completion is
        a no-op.
        """

    @abstractmethod
    def abort_multipart(self, key: str, upload_id: str) -> None:
        """Discard a multipart upload and its parts."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete an object. Deleting a missing key is not an error."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check whether an object exists."""

    @abstractmethod
    def list_objects(self, prefix: str) -> list[StorageObject]:
        """List every object under a prefix."""

    @abstractmethod
    def copy(self, src_key: str, dest_key: str) -> None:
        """Server-side copy within the bucket."""
