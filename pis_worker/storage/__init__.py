"""
Object storage adapters.

The backend is chosen once at startup from ``STORAGE_TYPE``; everything
else talks to the returned StorageAdapter.
"""

import logging

from ..config import Settings
from .base import MAX_PART_NUMBER, CompletedPart, StorageAdapter, StorageObject, UploadResult
from .cloud import COSAdapter, OSSAdapter
from .s3 import MinioAdapter, S3Adapter, S3CompatibleAdapter

logger = logging.getLogger(__name__)

ADAPTERS: dict[str, type[S3CompatibleAdapter]] = {
    "minio": MinioAdapter,
    "s3": S3Adapter,
    "oss": OSSAdapter,
    "cos": COSAdapter,
}


def create_storage_adapter(settings: Settings) -> StorageAdapter:
    """
    Build the storage adapter for the configured backend.

    Args:
        settings: Worker settings

    Returns:
        Adapter for ``settings.storage_type``

    Raises:
        ValueError: unknown storage type
    """
    storage_type = settings.storage_type.lower()
    adapter_cls = ADAPTERS.get(storage_type)
    if adapter_cls is None:
        raise ValueError(
            f"Unknown storage type '{settings.storage_type}', expected one of: {', '.join(ADAPTERS)}"
        )
    adapter = adapter_cls.from_settings(settings)
    logger.info(f"Using {storage_type} storage at {adapter.endpoint_url} (bucket {adapter.bucket})")
    return adapter


__all__ = [
    "ADAPTERS",
    "MAX_PART_NUMBER",
    "COSAdapter",
    "CompletedPart",
    "MinioAdapter",
    "OSSAdapter",
    "S3Adapter",
    "S3CompatibleAdapter",
    "StorageAdapter",
    "StorageObject",
    "UploadResult",
    "create_storage_adapter",
]
