"""
Worker Configuration

Environment-based configuration for the photo worker.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


# =============================================================================
# Storage backends - endpoints used when STORAGE_ENDPOINT is not set
# =============================================================================

DEFAULT_ENDPOINTS = {
    "minio": "localhost",
    "s3": "s3.{region}.amazonaws.com",
    "oss": "oss-{region}.aliyuncs.com",
    "cos": "cos.{region}.myqcloud.com",
}

DEFAULT_REGIONS = {
    "minio": "us-east-1",
    "s3": "us-east-1",
    "oss": "cn-hangzhou",
    "cos": "ap-guangzhou",
}


class Settings(BaseSettings):
    """Worker settings loaded from environment variables."""

    # Worker identity
    worker_id: str = "pis-worker-1"

    # Internal web API (record store)
    api_url: str = "http://localhost:3000"
    api_key: str = ""
    api_timeout: float = 10.0

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    queue_prefix: str = "pis:queue"
    photo_queue: str = "photo-processing"
    package_queue: str = "package-downloads"

    # Object storage
    storage_type: str = "minio"  # minio, s3, oss, cos
    storage_endpoint: str = ""
    storage_port: int | None = None
    storage_use_ssl: bool = False
    storage_access_key: str = "minioadmin"
    storage_secret_key: str = "minioadmin"
    storage_bucket: str = "pis-photos"
    storage_region: str = ""
    storage_public_url: str = ""  # bare origin for MinIO, no path prefix

    # Presigned URLs (seconds)
    presign_default_ttl: int = 900
    presign_max_ttl: int = 3600

    # Job execution
    concurrency: int = 5
    package_concurrency: int = 2
    rate_limit_max: int = 10
    rate_limit_duration: float = 1.0  # seconds
    job_attempts: int = 3
    backoff_delay: float = 2.0  # seconds, doubled per attempt
    lock_duration: float = 120.0  # seconds before an active job counts as stalled
    stalled_interval: float = 30.0
    keep_completed: int = 1000
    keep_failed: int = 5000
    poll_interval: float = 1.0

    # Derivatives
    thumb_max_size: int = 400
    thumb_quality: int = 80
    preview_max_size: int = 2560
    preview_quality: int = 85
    blur_grid: int = 32

    # Watermark logos
    logo_fetch_timeout: float = 10.0
    logo_max_bytes: int = 10 * 1024 * 1024
    media_domain: str = ""  # optional allow-list for logo hosts
    watermark_font_path: str = ""

    # Packages
    package_workers: int = 4

    # Album settings cache
    album_cache_ttl: float = 300.0

    # Metrics
    metrics_port: int = 9090

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def storage_region_or_default(self) -> str:
        """Region for the configured backend, falling back to its usual default."""
        return self.storage_region or DEFAULT_REGIONS.get(self.storage_type, "us-east-1")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
