"""
S3-Compatible Storage

boto3-backed adapter shared by every backend that speaks the S3 API.
MinIO and AWS S3 use it directly; OSS and COS subclass it in ``cloud.py``.
"""

import hashlib
import logging
from contextlib import contextmanager
from urllib.parse import urlsplit, urlunsplit

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from botocore.exceptions import ConnectionError as BotoConnectionError
from botocore.exceptions import HTTPClientError

from ..config import DEFAULT_ENDPOINTS, Settings
from ..errors import NotFoundError, StorageError, TransientStorageError, ValidationError
from ..metrics import storage_errors
from .base import MAX_PART_NUMBER, CompletedPart, StorageAdapter, StorageObject, UploadResult

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"NoSuchKey", "NoSuchUpload", "NotFound", "404"}
THROTTLE_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestTimeout", "ServiceUnavailable", "InternalError"}

# Metadata keys that map onto first-class PutObject parameters
HEADER_PARAMS = {
    "content-type": "ContentType",
    "content-disposition": "ContentDisposition",
    "content-encoding": "ContentEncoding",
    "cache-control": "CacheControl",
}


def strip_etag(etag: str) -> str:
    """Drop the quotes S3 wraps around ETags."""
    return etag.strip('"')


def multipart_etag(parts: list[CompletedPart]) -> str | None:
    """
    ETag S3 assigns to an object assembled from these parts.

    Returns None when a part ETag is not a plain MD5 hex digest, in which
    case the final ETag cannot be predicted.
    """
    try:
        digests = b"".join(bytes.fromhex(strip_etag(p.etag)) for p in parts)
    except ValueError:
        return None
    return f"{hashlib.md5(digests).hexdigest()}-{len(parts)}"


def build_endpoint_url(endpoint: str, port: int | None, secure: bool) -> str:
    """Turn host / port / ssl settings into an endpoint URL."""
    if "://" in endpoint:
        return endpoint.rstrip("/")
    scheme = "https" if secure else "http"
    if port:
        return f"{scheme}://{endpoint}:{port}"
    return f"{scheme}://{endpoint}"


class S3CompatibleAdapter(StorageAdapter):
    """Object storage adapter for any S3-compatible backend."""

    backend = "s3"
    addressing_style = "path"
    default_secure = False
    default_port: int | None = None

    def __init__(
        self,
        endpoint_url: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        region: str = "us-east-1",
        public_url: str = "",
        default_ttl: int = 900,
        max_ttl: int = 3600,
    ):
        self.endpoint_url = endpoint_url
        self.bucket = bucket
        self.region = region
        self.public_url = public_url.rstrip("/")
        self.default_ttl = default_ttl
        self.max_ttl = max_ttl
        self._access_key = access_key
        self._secret_key = secret_key

        self.client = self._make_client(endpoint_url)
        self.presign_client = self._make_presign_client()

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3CompatibleAdapter":
        """Build the adapter from worker settings."""
        region = settings.storage_region_or_default
        endpoint = settings.storage_endpoint or DEFAULT_ENDPOINTS[cls.backend].format(region=region)
        secure = settings.storage_use_ssl or cls.default_secure
        port = settings.storage_port or cls.default_port
        return cls(
            endpoint_url=build_endpoint_url(endpoint, port, secure),
            access_key=settings.storage_access_key,
            secret_key=settings.storage_secret_key,
            bucket=settings.storage_bucket,
            region=region,
            public_url=settings.storage_public_url,
            default_ttl=settings.presign_default_ttl,
            max_ttl=settings.presign_max_ttl,
        )

    def _make_client(self, endpoint_url: str):
        return boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=self._access_key,
            aws_secret_access_key=self._secret_key,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": self.addressing_style},
                retries={"max_attempts": 3, "mode": "standard"},
            ),
            region_name=self.region,
        )

    def _make_presign_client(self):
        """Client used for signing URLs handed to browsers."""
        return self.client

    def _to_public_url(self, url: str) -> str:
        """Point a signed URL at the public host, keeping path and query."""
        if not self.public_url:
            return url
        signed = urlsplit(url)
        public = urlsplit(self.public_url)
        path = public.path.rstrip("/") + signed.path
        return urlunsplit((public.scheme, public.netloc, path, signed.query, ""))

    def object_url(self, key: str) -> str | None:
        """Public URL of an object, when a public base URL is configured."""
        if not self.public_url:
            return None
        return f"{self.public_url}/{key}"

    @contextmanager
    def _translate_errors(self, operation: str, key: str):
        """Map botocore failures onto the worker's error taxonomy."""
        try:
            yield
        except ClientError as e:
            error = e.response.get("Error", {})
            code = str(error.get("Code", ""))
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            if code in NOT_FOUND_CODES or status == 404:
                raise NotFoundError(key) from e
            if status >= 500 or code in THROTTLE_CODES:
                storage_errors.labels(operation=operation, kind="transient").inc()
                logger.warning(f"Storage {operation} failed for {key}: {code or status}")
                raise TransientStorageError(f"{operation} {key} failed: {code or status}") from e
            storage_errors.labels(operation=operation, kind="rejected").inc()
            logger.error(f"Storage {operation} rejected for {key}: {code}")
            raise StorageError(f"{operation} {key} failed: {code}") from e
        except (BotoConnectionError, HTTPClientError) as e:
            storage_errors.labels(operation=operation, kind="transient").inc()
            logger.warning(f"Storage {operation} could not reach backend for {key}: {e}")
            raise TransientStorageError(f"{operation} {key} failed: {e}") from e

    def _clamp_ttl(self, ttl: int | None) -> int:
        ttl = self.default_ttl if ttl is None else int(ttl)
        if ttl <= 0:
            raise ValidationError(f"Presigned URL TTL must be positive, got {ttl}")
        if ttl > self.max_ttl:
            logger.warning(f"Presigned URL TTL {ttl}s clamped to {self.max_ttl}s")
            ttl = self.max_ttl
        return ttl

    def download(self, key: str) -> bytes:
        """
        Download an object as bytes.

        Args:
            key: Object key

        Returns:
            Object contents
        """
        with self._translate_errors("download", key):
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

    def upload(
        self,
        key: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
    ) -> UploadResult:
        """
        Upload bytes, replacing any existing object.

        Args:
            key: Object key
            data: Object contents
            metadata: Content-Type and friends go to their own headers,
                anything else becomes user metadata

        Returns:
            UploadResult with the unquoted ETag
        """
        params = {"Bucket": self.bucket, "Key": key, "Body": data}
        user_metadata = {}
        for name, value in (metadata or {}).items():
            param = HEADER_PARAMS.get(name.lower())
            if param:
                params[param] = value
            else:
                user_metadata[name] = value
        if user_metadata:
            params["Metadata"] = user_metadata

        with self._translate_errors("upload", key):
            response = self.client.put_object(**params)

        logger.debug(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{key}")
        return UploadResult(
            etag=strip_etag(response.get("ETag", "")),
            version_id=response.get("VersionId"),
            url=self.object_url(key),
        )

    def presigned_put_url(self, key: str, ttl: int | None = None) -> str:
        ttl = self._clamp_ttl(ttl)
        url = self.presign_client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl,
        )
        return self._to_public_url(url)

    def presigned_get_url(self, key: str, ttl: int | None = None) -> str:
        ttl = self._clamp_ttl(ttl)
        url = self.presign_client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl,
        )
        return self._to_public_url(url)

    def init_multipart(self, key: str) -> str:
        with self._translate_errors("init_multipart", key):
            response = self.client.create_multipart_upload(Bucket=self.bucket, Key=key)
        upload_id = response["UploadId"]
        logger.info(f"Started multipart upload {upload_id} for s3://{self.bucket}/{key}")
        return upload_id

    def _check_part_number(self, part_number: int):
        if not 1 <= part_number <= MAX_PART_NUMBER:
            raise ValidationError(f"Part number must be between 1 and {MAX_PART_NUMBER}, got {part_number}")

    def upload_part(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        data: bytes,
    ) -> dict[str, str]:
        self._check_part_number(part_number)
        with self._translate_errors("upload_part", key):
            response = self.client.upload_part(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
            )
        return {"etag": strip_etag(response["ETag"])}

    def presigned_part_url(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        ttl: int | None = None,
    ) -> str:
        self._check_part_number(part_number)
        ttl = self._clamp_ttl(ttl)
        url = self.presign_client.generate_presigned_url(
            "upload_part",
            Params={
                "Bucket": self.bucket,
                "Key": key,
                "UploadId": upload_id,
                "PartNumber": part_number,
            },
            ExpiresIn=ttl,
        )
        return self._to_public_url(url)

    def complete_multipart(
        self,
        key: str,
        upload_id: str,
        parts: list[CompletedPart],
    ) -> None:
        """
        Finalize a multipart upload.

        A retried completion finds the upload gone; when the stored object
        carries the ETag these parts would produce, the earlier call already
        succeeded and this one is a no-op.

        Raises:
            ValidationError: no parts, or a part number out of range
            NotFoundError: the upload is unknown and no matching object exists
        """
        if not parts:
            raise ValidationError(f"Multipart upload {upload_id} has no parts")
        ordered = sorted(parts, key=lambda p: p.part_number)
        for part in ordered:
            self._check_part_number(part.part_number)

        try:
            with self._translate_errors("complete_multipart", key):
                self.client.complete_multipart_upload(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={
                        "Parts": [
                            {"PartNumber": p.part_number, "ETag": f'"{strip_etag(p.etag)}"'}
                            for p in ordered
                        ]
                    },
                )
        except NotFoundError:
            if self._already_completed(key, ordered):
                logger.info(f"Multipart upload {upload_id} for {key} was already completed")
                return
            raise

        logger.info(f"Completed multipart upload {upload_id} ({len(ordered)} parts) for s3://{self.bucket}/{key}")

    def _already_completed(self, key: str, parts: list[CompletedPart]) -> bool:
        expected = multipart_etag(parts)
        if expected is None:
            return False
        try:
            with self._translate_errors("head", key):
                head = self.client.head_object(Bucket=self.bucket, Key=key)
        except NotFoundError:
            return False
        return strip_etag(head.get("ETag", "")) == expected

    def abort_multipart(self, key: str, upload_id: str) -> None:
        try:
            with self._translate_errors("abort_multipart", key):
                self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
        except NotFoundError:
            logger.debug(f"Multipart upload {upload_id} for {key} already gone")
            return
        logger.info(f"Aborted multipart upload {upload_id} for s3://{self.bucket}/{key}")

    def delete(self, key: str) -> None:
        try:
            with self._translate_errors("delete", key):
                self.client.delete_object(Bucket=self.bucket, Key=key)
        except NotFoundError:
            return

    def exists(self, key: str) -> bool:
        try:
            with self._translate_errors("exists", key):
                self.client.head_object(Bucket=self.bucket, Key=key)
        except NotFoundError:
            return False
        return True

    def list_objects(self, prefix: str) -> list[StorageObject]:
        """
        List every object under a prefix, following continuation tokens.

        Args:
            prefix: Key prefix

        Returns:
            All matching objects
        """
        objects = []
        with self._translate_errors("list", prefix):
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    objects.append(StorageObject(
                        key=item["Key"],
                        size=item.get("Size", 0),
                        last_modified=item.get("LastModified"),
                        etag=strip_etag(item.get("ETag", "")),
                    ))
        return objects

    def copy(self, src_key: str, dest_key: str) -> None:
        with self._translate_errors("copy", src_key):
            self.client.copy_object(
                Bucket=self.bucket,
                Key=dest_key,
                CopySource={"Bucket": self.bucket, "Key": src_key},
            )
        logger.debug(f"Copied s3://{self.bucket}/{src_key} to {dest_key}")


class MinioAdapter(S3CompatibleAdapter):
    """
    MinIO over path-style addressing.

    The worker usually reaches MinIO on an internal hostname. Presigned URLs
    are signed against the public host instead, since the host is part of
    the signature and cannot be rewritten afterwards.

    The public URL must be a bare origin such as ``https://media.example.com``:
    a path prefix would be left out of the signed request, so it is rejected.
    """

    backend = "minio"
    default_port = 9000

    def _make_presign_client(self):
        if not self.public_url:
            return self.client
        public = urlsplit(self.public_url)
        if public.path or public.query:
            raise ValueError(
                f"MinIO public URL must not include a path, got {self.public_url!r}; "
                "serve the bucket from the root of the public host"
            )
        return self._make_client(f"{public.scheme}://{public.netloc}")

    def _to_public_url(self, url: str) -> str:
        return url


class S3Adapter(S3CompatibleAdapter):
    """AWS S3 with virtual-hosted addressing."""

    backend = "s3"
    addressing_style = "virtual"
    default_secure = True
