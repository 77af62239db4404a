"""
Cloud Object Storage

Aliyun OSS and Tencent COS through their S3-compatible endpoints.
Both require virtual-hosted addressing and HTTPS by default.
"""

from urllib.parse import urlsplit

from .s3 import S3CompatibleAdapter


class VirtualHostedAdapter(S3CompatibleAdapter):
    """Backend addressed as ``{bucket}.{endpoint}``."""

    addressing_style = "virtual"
    default_secure = True

    def object_url(self, key: str) -> str | None:
        """Public URL of an object; the bucket host when no CDN is configured."""
        if self.public_url:
            return f"{self.public_url}/{key}"
        endpoint = urlsplit(self.endpoint_url)
        return f"{endpoint.scheme}://{self.bucket}.{endpoint.netloc}/{key}"


class OSSAdapter(VirtualHostedAdapter):
    """Aliyun Object Storage Service."""

    backend = "oss"


class COSAdapter(VirtualHostedAdapter):
    """Tencent Cloud Object Storage."""

    backend = "cos"
