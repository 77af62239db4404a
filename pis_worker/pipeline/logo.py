"""
Logo Fetching

Watermark logos are fetched from album-configured URLs, which makes them
attacker-controlled input. URLs are checked before any request is made:
only http(s), no local hostnames, and no address that resolves into a
private, loopback, link-local, reserved or multicast range.
"""

import ipaddress
import logging
import socket
import threading
from collections import OrderedDict
from typing import Callable
from urllib.parse import urlsplit

import httpx

from ..errors import TransientNetworkError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}
BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}
BLOCKED_SUFFIXES = (".local", ".localhost", ".internal")

Resolver = Callable[[str], list[str]]


def resolve_host(host: str) -> list[str]:
    """Resolve a hostname to every address it points at."""
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    return sorted({info[4][0] for info in infos})


def is_public_address(address: str) -> bool:
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def _host_allowed(host: str, allowed_domains: list[str]) -> bool:
    return any(host == domain or host.endswith(f".{domain}") for domain in allowed_domains)


def validate_logo_url(
    url: str,
    resolver: Resolver = resolve_host,
    media_domain: str = "",
) -> str:
    """
    Check a logo URL before it is fetched.

    Args:
        url: URL from the album's watermark config
        resolver: Hostname to address lookup
        media_domain: Optional comma-separated list of allowed hosts

    Returns:
        The URL's hostname

    Raises:
        ValidationError: The URL is not safe to fetch
    """
    if not url:
        raise ValidationError("Logo URL is empty")
    parts = urlsplit(url.strip())
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise ValidationError(f"Logo URL scheme not allowed: {parts.scheme or '(none)'}")

    host = (parts.hostname or "").lower().rstrip(".")
    if not host:
        raise ValidationError(f"Logo URL has no host: {url}")
    if host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_SUFFIXES):
        raise ValidationError(f"Logo host not allowed: {host}")

    allowed_domains = [d.strip().lower() for d in media_domain.split(",") if d.strip()]
    if allowed_domains and not _host_allowed(host, allowed_domains):
        raise ValidationError(f"Logo host {host} is not in the media domain allow-list")

    try:
        addresses = [str(ipaddress.ip_address(host))]
    except ValueError:
        try:
            addresses = resolver(host)
        except (OSError, UnicodeError) as e:
            raise ValidationError(f"Logo host {host} could not be resolved: {e}") from e

    if not addresses:
        raise ValidationError(f"Logo host {host} resolved to no addresses")
    for address in addresses:
        if not is_public_address(address):
            raise ValidationError(f"Logo host {host} resolves to non-public address {address}")
    return host


class LogoFetcher:
    """Validated, size-capped logo downloads with a small in-process cache."""

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
        max_bytes: int = 10 * 1024 * 1024,
        media_domain: str = "",
        resolver: Resolver = resolve_host,
        cache_size: int = 32,
    ):
        self.client = client or httpx.Client()
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.media_domain = media_domain
        self.resolver = resolver
        self.cache_size = cache_size
        self._cache: OrderedDict[str, bytes] = OrderedDict()
        self._lock = threading.Lock()

    def fetch(self, url: str) -> bytes:
        """
        Download a logo.

        Raises:
            ValidationError: unsafe URL, bad response or oversized body
            TransientNetworkError: timeout or connection failure
        """
        with self._lock:
            if url in self._cache:
                self._cache.move_to_end(url)
                return self._cache[url]

        validate_logo_url(url, resolver=self.resolver, media_domain=self.media_domain)
        data = self._download(url)

        with self._lock:
            self._cache[url] = data
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return data

    def _download(self, url: str) -> bytes:
        try:
            with self.client.stream("GET", url, timeout=self.timeout, follow_redirects=False) as response:
                if response.is_redirect:
                    raise ValidationError(f"Logo URL redirects, refusing to follow: {url}")
                if response.status_code >= 500:
                    raise TransientNetworkError(f"Logo fetch failed with HTTP {response.status_code}: {url}")
                if response.status_code >= 400:
                    raise ValidationError(f"Logo fetch failed with HTTP {response.status_code}: {url}")

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self.max_bytes:
                    raise ValidationError(f"Logo is too large ({declared} bytes, limit {self.max_bytes})")

                chunks = []
                received = 0
                for chunk in response.iter_bytes():
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise ValidationError(f"Logo exceeded {self.max_bytes} bytes while downloading")
                    chunks.append(chunk)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Logo fetch timed out after {self.timeout}s: {url}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Logo fetch failed: {e}") from e

        logger.debug(f"Fetched logo {url} ({received} bytes)")
        return b"".join(chunks)

    def close(self):
        self.client.close()
