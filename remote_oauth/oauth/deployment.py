"""Deployment identity and storage-key normalization."""

from dataclasses import dataclass
from urllib.parse import urlparse


def to_safe_host(url: str) -> str:
    """Derive a storage-key-safe identifier from a deployment URL.

    The hostname is lower-cased and IDNA encoded; scheme, port and path
    are dropped, so ``https://Foo.example.com:8443/x`` becomes
    ``foo.example.com``.

    Raises:
        ValueError: If the URL has no hostname
    """
    parsed = urlparse(url if "://" in url else f"https://{url}")
    hostname = parsed.hostname
    if not hostname:
        raise ValueError(f"Deployment URL has no hostname: {url!r}")

    try:
        return hostname.encode("idna").decode("ascii")
    except UnicodeError:
        # Labels the idna codec rejects (e.g. over 63 chars) are kept as-is
        return hostname


@dataclass(frozen=True)
class Deployment:
    """One remote server instance.

    Attributes:
        url: Base URL of the deployment, without trailing slash
        safe_hostname: Normalized namespace for credential storage keys
    """

    url: str
    safe_hostname: str

    @classmethod
    def from_url(cls, url: str) -> "Deployment":
        """Create a deployment from its base URL."""
        url = url.strip().rstrip("/")
        return cls(url=url, safe_hostname=to_safe_host(url))

    @property
    def is_https(self) -> bool:
        return urlparse(self.url).scheme == "https"

    def __str__(self) -> str:
        return self.url
