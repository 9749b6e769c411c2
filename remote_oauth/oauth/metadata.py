"""Authorization server metadata discovery per RFC 8414.

The deployment itself is the authorization server; its metadata is read
from ``/.well-known/oauth-authorization-server`` and checked against the
capabilities this client relies on before any flow starts.
"""

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import httpx

from .deployment import Deployment
from .errors import DiscoveryError
from .pkce import CODE_CHALLENGE_METHOD

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/oauth-authorization-server"

REQUIRED_GRANT_TYPES = ("authorization_code", "refresh_token")
REQUIRED_RESPONSE_TYPE = "code"
DEFAULT_AUTH_METHOD = "client_secret_post"

# RFC 8414 section 2 defaults for omitted capability lists
DEFAULT_GRANT_TYPES = ["authorization_code"]
DEFAULT_RESPONSE_TYPES = ["code"]
DEFAULT_AUTH_METHODS = ["client_secret_basic"]


def _http_status_hint(status_code: int) -> str:
    hints = {
        401: "Deployment requires authentication for discovery",
        404: "Deployment does not expose OAuth metadata - OAuth may be disabled",
        500: "Deployment reported a server error",
        502: "Bad gateway - there may be a proxy or network issue",
        503: "Deployment is temporarily unavailable",
    }
    return hints.get(status_code, "")


def _string_list(data: dict[str, Any], name: str, default: list[str] | None) -> list[str] | None:
    value = data.get(name)
    if value is None:
        return None if default is None else list(default)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise DiscoveryError(f"Invalid {name} in authorization server metadata")
    return value


@dataclass
class AuthServerMetadata:
    """Authorization server endpoints and capabilities.

    Capability lists hold the RFC 8414 defaults when the server omits them;
    ``code_challenge_methods_supported`` has no default.
    """

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    revocation_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    grant_types_supported: list[str] = field(default_factory=lambda: list(DEFAULT_GRANT_TYPES))
    response_types_supported: list[str] = field(default_factory=lambda: list(DEFAULT_RESPONSE_TYPES))
    token_endpoint_auth_methods_supported: list[str] = field(
        default_factory=lambda: list(DEFAULT_AUTH_METHODS)
    )
    code_challenge_methods_supported: list[str] = field(default_factory=list)

    def supports_registration(self) -> bool:
        return bool(self.registration_endpoint)

    def supports_revocation(self) -> bool:
        return bool(self.revocation_endpoint)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthServerMetadata":
        """Build metadata from a discovery document.

        Raises:
            DiscoveryError: If a required field is missing or malformed
        """
        missing = [
            name
            for name in ("issuer", "authorization_endpoint", "token_endpoint")
            if not isinstance(data.get(name), str) or not data.get(name)
        ]
        if missing:
            raise DiscoveryError(
                f"Authorization server metadata missing required fields: {', '.join(missing)}"
            )

        return cls(
            issuer=data["issuer"],
            authorization_endpoint=data["authorization_endpoint"],
            token_endpoint=data["token_endpoint"],
            registration_endpoint=data.get("registration_endpoint") or None,
            revocation_endpoint=data.get("revocation_endpoint") or None,
            scopes_supported=_string_list(data, "scopes_supported", None),
            grant_types_supported=_string_list(data, "grant_types_supported", DEFAULT_GRANT_TYPES) or [],
            response_types_supported=_string_list(
                data, "response_types_supported", DEFAULT_RESPONSE_TYPES
            ) or [],
            token_endpoint_auth_methods_supported=_string_list(
                data, "token_endpoint_auth_methods_supported", DEFAULT_AUTH_METHODS
            ) or [],
            code_challenge_methods_supported=_string_list(
                data, "code_challenge_methods_supported", []
            ) or [],
        )

    def validate(self, auth_method: str = DEFAULT_AUTH_METHOD, require_https: bool = True) -> None:
        """Check that the server supports everything this client needs.

        Raises:
            DiscoveryError: Naming the first unsupported capability
        """
        for grant_type in REQUIRED_GRANT_TYPES:
            if grant_type not in self.grant_types_supported:
                raise DiscoveryError(
                    f"Authorization server does not support the {grant_type} grant "
                    f"(supported: {', '.join(self.grant_types_supported) or 'none'})"
                )

        if REQUIRED_RESPONSE_TYPE not in self.response_types_supported:
            raise DiscoveryError(
                f"Authorization server does not support response type '{REQUIRED_RESPONSE_TYPE}'"
            )

        if auth_method not in self.token_endpoint_auth_methods_supported:
            raise DiscoveryError(
                f"Authorization server does not support token endpoint auth method "
                f"'{auth_method}' (supported: "
                f"{', '.join(self.token_endpoint_auth_methods_supported) or 'none'})"
            )

        if CODE_CHALLENGE_METHOD not in self.code_challenge_methods_supported:
            raise DiscoveryError(
                f"Authorization server does not support PKCE with {CODE_CHALLENGE_METHOD}"
            )

        if require_https:
            endpoints = {
                "Authorization endpoint": self.authorization_endpoint,
                "Token endpoint": self.token_endpoint,
                "Registration endpoint": self.registration_endpoint,
                "Revocation endpoint": self.revocation_endpoint,
            }
            for context, url in endpoints.items():
                if url and urlparse(url).scheme != "https":
                    raise DiscoveryError(f"{context} must use HTTPS, got: {url}")


class MetadataClient:
    """Fetches and validates authorization server metadata.

    Does not retry; callers decide whether a failure is worth repeating.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        auth_method: str = DEFAULT_AUTH_METHOD,
        timeout: float = 30.0,
    ):
        self.http_client = http_client
        self.auth_method = auth_method
        self.timeout = timeout

    @staticmethod
    def metadata_url(deployment: Deployment) -> str:
        return f"{deployment.url}{WELL_KNOWN_PATH}"

    async def _fetch(self, url: str) -> httpx.Response:
        client = self.http_client or httpx.AsyncClient(timeout=self.timeout)
        should_close = self.http_client is None
        try:
            return await client.get(url, headers={"Accept": "application/json"})
        finally:
            if should_close:
                await client.aclose()

    async def discover(self, deployment: Deployment) -> AuthServerMetadata:
        """Fetch and validate metadata for a deployment.

        Raises:
            DiscoveryError: If the document cannot be fetched or parsed, or the
                server lacks a required capability
        """
        url = self.metadata_url(deployment)
        logger.debug(f"Fetching authorization server metadata from {url}")

        try:
            response = await self._fetch(url)
        except httpx.RequestError as e:
            raise DiscoveryError(f"Failed to fetch OAuth metadata from {url}: {e}") from e

        if response.status_code != 200:
            hint = _http_status_hint(response.status_code)
            raise DiscoveryError(
                f"Failed to fetch OAuth metadata from {url}: HTTP {response.status_code}"
                + (f" ({hint})" if hint else "")
            )

        try:
            data = response.json()
        except ValueError as e:
            raise DiscoveryError(f"OAuth metadata from {url} is not valid JSON") from e

        if not isinstance(data, dict):
            raise DiscoveryError(f"OAuth metadata from {url} is not a JSON object")

        metadata = AuthServerMetadata.from_dict(data)
        metadata.validate(self.auth_method, require_https=deployment.is_https)

        logger.debug(f"Discovered authorization server {metadata.issuer}")
        return metadata

    async def supports_oauth(self, deployment: Deployment) -> bool:
        """Probe whether a deployment serves usable OAuth metadata."""
        try:
            await self.discover(deployment)
        except DiscoveryError as e:
            logger.debug(f"OAuth not available for {deployment.url}: {e}")
            return False
        return True
