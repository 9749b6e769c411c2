"""Dynamic client registration (RFC 7591) with persisted reuse."""

import logging

import httpx

from .deployment import Deployment
from .errors import RegistrationError, describe_response_error
from .metadata import DEFAULT_AUTH_METHOD, AuthServerMetadata
from .tokens import ClientRegistration
from .vault import CredentialVault

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "remote-oauth"


class ClientRegistry:
    """Registers this client with a deployment and keeps the registration.

    The registration is stored in the credential store so every process
    talking to the same deployment reuses one client.
    """

    def __init__(
        self,
        deployment: Deployment,
        vault: CredentialVault,
        http_client: httpx.AsyncClient | None = None,
        client_name: str = DEFAULT_CLIENT_NAME,
        auth_method: str = DEFAULT_AUTH_METHOD,
        timeout: float = 30.0,
    ):
        self.deployment = deployment
        self.vault = vault
        self.http_client = http_client
        self.client_name = client_name
        self.auth_method = auth_method
        self.timeout = timeout

    async def get(self) -> ClientRegistration | None:
        return await self.vault.get_registration(self.deployment)

    async def clear(self) -> None:
        await self.vault.clear_registration(self.deployment)
        logger.debug(f"Cleared client registration for {self.deployment.safe_hostname}")

    async def register(self, metadata: AuthServerMetadata, redirect_uri: str) -> ClientRegistration:
        """Return a registration valid for ``redirect_uri``, registering if needed.

        The stored registration is re-read on every call because another
        process may have registered in the meantime.

        Raises:
            RegistrationError: If registration is unavailable or rejected
        """
        existing = await self.get()
        if existing is not None and existing.allows_redirect_uri(redirect_uri):
            logger.debug(f"Reusing client registration {existing.client_id}")
            return existing

        if existing is not None:
            logger.info(
                f"Stored client registration does not allow {redirect_uri}; registering again"
            )

        registration = await self._register(metadata, redirect_uri)
        await self.vault.set_registration(self.deployment, registration)
        logger.info(f"Registered OAuth client {registration.client_id} with {metadata.issuer}")
        return registration

    async def _register(self, metadata: AuthServerMetadata, redirect_uri: str) -> ClientRegistration:
        if not metadata.registration_endpoint:
            raise RegistrationError(
                "Authorization server does not support dynamic client registration"
            )

        request_body = {
            "redirect_uris": [redirect_uri],
            "grant_types": ["authorization_code"],
            "response_types": ["code"],
            "client_name": self.client_name,
            "token_endpoint_auth_method": self.auth_method,
        }

        client = self.http_client or httpx.AsyncClient(timeout=self.timeout)
        should_close = self.http_client is None
        try:
            response = await client.post(metadata.registration_endpoint, json=request_body)
        except httpx.RequestError as e:
            raise RegistrationError(f"Network error during client registration: {e}") from e
        finally:
            if should_close:
                await client.aclose()

        if response.status_code not in (200, 201):
            raise RegistrationError(
                f"Client registration failed (HTTP {response.status_code})"
                f"{describe_response_error(response)}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise RegistrationError("Client registration response is not valid JSON") from e

        if not isinstance(data, dict) or not data.get("client_id"):
            raise RegistrationError("Client registration response missing client_id")

        return ClientRegistration(
            client_id=data["client_id"],
            client_secret=data.get("client_secret"),
            redirect_uris=list(data.get("redirect_uris") or [redirect_uri]),
            grant_types=list(data.get("grant_types") or ["authorization_code"]),
            token_endpoint_auth_method=data.get("token_endpoint_auth_method", self.auth_method),
        )
