"""Tests for dynamic client registration."""

import httpx
import pytest

from fakes import FakeDeployment, metadata_document
from remote_oauth.oauth.deployment import Deployment
from remote_oauth.oauth.errors import RegistrationError
from remote_oauth.oauth.metadata import AuthServerMetadata
from remote_oauth.oauth.registry import ClientRegistry
from remote_oauth.oauth.tokens import ClientRegistration
from remote_oauth.oauth.vault import CredentialVault

REDIRECT_URI = "http://127.0.0.1:38471/oauth/callback"


@pytest.fixture
def metadata() -> AuthServerMetadata:
    return AuthServerMetadata.from_dict(metadata_document())


@pytest.fixture
def registry(
    deployment: Deployment, vault: CredentialVault, http_client: httpx.AsyncClient
) -> ClientRegistry:
    return ClientRegistry(deployment, vault, http_client=http_client, client_name="test-client")


class TestClientRegistry:
    """Tests for ClientRegistry class."""

    @pytest.mark.asyncio
    async def test_registers_and_persists(
        self,
        registry: ClientRegistry,
        metadata: AuthServerMetadata,
        fake_server: FakeDeployment,
        vault: CredentialVault,
        deployment: Deployment,
    ) -> None:
        registration = await registry.register(metadata, REDIRECT_URI)

        assert registration.client_id == "client-1"
        assert registration.client_secret == "secret-1"
        assert registration.redirect_uris == [REDIRECT_URI]
        assert await vault.get_registration(deployment) == registration

        request = fake_server.registrations[0]
        assert request["redirect_uris"] == [REDIRECT_URI]
        assert request["grant_types"] == ["authorization_code"]
        assert request["response_types"] == ["code"]
        assert request["client_name"] == "test-client"
        assert request["token_endpoint_auth_method"] == "client_secret_post"

    @pytest.mark.asyncio
    async def test_reuses_stored_registration(
        self, registry: ClientRegistry, metadata: AuthServerMetadata, fake_server: FakeDeployment
    ) -> None:
        first = await registry.register(metadata, REDIRECT_URI)
        second = await registry.register(metadata, REDIRECT_URI)
        assert first == second
        assert len(fake_server.registrations) == 1

    @pytest.mark.asyncio
    async def test_reuses_registration_made_by_another_process(
        self,
        registry: ClientRegistry,
        metadata: AuthServerMetadata,
        fake_server: FakeDeployment,
        vault: CredentialVault,
        deployment: Deployment,
    ) -> None:
        stored = ClientRegistration(client_id="from-elsewhere", redirect_uris=[REDIRECT_URI])
        await vault.set_registration(deployment, stored)
        assert await registry.register(metadata, REDIRECT_URI) == stored
        assert fake_server.registrations == []

    @pytest.mark.asyncio
    async def test_registers_again_for_new_redirect_uri(
        self, registry: ClientRegistry, metadata: AuthServerMetadata, fake_server: FakeDeployment
    ) -> None:
        await registry.register(metadata, REDIRECT_URI)
        other = await registry.register(metadata, "http://127.0.0.1:40000/oauth/callback")
        assert other.client_id == "client-2"
        assert len(fake_server.registrations) == 2

    @pytest.mark.asyncio
    async def test_clear(
        self, registry: ClientRegistry, metadata: AuthServerMetadata
    ) -> None:
        await registry.register(metadata, REDIRECT_URI)
        await registry.clear()
        assert await registry.get() is None

    @pytest.mark.asyncio
    async def test_no_registration_endpoint(self, registry: ClientRegistry) -> None:
        metadata = AuthServerMetadata.from_dict(metadata_document(registration_endpoint=None))
        with pytest.raises(RegistrationError, match="dynamic client registration"):
            await registry.register(metadata, REDIRECT_URI)

    @pytest.mark.asyncio
    async def test_rejection_reports_only_oauth_error_fields(
        self, deployment: Deployment, vault: CredentialVault, metadata: AuthServerMetadata
    ) -> None:
        def reject(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={
                    "error": "invalid_redirect_uri",
                    "error_description": "loopback not allowed",
                    "debug": "internal-secret",
                },
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(reject)) as client:
            registry = ClientRegistry(deployment, vault, http_client=client)
            with pytest.raises(RegistrationError) as exc_info:
                await registry.register(metadata, REDIRECT_URI)

        message = str(exc_info.value)
        assert "HTTP 400" in message
        assert "loopback not allowed" in message
        assert "internal-secret" not in message
        assert await vault.get_registration(deployment) is None

    @pytest.mark.asyncio
    async def test_response_without_client_id(
        self, deployment: Deployment, vault: CredentialVault, metadata: AuthServerMetadata
    ) -> None:
        handler = lambda request: httpx.Response(201, json={"client_secret": "s"})  # noqa: E731
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            registry = ClientRegistry(deployment, vault, http_client=client)
            with pytest.raises(RegistrationError, match="missing client_id"):
                await registry.register(metadata, REDIRECT_URI)
