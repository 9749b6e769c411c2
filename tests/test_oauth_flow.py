"""Tests for token endpoint requests and authorization URLs."""

import base64
from urllib.parse import parse_qs, parse_qsl, urlparse

import httpx
import pytest

from fakes import metadata_document
from remote_oauth.oauth.errors import (
    OAuthErrorCode,
    RefreshError,
    RevocationError,
    TokenExchangeError,
)
from remote_oauth.oauth.flow import (
    build_authorization_url,
    exchange_code_for_tokens,
    refresh_access_token,
    revoke_token,
)
from remote_oauth.oauth.metadata import AuthServerMetadata
from remote_oauth.oauth.tokens import ClientRegistration

REDIRECT_URI = "http://127.0.0.1:38471/oauth/callback"


@pytest.fixture
def metadata() -> AuthServerMetadata:
    return AuthServerMetadata.from_dict(metadata_document())


@pytest.fixture
def registration() -> ClientRegistration:
    return ClientRegistration(client_id="client-1", client_secret="secret-1", redirect_uris=[REDIRECT_URI])


class RecordingTransport:
    """Answers every request with one canned response and keeps the requests."""

    def __init__(self, response: httpx.Response):
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def form(self, index: int = -1) -> dict[str, str]:
        return dict(parse_qsl(self.requests[index].content.decode()))


class TestBuildAuthorizationUrl:
    """Tests for build_authorization_url function."""

    def test_builds_url_with_required_params(self, metadata: AuthServerMetadata) -> None:
        url = build_authorization_url(
            metadata, "client-1", REDIRECT_URI, "challenge-value", "state-value", ["a:b", "c:d"]
        )
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == metadata.authorization_endpoint
        assert params == {
            "client_id": "client-1",
            "response_type": "code",
            "redirect_uri": REDIRECT_URI,
            "scope": "a:b c:d",
            "state": "state-value",
            "code_challenge": "challenge-value",
            "code_challenge_method": "S256",
        }

    def test_omits_scope_when_empty(self, metadata: AuthServerMetadata) -> None:
        url = build_authorization_url(metadata, "c", REDIRECT_URI, "x", "s")
        assert "scope" not in parse_qs(urlparse(url).query)

    def test_preserves_existing_query(self) -> None:
        metadata = AuthServerMetadata.from_dict(
            metadata_document(authorization_endpoint="https://dev.example.com/authorize?tenant=1")
        )
        url = build_authorization_url(metadata, "c", REDIRECT_URI, "x", "s")
        assert url.startswith("https://dev.example.com/authorize?tenant=1&")


class TestExchangeCodeForTokens:
    """Tests for exchange_code_for_tokens function."""

    @pytest.mark.asyncio
    async def test_sends_code_and_verifier(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        transport = RecordingTransport(
            httpx.Response(200, json={"access_token": "a", "refresh_token": "r", "expires_in": 60})
        )
        async with transport.client() as client:
            result = await exchange_code_for_tokens(
                metadata, registration, "the-code", REDIRECT_URI, "the-verifier", http_client=client
            )

        assert result["access_token"] == "a"
        assert str(transport.requests[0].url) == metadata.token_endpoint
        assert transport.form() == {
            "grant_type": "authorization_code",
            "code": "the-code",
            "redirect_uri": REDIRECT_URI,
            "code_verifier": "the-verifier",
            "client_id": "client-1",
            "client_secret": "secret-1",
        }

    @pytest.mark.asyncio
    async def test_client_secret_basic(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        transport = RecordingTransport(httpx.Response(200, json={"access_token": "a"}))
        async with transport.client() as client:
            await exchange_code_for_tokens(
                metadata,
                registration,
                "code",
                REDIRECT_URI,
                "verifier",
                auth_method="client_secret_basic",
                http_client=client,
            )

        request = transport.requests[0]
        expected = base64.b64encode(b"client-1:secret-1").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        assert "client_secret" not in transport.form()

    @pytest.mark.asyncio
    async def test_public_client_sends_only_client_id(self, metadata: AuthServerMetadata) -> None:
        transport = RecordingTransport(httpx.Response(200, json={"access_token": "a"}))
        async with transport.client() as client:
            await exchange_code_for_tokens(
                metadata, ClientRegistration(client_id="public"), "code", REDIRECT_URI, "v", http_client=client
            )
        form = transport.form()
        assert form["client_id"] == "public"
        assert "client_secret" not in form

    @pytest.mark.asyncio
    async def test_error_does_not_leak_response_body(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        transport = RecordingTransport(httpx.Response(400, text="sensitive_token_data_here"))
        async with transport.client() as client:
            with pytest.raises(TokenExchangeError) as exc_info:
                await exchange_code_for_tokens(
                    metadata, registration, "code", REDIRECT_URI, "v", http_client=client
                )
        assert "sensitive_token_data_here" not in str(exc_info.value)
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_access_token(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        transport = RecordingTransport(httpx.Response(200, json={"token_type": "Bearer"}))
        async with transport.client() as client:
            with pytest.raises(TokenExchangeError, match="missing access_token"):
                await exchange_code_for_tokens(
                    metadata, registration, "code", REDIRECT_URI, "v", http_client=client
                )


class TestRefreshAccessToken:
    """Tests for refresh_access_token function."""

    @pytest.mark.asyncio
    async def test_successful_refresh(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        transport = RecordingTransport(httpx.Response(200, json={"access_token": "new"}))
        async with transport.client() as client:
            result = await refresh_access_token(metadata, registration, "r1", http_client=client)
        assert result["access_token"] == "new"
        assert transport.form()["grant_type"] == "refresh_token"
        assert transport.form()["refresh_token"] == "r1"

    @pytest.mark.asyncio
    async def test_invalid_grant_requires_reauth(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        transport = RecordingTransport(
            httpx.Response(400, json={"error": "invalid_grant", "refresh_token": "leaked"})
        )
        async with transport.client() as client:
            with pytest.raises(RefreshError) as exc_info:
                await refresh_access_token(metadata, registration, "r1", http_client=client)

        error = exc_info.value
        assert error.requires_reauth
        assert error.oauth_error is not None
        assert error.oauth_error.code is OAuthErrorCode.INVALID_GRANT
        assert error.status_code == 400
        assert "leaked" not in str(error)

    @pytest.mark.asyncio
    async def test_server_error_is_transient(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        transport = RecordingTransport(httpx.Response(503, json={"error": "temporarily_unavailable"}))
        async with transport.client() as client:
            with pytest.raises(RefreshError) as exc_info:
                await refresh_access_token(metadata, registration, "r1", http_client=client)
        assert not exc_info.value.requires_reauth

    @pytest.mark.asyncio
    async def test_network_error_is_transient(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            with pytest.raises(RefreshError) as exc_info:
                await refresh_access_token(metadata, registration, "r1", http_client=client)
        assert not exc_info.value.requires_reauth
        assert exc_info.value.status_code is None


class TestRevokeToken:
    """Tests for revoke_token function."""

    @pytest.mark.asyncio
    async def test_successful_revocation(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        transport = RecordingTransport(httpx.Response(200))
        async with transport.client() as client:
            await revoke_token(metadata, registration, "r1", http_client=client)
        assert str(transport.requests[0].url) == metadata.revocation_endpoint
        assert transport.form()["token"] == "r1"
        assert transport.form()["token_type_hint"] == "refresh_token"

    @pytest.mark.asyncio
    async def test_without_endpoint(self, registration: ClientRegistration) -> None:
        metadata = AuthServerMetadata.from_dict(metadata_document(revocation_endpoint=None))
        with pytest.raises(RevocationError, match="does not support"):
            await revoke_token(metadata, registration, "r1")

    @pytest.mark.asyncio
    async def test_failure(self, metadata: AuthServerMetadata, registration: ClientRegistration) -> None:
        transport = RecordingTransport(httpx.Response(400, json={"error": "unsupported_token_type"}))
        async with transport.client() as client:
            with pytest.raises(RevocationError, match="unsupported_token_type"):
                await revoke_token(metadata, registration, "r1", http_client=client)
