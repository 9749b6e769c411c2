"""Tests for authorization-code flow coordination."""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from fakes import metadata_document
from remote_oauth.oauth.authorizer import AuthorizationCoordinator
from remote_oauth.oauth.callback import CallbackResult
from remote_oauth.oauth.errors import (
    AuthorizationCancelledError,
    AuthorizationError,
    AuthorizationTimeoutError,
    OAuthErrorCode,
    StateMismatchError,
)
from remote_oauth.oauth.metadata import AuthServerMetadata
from remote_oauth.oauth.pkce import generate_code_challenge
from remote_oauth.oauth.tokens import ClientRegistration

REDIRECT_URI = "http://127.0.0.1:38471/oauth/callback"


def query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


@pytest.fixture
def metadata() -> AuthServerMetadata:
    return AuthServerMetadata.from_dict(metadata_document())


@pytest.fixture
def registration() -> ClientRegistration:
    return ClientRegistration(client_id="client-1", redirect_uris=[REDIRECT_URI])


class Browser:
    """Records opened URLs; optionally answers with a callback."""

    def __init__(self, reply=None):
        self.urls: list[str] = []
        self.coordinator: AuthorizationCoordinator | None = None
        self.reply = reply

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        if self.reply is not None and self.coordinator is not None:
            self.coordinator.handle_callback(self.reply(query(url)))
        return True


def coordinator_with(browser: Browser, timeout: float = 5) -> AuthorizationCoordinator:
    coordinator = AuthorizationCoordinator(open_browser=browser, timeout=timeout)
    browser.coordinator = coordinator
    return coordinator


class TestAuthorize:
    """Tests for AuthorizationCoordinator.authorize."""

    @pytest.mark.asyncio
    async def test_successful_authorization(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        browser = Browser(lambda params: CallbackResult(code="the-code", state=params["state"]))
        coordinator = coordinator_with(browser)

        result = await coordinator.authorize(metadata, registration, REDIRECT_URI, ["workspace:read"])

        params = query(browser.urls[0])
        assert result.code == "the-code"
        assert result.redirect_uri == REDIRECT_URI
        assert params["code_challenge"] == generate_code_challenge(result.verifier)
        assert params["code_challenge_method"] == "S256"
        assert params["client_id"] == "client-1"
        assert params["scope"] == "workspace:read"
        assert coordinator.pending is None

    @pytest.mark.asyncio
    async def test_each_flow_uses_fresh_state_and_verifier(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        browser = Browser(lambda params: CallbackResult(code="c", state=params["state"]))
        coordinator = coordinator_with(browser)
        first = await coordinator.authorize(metadata, registration, REDIRECT_URI)
        second = await coordinator.authorize(metadata, registration, REDIRECT_URI)
        assert first.verifier != second.verifier
        assert query(browser.urls[0])["state"] != query(browser.urls[1])["state"]

    @pytest.mark.asyncio
    async def test_state_mismatch_rejects_flow(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        browser = Browser(lambda params: CallbackResult(code="c", state="forged"))
        coordinator = coordinator_with(browser)
        with pytest.raises(StateMismatchError):
            await coordinator.authorize(metadata, registration, REDIRECT_URI)
        assert coordinator.pending is None

    @pytest.mark.asyncio
    async def test_missing_state_rejects_flow(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        browser = Browser(lambda params: CallbackResult(code="c"))
        with pytest.raises(StateMismatchError):
            await coordinator_with(browser).authorize(metadata, registration, REDIRECT_URI)

    @pytest.mark.asyncio
    async def test_error_callback(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        browser = Browser(
            lambda params: CallbackResult(
                state=params["state"], error="access_denied", error_description="User said no"
            )
        )
        with pytest.raises(AuthorizationError) as exc_info:
            await coordinator_with(browser).authorize(metadata, registration, REDIRECT_URI)
        assert exc_info.value.oauth_error is not None
        assert exc_info.value.oauth_error.code is OAuthErrorCode.ACCESS_DENIED
        assert "User said no" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_callback_without_code(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        browser = Browser(lambda params: CallbackResult(state=params["state"]))
        with pytest.raises(AuthorizationError, match="No authorization code"):
            await coordinator_with(browser).authorize(metadata, registration, REDIRECT_URI)

    @pytest.mark.asyncio
    async def test_timeout(self, metadata: AuthServerMetadata, registration: ClientRegistration) -> None:
        coordinator = coordinator_with(Browser(), timeout=0.05)
        with pytest.raises(AuthorizationTimeoutError):
            await coordinator.authorize(metadata, registration, REDIRECT_URI)
        assert coordinator.pending is None

    @pytest.mark.asyncio
    async def test_new_flow_supersedes_pending_one(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        browser = Browser()
        coordinator = coordinator_with(browser)

        first = asyncio.create_task(coordinator.authorize(metadata, registration, REDIRECT_URI))
        await asyncio.sleep(0)
        superseded = coordinator.pending
        assert superseded is not None

        second = asyncio.create_task(coordinator.authorize(metadata, registration, REDIRECT_URI))
        await asyncio.sleep(0)

        with pytest.raises(AuthorizationCancelledError, match="New OAuth flow started"):
            await first

        assert coordinator.pending is not None
        assert coordinator.pending is not superseded
        assert coordinator.pending.state != superseded.state
        assert coordinator.handle_callback(
            CallbackResult(code="new", state=coordinator.pending.state)
        )
        assert (await second).code == "new"

    @pytest.mark.asyncio
    async def test_browser_failure_keeps_waiting(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        coordinator = AuthorizationCoordinator(open_browser=lambda url: False, timeout=5)
        task = asyncio.create_task(coordinator.authorize(metadata, registration, REDIRECT_URI))
        await asyncio.sleep(0)
        assert coordinator.pending is not None
        coordinator.handle_callback(CallbackResult(code="c", state=coordinator.pending.state))
        assert (await task).code == "c"


class TestHandleCallback:
    """Tests for AuthorizationCoordinator.handle_callback."""

    def test_ignored_without_pending_flow(self) -> None:
        coordinator = AuthorizationCoordinator(open_browser=lambda url: True)
        assert not coordinator.handle_callback(CallbackResult(code="c", state="s"))

    @pytest.mark.asyncio
    async def test_ignored_after_settle(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        coordinator = coordinator_with(Browser())
        task = asyncio.create_task(coordinator.authorize(metadata, registration, REDIRECT_URI))
        await asyncio.sleep(0)
        pending = coordinator.pending
        assert pending is not None

        assert coordinator.handle_callback(CallbackResult(code="first", state=pending.state))
        # A replayed or duplicate callback must not change the outcome
        assert not coordinator.handle_callback(CallbackResult(code="second", state=pending.state))
        assert not coordinator.handle_callback(CallbackResult(code="x", state="forged"))
        assert (await task).code == "first"


class TestCancelAndDispose:
    """Tests for cancellation and disposal."""

    @pytest.mark.asyncio
    async def test_cancel(self, metadata: AuthServerMetadata, registration: ClientRegistration) -> None:
        coordinator = coordinator_with(Browser())
        task = asyncio.create_task(coordinator.authorize(metadata, registration, REDIRECT_URI))
        await asyncio.sleep(0)
        assert coordinator.cancel("User cancelled")
        with pytest.raises(AuthorizationCancelledError, match="User cancelled"):
            await task
        assert not coordinator.cancel()

    @pytest.mark.asyncio
    async def test_dispose_rejects_pending_and_future_flows(
        self, metadata: AuthServerMetadata, registration: ClientRegistration
    ) -> None:
        coordinator = coordinator_with(Browser())
        task = asyncio.create_task(coordinator.authorize(metadata, registration, REDIRECT_URI))
        await asyncio.sleep(0)
        coordinator.dispose()
        with pytest.raises(AuthorizationCancelledError):
            await task
        with pytest.raises(AuthorizationCancelledError, match="disposed"):
            await coordinator.authorize(metadata, registration, REDIRECT_URI)
