"""Token lifecycle management for one deployment.

TokenLifecycleManager is the only writer of a deployment's OAuth tokens.
It logs in, refreshes ahead of expiry, collapses concurrent refreshes into
one request, and follows changes that other processes make to the shared
credential store.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import httpx

from ..config import Settings
from .authorizer import AuthorizationCoordinator, BrowserOpener
from .callback import LocalhostCallbackServer
from .deployment import Deployment
from .errors import (
    DiscoveryError,
    OAuthClientError,
    OAuthErrorCode,
    RefreshError,
    RefreshThrottledError,
    RegistrationError,
    TokenExchangeError,
)
from .flow import exchange_code_for_tokens, refresh_access_token, revoke_token
from .metadata import AuthServerMetadata, MetadataClient
from .registry import ClientRegistry
from .scheduler import RefreshScheduler
from .store import CredentialStoreError, Subscription
from .tokens import TokenRecord, has_required_scopes
from .vault import CredentialVault

logger = logging.getLogger(__name__)

ReauthCallback = Callable[[Deployment, OAuthClientError], "Awaitable[None] | None"]


class SessionState(str, Enum):
    """Authentication state of a manager."""

    LOGGED_OUT = "logged_out"
    AUTHORIZING = "authorizing"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    INVALID = "invalid"


def _format_timedelta(td: timedelta) -> str:
    """Format a timedelta as e.g. "45 seconds", "3 minutes", "2 hours"."""
    total_seconds = int(td.total_seconds())

    if total_seconds < 0:
        return "Expired"
    if total_seconds < 60:
        return f"{total_seconds} seconds"

    minutes = total_seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"

    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''}"


@dataclass
class AuthStatus:
    """Snapshot of a manager for display."""

    deployment_url: str
    state: SessionState
    authenticated: bool = False
    expires_at: str | None = None
    expires_in_human: str | None = None
    has_refresh_token: bool = False
    scope: str | None = None
    next_refresh_in_human: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment_url": self.deployment_url,
            "state": self.state.value,
            "authenticated": self.authenticated,
            "expires_at": self.expires_at,
            "expires_in_human": self.expires_in_human,
            "has_refresh_token": self.has_refresh_token,
            "scope": self.scope,
            "next_refresh_in_human": self.next_refresh_in_human,
        }


class TokenLifecycleManager:
    """Owns the OAuth session of one deployment within one process.

    Construct with ``await TokenLifecycleManager.create(...)`` and release
    with ``await manager.dispose()``. Within a process at most one refresh
    request is in flight; across processes the managers converge by
    re-reading the credential store whenever it reports a change.
    """

    def __init__(
        self,
        deployment: Deployment,
        vault: CredentialVault,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        coordinator: AuthorizationCoordinator | None = None,
        open_browser: BrowserOpener | None = None,
        on_reauth_required: ReauthCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the manager without touching the store.

        Args:
            deployment: Deployment whose session is managed
            vault: Credential vault over the shared store
            settings: Timing, scope and client settings
            http_client: Client used for all OAuth requests
            coordinator: Authorization coordinator; created if omitted
            open_browser: Browser opener for a created coordinator
            on_reauth_required: Called once per burst of re-authentication
                failures to prompt the user
            clock: Monotonic time source for the throttle window
        """
        self.deployment = deployment
        self.vault = vault
        self.settings = settings or Settings()
        self.http_client = http_client
        self.coordinator = coordinator or AuthorizationCoordinator(
            open_browser=open_browser,
            timeout=self.settings.authorization_timeout_seconds,
        )
        self.on_reauth_required = on_reauth_required
        self._clock = clock

        self.metadata_client = MetadataClient(
            http_client=http_client,
            auth_method=self.settings.token_endpoint_auth_method,
            timeout=self.settings.http_timeout_seconds,
        )
        self.registry = self._make_registry(deployment)
        self._scheduler = RefreshScheduler(
            self._run_scheduled_refresh,
            self.settings.refresh_threshold_seconds,
        )

        self._state = SessionState.LOGGED_OUT
        self._record: TokenRecord | None = None
        self._metadata: AuthServerMetadata | None = None
        self._refresh_task: asyncio.Task[TokenRecord] | None = None
        self._last_refresh_attempt: float | None = None
        self._reauth_task: asyncio.Task[None] | None = None
        self._sync_task: asyncio.Task[None] | None = None
        self._sync_pending = False
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._subscription: Subscription | None = None
        self._disposed = False
        self._state_listeners: list[Callable[[], None]] = []

    @classmethod
    async def create(
        cls,
        deployment: Deployment,
        vault: CredentialVault,
        **kwargs: Any,
    ) -> "TokenLifecycleManager":
        """Create a manager, load stored tokens and start following changes."""
        manager = cls(deployment, vault, **kwargs)
        manager._subscribe()
        await manager._load()
        return manager

    def _make_registry(self, deployment: Deployment) -> ClientRegistry:
        return ClientRegistry(
            deployment,
            self.vault,
            http_client=self.http_client,
            client_name=self.settings.client_name,
            auth_method=self.settings.token_endpoint_auth_method,
            timeout=self.settings.http_timeout_seconds,
        )

    # Read-only state

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def record(self) -> TokenRecord | None:
        return self._record

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    @property
    def scheduler(self) -> RefreshScheduler:
        return self._scheduler

    def is_logged_in_with_oauth(self) -> bool:
        return self._record is not None and self._state in (
            SessionState.AUTHENTICATED,
            SessionState.REFRESHING,
        )

    def current_access_token(self) -> str | None:
        return self._record.access_token if self._record else None

    def on_session_state_change(self, listener: Callable[[], None]) -> Subscription:
        """Call ``listener`` whenever the token record is adopted or dropped."""
        self._state_listeners.append(listener)

        def remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return Subscription(remove)

    def _emit_state_change(self) -> None:
        for listener in list(self._state_listeners):
            try:
                listener()
            except Exception as e:
                logger.warning(f"Session state listener failed: {type(e).__name__}: {e}")

    def should_refresh(self) -> bool:
        """Whether a proactive refresh is due and allowed right now."""
        record = self._record
        if self._state is not SessionState.AUTHENTICATED or record is None:
            return False
        if not record.has_refresh_token() or self.is_refreshing:
            return False
        if self._throttle_remaining() > 0:
            return False
        return record.seconds_until_expiry() < self.settings.refresh_threshold_seconds

    def get_status(self) -> AuthStatus:
        status = AuthStatus(deployment_url=self.deployment.url, state=self._state)
        record = self._record
        if record is None:
            return status

        now = datetime.now(timezone.utc)
        status.authenticated = self.is_logged_in_with_oauth()
        status.expires_at = record.expires_at.isoformat()
        status.expires_in_human = _format_timedelta(record.expires_at - now)
        status.has_refresh_token = record.has_refresh_token()
        status.scope = record.scope

        next_refresh = self._scheduler.seconds_until_fire()
        if next_refresh is not None:
            status.next_refresh_in_human = _format_timedelta(timedelta(seconds=next_refresh))
        return status

    # Loading and store synchronization

    def _subscribe(self) -> None:
        self._subscription = self.vault.on_session_change(self.deployment, self._on_session_changed)

    async def _read_validated_record(self) -> TokenRecord | None:
        """Read the stored record, clearing it when it lacks required scopes."""
        record = await self.vault.get_token_record(self.deployment)
        if record is None:
            return None
        if not has_required_scopes(record.scope, self.settings.required_scopes):
            logger.warning(
                f"Stored token for {self.deployment.safe_hostname} lacks required scopes "
                f"(granted: {record.scope or 'none'}); discarding it"
            )
            await self.vault.clear_token_record(self.deployment)
            return None
        return record

    def _adopt(self, record: TokenRecord | None) -> None:
        """Make ``record`` the in-memory state and (re)schedule for it."""
        self._record = record
        if record is None:
            self._scheduler.stop()
            if self._state is not SessionState.INVALID:
                self._state = SessionState.LOGGED_OUT
        else:
            if self._state in (SessionState.LOGGED_OUT, SessionState.INVALID, SessionState.AUTHENTICATED):
                self._state = SessionState.AUTHENTICATED
            self._scheduler.schedule(record)
        self._emit_state_change()

    async def _load(self) -> None:
        record = await self._read_validated_record()
        if record is not None and record.is_expired() and record.has_refresh_token():
            self._record = record
            self._state = SessionState.AUTHENTICATED
            self._emit_state_change()
            logger.info(f"Stored token for {self.deployment.safe_hostname} has expired; refreshing")
            try:
                await self.refresh(bypass_throttle=True)
            except OAuthClientError as e:
                logger.warning(f"Refresh of expired token failed: {e}")
                if self._record is not None:
                    self._scheduler.schedule_in(self.settings.background_retry_seconds)
            return
        self._adopt(record)

    def _on_session_changed(self) -> None:
        if self._disposed:
            return
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_pending = True
            return
        self._sync_task = asyncio.get_running_loop().create_task(self._sync_from_store())

    async def _sync_from_store(self) -> None:
        while True:
            self._sync_pending = False
            try:
                record = await self._read_validated_record()
            except Exception as e:
                logger.warning(f"Failed to re-read credentials after change: {type(e).__name__}: {e}")
                return
            if record != self._record:
                logger.debug(
                    f"Credentials for {self.deployment.safe_hostname} changed in the store"
                )
                self._adopt(record)
            if not self._sync_pending:
                return

    # Metadata

    async def get_metadata(self, refresh: bool = False) -> AuthServerMetadata:
        """Return cached authorization server metadata, discovering if needed."""
        if self._metadata is None or refresh:
            self._metadata = await self.metadata_client.discover(self.deployment)
        return self._metadata

    # Login

    async def login(self, deployment: Deployment | None = None) -> TokenRecord:
        """Run the full browser login and persist the resulting tokens.

        Raises:
            DiscoveryError, RegistrationError, AuthorizationError,
            TokenExchangeError: From the failing step
        """
        if deployment is not None and deployment != self.deployment:
            await self.set_deployment(deployment)

        previous_state = self._state
        self._state = SessionState.AUTHORIZING
        try:
            metadata = await self.get_metadata(refresh=True)
            scopes = list(self.settings.required_scopes)

            async with LocalhostCallbackServer(
                self.coordinator.handle_callback,
                host=self.settings.callback_host,
                port=self.settings.callback_port,
            ) as server:
                registration = await self.registry.register(metadata, server.redirect_uri)
                authorization = await self.coordinator.authorize(
                    metadata, registration, server.redirect_uri, scopes
                )

            self._state = SessionState.EXCHANGING
            response = await exchange_code_for_tokens(
                metadata,
                registration,
                authorization.code,
                authorization.redirect_uri,
                authorization.verifier,
                auth_method=self.settings.token_endpoint_auth_method,
                http_client=self.http_client,
            )
            # Omitted scope means the requested scope was granted (RFC 6749 section 5.1)
            response.setdefault("scope", " ".join(scopes))

            try:
                record = TokenRecord.from_token_response(response)
            except ValueError as e:
                raise TokenExchangeError(f"Invalid token response: {e}") from e

            if not has_required_scopes(record.scope, self.settings.required_scopes):
                raise TokenExchangeError(
                    f"Authorization server granted insufficient scopes: {record.scope or 'none'}"
                )

            await self.vault.set_token_record(self.deployment, record)
        except BaseException:
            if self._state in (SessionState.AUTHORIZING, SessionState.EXCHANGING):
                self._state = previous_state
            raise

        self._state = SessionState.AUTHENTICATED
        self._last_refresh_attempt = None
        self._adopt(record)
        logger.info(f"Logged in to {self.deployment.url}")
        return record

    # Refresh

    def _throttle_remaining(self) -> float:
        if self._last_refresh_attempt is None:
            return 0.0
        elapsed = self._clock() - self._last_refresh_attempt
        return max(0.0, self.settings.refresh_throttle_seconds - elapsed)

    async def refresh(self, bypass_throttle: bool = False) -> TokenRecord:
        """Refresh the access token.

        Concurrent callers share the in-flight attempt and its outcome.

        Raises:
            RefreshThrottledError: Inside the throttle window of the last attempt
            RefreshError: The refresh failed; ``requires_reauth`` tells whether
                the stored credentials were discarded
        """
        if self._refresh_task is not None and not self._refresh_task.done():
            return await self._join_refresh(self._refresh_task)

        if self._disposed:
            raise RefreshError("Token manager has been disposed")

        remaining = self._throttle_remaining()
        if remaining > 0 and not bypass_throttle:
            raise RefreshThrottledError(
                f"Token refresh throttled; retry in {remaining:.0f}s",
                retry_after=remaining,
            )

        self._last_refresh_attempt = self._clock()
        self._refresh_task = asyncio.get_running_loop().create_task(self._do_refresh())
        return await self._join_refresh(self._refresh_task)

    @staticmethod
    async def _join_refresh(task: "asyncio.Task[TokenRecord]") -> TokenRecord:
        """Await the shared refresh; its cancellation fails callers with RefreshError."""
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and (current is None or not current.cancelling()):
                raise RefreshError("Refresh aborted") from None
            raise

    async def _do_refresh(self) -> TokenRecord:
        previous_state = self._state
        if previous_state is SessionState.AUTHENTICATED:
            self._state = SessionState.REFRESHING
        try:
            return await self._refresh_from_store()
        finally:
            if self._state is SessionState.REFRESHING:
                self._state = SessionState.AUTHENTICATED if self._record else SessionState.LOGGED_OUT

    async def _refresh_from_store(self) -> TokenRecord:
        # Another process may have refreshed since our last read
        stored = await self._read_validated_record()
        if stored is None or not stored.has_refresh_token():
            self._adopt(stored)
            raise RefreshError("No refresh token available; log in again")

        if self._record is not None and stored.access_token != self._record.access_token:
            logger.debug("Using token refreshed by another process")
            self._adopt(stored)
            return stored

        try:
            metadata = await self.get_metadata()
            registration = await self.registry.get()
            if registration is None:
                raise RegistrationError("No client registration stored; log in again")

            logger.debug(f"Refreshing access token for {self.deployment.safe_hostname}")
            response = await refresh_access_token(
                metadata,
                registration,
                stored.refresh_token or "",
                auth_method=self.settings.token_endpoint_auth_method,
                http_client=self.http_client,
            )
        except RefreshError as e:
            if e.requires_reauth:
                await self._handle_reauth_failure(e, stored)
            raise
        except (DiscoveryError, RegistrationError) as e:
            raise RefreshError(f"Cannot refresh token: {e}") from e

        try:
            record = TokenRecord.from_token_response(response, previous=stored)
        except ValueError as e:
            raise RefreshError(f"Invalid refresh response: {e}") from e

        try:
            await self.vault.set_token_record(self.deployment, record)
        except CredentialStoreError as e:
            raise RefreshError(f"Failed to store refreshed token: {e}") from e
        self._adopt(record)
        logger.info(f"Refreshed access token for {self.deployment.safe_hostname}")
        return record

    async def _handle_reauth_failure(self, error: RefreshError, used: TokenRecord) -> None:
        current = await self.vault.get_token_record(self.deployment)
        if current is not None and current.refresh_token != used.refresh_token:
            # The refresh token was rotated by a concurrent refresh elsewhere
            logger.info("Refresh token was rotated by another process; keeping its tokens")
            self._adopt(current)
            raise RefreshError("Refresh raced with another process; using its tokens") from error

        logger.warning(
            f"Stored credentials for {self.deployment.safe_hostname} were rejected "
            f"({error.oauth_error}); re-authentication required"
        )
        self._scheduler.stop()
        self._record = None
        self._state = SessionState.INVALID
        try:
            await self.vault.clear_token_record(self.deployment)
            if error.oauth_error is not None and error.oauth_error.code is OAuthErrorCode.INVALID_CLIENT:
                await self.registry.clear()
        except CredentialStoreError as e:
            logger.warning(f"Failed to clear rejected credentials: {e}")
        self._emit_state_change()
        self.notify_reauth_required(error)

    def refresh_in_background(self) -> "asyncio.Task[None]":
        """Start a refresh without waiting for it. Failures are only logged."""
        task = asyncio.get_running_loop().create_task(self._background_refresh())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _background_refresh(self) -> None:
        try:
            await self.refresh()
        except RefreshThrottledError as e:
            logger.debug(f"Background refresh skipped: {e}")
        except OAuthClientError as e:
            logger.warning(f"Background token refresh failed: {e}")

    async def _run_scheduled_refresh(self) -> None:
        record = self._record
        try:
            await self.refresh()
        except RefreshThrottledError as e:
            self._scheduler.schedule_in(e.retry_after)
        except OAuthClientError as e:
            if self._disposed or (isinstance(e, RefreshError) and e.requires_reauth):
                return
            logger.warning(
                f"Scheduled token refresh failed: {e}; retrying in "
                f"{self.settings.background_retry_seconds:.0f}s"
            )
            # Only re-arm for the record this attempt was for
            if self._record is record and record is not None and record.has_refresh_token():
                self._scheduler.schedule_in(self.settings.background_retry_seconds)

    # Re-authentication prompt

    def notify_reauth_required(self, error: OAuthClientError) -> None:
        """Ask the user to log in again, at most one prompt at a time."""
        if self.on_reauth_required is None or self._disposed:
            return
        if self._reauth_task is not None and not self._reauth_task.done():
            logger.debug("Re-authentication prompt already pending")
            return
        self._reauth_task = asyncio.get_running_loop().create_task(self._invoke_reauth(error))

    async def _invoke_reauth(self, error: OAuthClientError) -> None:
        callback = self.on_reauth_required
        if callback is None:
            return
        try:
            result = callback(self.deployment, error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Re-authentication prompt failed: {type(e).__name__}: {e}")

    # Revocation and logout

    async def revoke(self) -> bool:
        """Revoke the stored refresh token (or access token) if the server allows it.

        Never raises.

        Returns:
            True if the server confirmed revocation
        """
        record = await self.vault.get_token_record(self.deployment) or self._record
        if record is None:
            return False

        if record.refresh_token:
            token, hint = record.refresh_token, "refresh_token"
        else:
            token, hint = record.access_token, "access_token"

        try:
            metadata = await self.get_metadata()
            if not metadata.supports_revocation():
                logger.debug("Authorization server does not advertise token revocation")
                return False
            registration = await self.registry.get()
            if registration is None:
                logger.debug("No client registration; skipping token revocation")
                return False
            await revoke_token(
                metadata,
                registration,
                token,
                token_type_hint=hint,
                auth_method=self.settings.token_endpoint_auth_method,
                http_client=self.http_client,
            )
        except OAuthClientError as e:
            logger.warning(f"Token revocation failed: {e}")
            return False
        return True

    async def logout(self) -> None:
        """Stop refreshing, revoke, and delete stored tokens and registration."""
        self._scheduler.stop()
        await self._cancel_refresh()
        await self.revoke()
        await self.vault.clear_token_record(self.deployment)
        await self.registry.clear()
        self._record = None
        self._state = SessionState.LOGGED_OUT
        self._scheduler.stop()
        self._last_refresh_attempt = None
        self._emit_state_change()
        logger.info(f"Logged out of {self.deployment.url}")

    # Lifecycle

    async def _cancel_refresh(self) -> None:
        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except OAuthClientError as e:
                logger.debug(f"In-flight refresh ended with {e}")
        self._refresh_task = None

    async def set_deployment(self, deployment: Deployment) -> None:
        """Switch to another deployment, dropping all state of the current one."""
        if deployment == self.deployment:
            return

        logger.debug(f"Switching deployment from {self.deployment.url} to {deployment.url}")
        self._scheduler.stop()
        await self._cancel_refresh()
        self.coordinator.cancel("Deployment changed")
        if self._subscription is not None:
            self._subscription.dispose()

        self.deployment = deployment
        self.registry = self._make_registry(deployment)
        self._metadata = None
        self._record = None
        self._state = SessionState.LOGGED_OUT
        self._last_refresh_attempt = None

        self._subscribe()
        await self._load()

    async def dispose(self) -> None:
        """Cancel the timer, abort refresh, reject authorization and unsubscribe.

        Every step runs even if an earlier one fails.
        """
        self._disposed = True

        try:
            await self._scheduler.aclose()
        except Exception as e:
            logger.warning(f"Failed to stop refresh timer: {e}")

        try:
            await self._cancel_refresh()
        except Exception as e:
            logger.warning(f"Failed to abort in-flight refresh: {e}")

        try:
            self.coordinator.dispose()
        except Exception as e:
            logger.warning(f"Failed to reject pending authorization: {e}")

        try:
            if self._subscription is not None:
                self._subscription.dispose()
                self._subscription = None
        except Exception as e:
            logger.warning(f"Failed to unsubscribe from credential changes: {e}")

        for task in [self._sync_task, self._reauth_task, *self._background_tasks]:
            if task is not None and not task.done():
                task.cancel()
