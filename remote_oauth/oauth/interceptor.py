"""httpx auth flows that recover from 401 responses.

OAuthRetryAuth refreshes the OAuth access token and retries a request
that failed with 401. SessionRetryAuth is the non-OAuth counterpart: it
asks the user for a new session token. Either way a request is retried at
most once; the retry is marked in ``request.extensions`` so a second 401
reaches the caller unchanged.

OAuthInterceptor installs OAuthRetryAuth on a client while the manager
holds OAuth tokens and removes it when they go away.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator

import httpx

from .errors import OAuthClientError, RefreshError, RefreshThrottledError, parse_oauth_error
from .manager import TokenLifecycleManager
from .store import Subscription

logger = logging.getLogger(__name__)

RETRY_MARKER = "oauth_retry_attempted"
DEFAULT_SESSION_HEADER = "Coder-Session-Token"

# Called with the deployment hostname; returns True once a new session token is stored
AuthRequiredCallback = Callable[[str], Awaitable[bool]]


class AuthRequiredEscalation:
    """Shares one interactive re-authentication among concurrent 401s.

    The first caller starts the callback; callers arriving while it runs
    await the same outcome.
    """

    def __init__(self, callback: AuthRequiredCallback):
        self.callback = callback
        self._task: asyncio.Task[bool] | None = None

    @property
    def in_progress(self) -> bool:
        return self._task is not None and not self._task.done()

    async def request(self, hostname: str) -> bool:
        task = self._task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._run(hostname))
            self._task = task
        return await asyncio.shield(task)

    async def _run(self, hostname: str) -> bool:
        try:
            return bool(await self.callback(hostname))
        except Exception as e:
            logger.warning(f"Authentication prompt for {hostname} failed: {type(e).__name__}: {e}")
            return False


class _RetryOnceAuth(httpx.Auth, ABC):
    """Sends a request, and on 401 retries it once with a recovered token."""

    requires_request_body = True
    requires_response_body = True

    def __init__(self, header_name: str = DEFAULT_SESSION_HEADER):
        self.header_name = header_name

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError(f"{type(self).__name__} requires httpx.AsyncClient")

    def _current_token(self) -> str | None:
        return None

    @abstractmethod
    async def _recover(self, sent_token: str | None) -> str | None:
        """Return a token to retry with, or None to surface the 401."""

    async def _after_response(self, request: httpx.Request, response: httpx.Response) -> None:
        return None

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = self._current_token()
        if token and self.header_name not in request.headers:
            request.headers[self.header_name] = token
        sent_token = request.headers.get(self.header_name)

        response = yield request

        if response.status_code != 401:
            await self._after_response(request, response)
            return

        if request.extensions.get(RETRY_MARKER):
            logger.debug(f"401 on retried request to {request.url.path}; giving up")
            return

        new_token = await self._recover(sent_token)
        if new_token is None:
            return

        request.headers[self.header_name] = new_token
        request.extensions[RETRY_MARKER] = True
        logger.debug(f"Retrying {request.method} {request.url.path} with a new session token")
        response = yield request

        if response.status_code != 401:
            await self._after_response(request, response)


async def _stored_session_token(manager: TokenLifecycleManager) -> str | None:
    session = await manager.vault.get_session(manager.deployment)
    return session.token if session else None


class OAuthRetryAuth(_RetryOnceAuth):
    """Refreshes OAuth tokens to recover from 401 responses.

    On 401 the stored session is checked first: if another process already
    replaced the token that was sent, the request is retried with the
    stored one and no refresh happens. Otherwise the manager refreshes
    (joining any refresh already in flight). If OAuth cannot recover and an
    escalation is configured, the user is asked to sign in.
    """

    def __init__(
        self,
        manager: TokenLifecycleManager,
        header_name: str = DEFAULT_SESSION_HEADER,
        escalation: AuthRequiredEscalation | None = None,
    ):
        super().__init__(header_name)
        self.manager = manager
        self.escalation = escalation

    def _current_token(self) -> str | None:
        return self.manager.current_access_token()

    async def _recover(self, sent_token: str | None) -> str | None:
        stored = await _stored_session_token(self.manager)
        if stored and stored != sent_token:
            logger.debug("Session token changed since the request was sent")
            return stored

        try:
            record = await self.manager.refresh()
            return record.access_token
        except RefreshThrottledError as e:
            logger.debug(f"Refresh after 401 throttled: {e}")
        except RefreshError as e:
            logger.warning(f"Token refresh after 401 failed: {e}")
            if e.requires_reauth:
                # The manager has already prompted for re-authentication
                return None
        except OAuthClientError as e:
            logger.warning(f"Token refresh after 401 failed: {e}")

        stored = await _stored_session_token(self.manager)
        if stored and stored != sent_token:
            return stored

        if self.escalation is None:
            return None
        if not await self.escalation.request(self.manager.deployment.safe_hostname):
            return None
        stored = await _stored_session_token(self.manager)
        return stored if stored and stored != sent_token else None

    async def _after_response(self, request: httpx.Request, response: httpx.Response) -> None:
        if response.status_code in (400, 403):
            oauth_error = parse_oauth_error(response)
            if oauth_error is not None and oauth_error.requires_reauth:
                logger.warning(
                    f"{request.method} {request.url.path} rejected with {oauth_error.error}; "
                    f"re-authentication required"
                )
                self.manager.notify_reauth_required(
                    RefreshError(
                        f"Request rejected: {oauth_error}",
                        oauth_error=oauth_error,
                        status_code=response.status_code,
                    )
                )
            return

        if response.is_success and self.manager.should_refresh():
            self.manager.refresh_in_background()


class SessionRetryAuth(_RetryOnceAuth):
    """Asks the user for a new session token to recover from 401 responses."""

    def __init__(
        self,
        manager: TokenLifecycleManager,
        escalation: AuthRequiredEscalation,
        header_name: str = DEFAULT_SESSION_HEADER,
    ):
        super().__init__(header_name)
        self.manager = manager
        self.escalation = escalation

    async def _recover(self, sent_token: str | None) -> str | None:
        stored = await _stored_session_token(self.manager)
        if stored and stored != sent_token:
            return stored
        if not await self.escalation.request(self.manager.deployment.safe_hostname):
            return None
        stored = await _stored_session_token(self.manager)
        return stored if stored and stored != sent_token else None


class OAuthInterceptor:
    """Attaches OAuthRetryAuth to a client while OAuth tokens are present.

    A two-state machine (detached, attached) driven by the manager's
    session state notifications. Both transitions are idempotent. While
    detached the client uses SessionRetryAuth when an auth-required
    callback was given, and its original auth otherwise.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        manager: TokenLifecycleManager,
        header_name: str = DEFAULT_SESSION_HEADER,
        on_auth_required: AuthRequiredCallback | None = None,
    ):
        self.client = client
        self.manager = manager
        escalation = AuthRequiredEscalation(on_auth_required) if on_auth_required else None
        self.oauth_auth = OAuthRetryAuth(manager, header_name, escalation)
        self.fallback_auth: httpx.Auth | None = (
            SessionRetryAuth(manager, escalation, header_name) if escalation else None
        )
        self._detached_auth = self.fallback_auth or client.auth
        self._original_auth = client.auth
        self._attached = False
        self._subscription: Subscription | None = None

    @property
    def attached(self) -> bool:
        return self._attached

    def start(self) -> None:
        """Follow the manager and apply its current state."""
        if self._subscription is not None:
            return
        self.client.auth = self._detached_auth
        self._subscription = self.manager.on_session_state_change(self.sync)
        self.sync()

    def sync(self) -> None:
        if self.manager.is_logged_in_with_oauth():
            self.attach()
        else:
            self.detach()

    def attach(self) -> None:
        if self._attached:
            return
        self.client.auth = self.oauth_auth
        self._attached = True
        logger.debug(f"OAuth retry attached for {self.manager.deployment.safe_hostname}")

    def detach(self) -> None:
        if not self._attached:
            return
        self.client.auth = self._detached_auth
        self._attached = False
        logger.debug(f"OAuth retry detached for {self.manager.deployment.safe_hostname}")

    def dispose(self) -> None:
        if self._subscription is not None:
            self._subscription.dispose()
            self._subscription = None
        self.client.auth = self._original_auth
        self._attached = False
