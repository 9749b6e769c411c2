"""Authorization-code flow coordination.

AuthorizationCoordinator owns at most one PendingAuthorization: the state
nonce and PKCE verifier of the flow currently waiting for its browser
callback. The pending flow ends exactly once, by a matching callback, an
error callback, a state mismatch, the deadline, cancellation, or a newer
flow taking its place.
"""

import asyncio
import hmac
import logging
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass

from .callback import CallbackResult
from .errors import (
    AuthorizationCancelledError,
    AuthorizationError,
    AuthorizationTimeoutError,
    StateMismatchError,
    classify_oauth_error,
)
from .flow import build_authorization_url
from .metadata import AuthServerMetadata
from .pkce import generate_pkce_pair, generate_state
from .tokens import ClientRegistration

logger = logging.getLogger(__name__)

DEFAULT_AUTHORIZATION_TIMEOUT = 300.0

BrowserOpener = Callable[[str], bool]


@dataclass(frozen=True)
class AuthorizationCode:
    """Result of a completed browser authorization."""

    code: str
    verifier: str
    redirect_uri: str


@dataclass
class PendingAuthorization:
    """The single in-flight authorization of a coordinator."""

    state: str
    verifier: str
    redirect_uri: str
    future: "asyncio.Future[AuthorizationCode]"
    deadline: float

    @property
    def settled(self) -> bool:
        return self.future.done()

    def resolve(self, code: str) -> bool:
        if self.settled:
            return False
        self.future.set_result(AuthorizationCode(code, self.verifier, self.redirect_uri))
        return True

    def reject(self, error: AuthorizationError) -> bool:
        if self.settled:
            return False
        self.future.set_exception(error)
        return True


def _state_matches(received: str | None, expected: str) -> bool:
    return hmac.compare_digest((received or "").encode("utf-8"), expected.encode("utf-8"))


class AuthorizationCoordinator:
    """Runs one PKCE authorization at a time and matches its callback."""

    def __init__(
        self,
        open_browser: BrowserOpener | None = None,
        timeout: float = DEFAULT_AUTHORIZATION_TIMEOUT,
    ):
        """Initialize the coordinator.

        Args:
            open_browser: Opens the authorization URL; returns False when it
                could not. Defaults to ``webbrowser.open``.
            timeout: Seconds to wait for the callback
        """
        self.open_browser = open_browser or webbrowser.open
        self.timeout = timeout
        self._pending: PendingAuthorization | None = None
        self._disposed = False

    @property
    def pending(self) -> PendingAuthorization | None:
        return self._pending

    async def authorize(
        self,
        metadata: AuthServerMetadata,
        registration: ClientRegistration,
        redirect_uri: str,
        scopes: list[str] | None = None,
    ) -> AuthorizationCode:
        """Open the browser for authorization and wait for the callback.

        Any flow still waiting is rejected first.

        Raises:
            AuthorizationTimeoutError: No callback before the deadline
            AuthorizationCancelledError: Cancelled, superseded or disposed
            StateMismatchError: Callback state differs from this flow's
            AuthorizationError: The server returned an error or no code
        """
        if self._disposed:
            raise AuthorizationCancelledError("Authorization coordinator has been disposed")

        self.cancel("New OAuth flow started")

        pkce = generate_pkce_pair()
        state = generate_state()

        if scopes and metadata.scopes_supported is not None:
            unsupported = [s for s in scopes if s not in metadata.scopes_supported]
            if unsupported:
                logger.warning(
                    f"Requesting scopes not advertised by the server: {', '.join(unsupported)}"
                )

        url = build_authorization_url(
            metadata,
            registration.client_id,
            redirect_uri,
            pkce.challenge,
            state,
            scopes,
        )

        loop = asyncio.get_running_loop()
        pending = PendingAuthorization(
            state=state,
            verifier=pkce.verifier,
            redirect_uri=redirect_uri,
            future=loop.create_future(),
            deadline=loop.time() + self.timeout,
        )
        self._pending = pending

        try:
            if not self.open_browser(url):
                logger.warning(f"Could not open a browser. Open this URL to continue:\n{url}")

            try:
                return await asyncio.wait_for(asyncio.shield(pending.future), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise AuthorizationTimeoutError(
                    f"Timed out after {self.timeout:.0f} seconds waiting for authorization"
                ) from None
        finally:
            if not pending.settled:
                pending.future.cancel()
            if self._pending is pending:
                self._pending = None

    def handle_callback(self, result: CallbackResult) -> bool:
        """Feed a browser callback to the pending flow.

        Returns:
            True if the callback completed the flow with a code. Callbacks
            arriving with no flow pending, or after it settled, are ignored.
        """
        pending = self._pending
        if pending is None or pending.settled:
            logger.debug("Ignoring OAuth callback: no authorization is pending")
            return False

        if not _state_matches(result.state, pending.state):
            logger.warning("OAuth callback state mismatch; rejecting the pending authorization")
            pending.reject(StateMismatchError("State mismatch in OAuth callback - possible CSRF attack"))
            return False

        if result.error:
            oauth_error = classify_oauth_error(
                {"error": result.error, "error_description": result.error_description}
            )
            pending.reject(
                AuthorizationError(
                    f"Authorization failed: {oauth_error or result.error}",
                    oauth_error=oauth_error,
                )
            )
            return False

        if not result.code:
            pending.reject(AuthorizationError("No authorization code in OAuth callback"))
            return False

        return pending.resolve(result.code)

    def cancel(self, reason: str = "Authorization cancelled") -> bool:
        """Reject the pending flow, if any. Returns whether one was pending."""
        pending = self._pending
        if pending is None:
            return False
        self._pending = None
        return pending.reject(AuthorizationCancelledError(reason))

    def dispose(self) -> None:
        self._disposed = True
        self.cancel("Authorization coordinator disposed")
