"""OAuth error model.

OAuth error bodies (RFC 6749 section 5.2, RFC 7009 section 2.2.1) are
reduced to a closed set of codes so callers never branch on raw strings.
Every failure raised by this package derives from OAuthClientError.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class OAuthErrorCode(str, Enum):
    """Known OAuth error codes, plus UNKNOWN for anything else."""

    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    INVALID_SCOPE = "invalid_scope"
    ACCESS_DENIED = "access_denied"
    UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
    SERVER_ERROR = "server_error"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    UNSUPPORTED_TOKEN_TYPE = "unsupported_token_type"
    UNKNOWN = "unknown"

    @classmethod
    def from_value(cls, value: str) -> "OAuthErrorCode":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


REAUTH_ERROR_CODES = frozenset({OAuthErrorCode.INVALID_GRANT, OAuthErrorCode.INVALID_CLIENT})


@dataclass(frozen=True)
class OAuthErrorResponse:
    """A parsed OAuth error body.

    Attributes:
        code: Classified error code
        error: The raw ``error`` string as sent by the server
        description: The ``error_description`` field, if any
    """

    code: OAuthErrorCode
    error: str
    description: str | None = None

    @property
    def requires_reauth(self) -> bool:
        return self.code in REAUTH_ERROR_CODES

    def __str__(self) -> str:
        if self.description:
            return f"{self.error} - {self.description}"
        return self.error


def classify_oauth_error(payload: Any) -> OAuthErrorResponse | None:
    """Classify an arbitrary decoded body as an OAuth error.

    Defined for every input: anything that is not a mapping with a string
    ``error`` field yields None. Only ``error`` and ``error_description``
    are read, so the result never carries other response data.
    """
    if not isinstance(payload, dict):
        return None

    error = payload.get("error")
    if not isinstance(error, str) or not error:
        return None

    description = payload.get("error_description")
    if not isinstance(description, str):
        description = None

    return OAuthErrorResponse(
        code=OAuthErrorCode.from_value(error),
        error=error,
        description=description,
    )


def parse_oauth_error(response: httpx.Response) -> OAuthErrorResponse | None:
    """Parse an OAuth error from an HTTP response body, if it has one."""
    try:
        payload = response.json()
    except ValueError:
        return None
    return classify_oauth_error(payload)


def requires_reauthentication(error: "OAuthErrorResponse | OAuthClientError | None") -> bool:
    """Whether the stored credentials can never succeed again without a new login."""
    if error is None:
        return False
    if isinstance(error, OAuthErrorResponse):
        return error.requires_reauth
    return error.oauth_error is not None and error.oauth_error.requires_reauth


def describe_response_error(response: httpx.Response) -> str:
    """Build a safe error suffix from a failed response.

    Only the standard OAuth error fields are included; the raw body may
    contain tokens or secrets.
    """
    oauth_error = parse_oauth_error(response)
    if oauth_error is None:
        return ""
    return f": {oauth_error}"


class OAuthClientError(Exception):
    """Base class for OAuth client failures."""

    def __init__(self, message: str, oauth_error: OAuthErrorResponse | None = None):
        super().__init__(message)
        self.oauth_error = oauth_error


class DiscoveryError(OAuthClientError):
    """Authorization server metadata is unreachable, malformed or lacks a required capability."""

    pass


class RegistrationError(OAuthClientError):
    """Dynamic client registration is unavailable or was rejected."""

    pass


class AuthorizationError(OAuthClientError):
    """The browser authorization step did not produce a code."""

    pass


class AuthorizationTimeoutError(AuthorizationError):
    """No callback arrived before the authorization deadline."""

    pass


class AuthorizationCancelledError(AuthorizationError):
    """The pending authorization was cancelled, superseded or disposed."""

    pass


class StateMismatchError(AuthorizationError):
    """Callback state did not match the pending flow (possible CSRF)."""

    pass


class TokenEndpointError(OAuthClientError):
    """The token endpoint rejected a request or could not be reached."""

    def __init__(
        self,
        message: str,
        oauth_error: OAuthErrorResponse | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, oauth_error)
        self.status_code = status_code


class TokenExchangeError(TokenEndpointError):
    """The authorization code could not be exchanged for tokens."""

    pass


class RefreshError(TokenEndpointError):
    """A refresh_token grant failed.

    ``requires_reauth`` is only true for errors that invalidate the stored
    refresh token or client; everything else is transient.
    """

    @property
    def requires_reauth(self) -> bool:
        return requires_reauthentication(self)


class RefreshThrottledError(RefreshError):
    """A refresh was requested inside the throttle window of the previous attempt."""

    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


class RevocationError(OAuthClientError):
    """Token revocation failed. Never fatal; callers log it."""

    pass
