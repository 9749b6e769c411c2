"""Token, client and session data structures.

TokenRecord is the persisted OAuth token state for one deployment.
SessionAuth is the credential the HTTP layer actually sends; for OAuth
sessions its token is the current access token.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

# Lifetime assumed when the token endpoint omits expires_in
DEFAULT_EXPIRES_IN = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_scopes(scope: str | None) -> set[str]:
    """Split a space-delimited scope string into a set."""
    if not scope:
        return set()
    return set(scope.split())


def has_required_scopes(granted: str | None, required: Iterable[str]) -> bool:
    """Check that every required scope is granted.

    A required scope ``prefix:action`` is covered by the exact scope or by
    the wildcard ``prefix:*``, where prefix is everything before the first
    colon. Nothing else matches.
    """
    granted_scopes = parse_scopes(granted)
    for scope in required:
        if scope in granted_scopes:
            continue
        prefix, sep, _ = scope.partition(":")
        if sep and f"{prefix}:*" in granted_scopes:
            continue
        return False
    return True


@dataclass(frozen=True)
class TokenRecord:
    """OAuth tokens for one deployment.

    Attributes:
        access_token: Current access token, sent as the session token
        token_type: Token type reported by the server
        expires_at: Absolute expiry instant (timezone-aware UTC)
        refresh_token: Refresh token, if the server issued one
        scope: Space-separated granted scopes
        issued_at: When the record was created
    """

    access_token: str
    expires_at: datetime
    token_type: str = "Bearer"
    refresh_token: str | None = None
    scope: str | None = None
    issued_at: datetime = field(default_factory=_utcnow)

    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)

    def seconds_until_expiry(self, now: datetime | None = None) -> float:
        return (self.expires_at - (now or _utcnow())).total_seconds()

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.seconds_until_expiry(now) <= 0

    def with_expiry(self, expires_at: datetime) -> "TokenRecord":
        return replace(self, expires_at=expires_at)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
            "issued_at": self.issued_at.isoformat(),
        }
        if self.refresh_token:
            data["refresh_token"] = self.refresh_token
        if self.scope:
            data["scope"] = self.scope
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenRecord":
        """Deserialize a stored record.

        Raises:
            KeyError, ValueError, TypeError: If the stored data is malformed
        """
        issued_at = _utcnow()
        if data.get("issued_at"):
            issued_at = _parse_datetime(data["issued_at"])

        access_token = data["access_token"]
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("access_token must be a non-empty string")

        return cls(
            access_token=access_token,
            token_type=data.get("token_type") or "Bearer",
            expires_at=_parse_datetime(data["expires_at"]),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
            issued_at=issued_at,
        )

    @classmethod
    def from_token_response(
        cls,
        response: dict[str, Any],
        previous: "TokenRecord | None" = None,
    ) -> "TokenRecord":
        """Build a record from a token endpoint response.

        ``expires_in`` is converted to an absolute instant here. When
        refreshing, a response without ``refresh_token`` or ``scope`` keeps
        the values of ``previous``.

        Raises:
            ValueError: If the response has no usable access_token
        """
        access_token = response.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("Token response missing access_token")

        now = _utcnow()
        expires_in = DEFAULT_EXPIRES_IN
        raw_expires_in = response.get("expires_in")
        if raw_expires_in is not None:
            try:
                expires_in = int(raw_expires_in)
            except (TypeError, ValueError):
                logger.warning(
                    f"Ignoring invalid expires_in {raw_expires_in!r}, "
                    f"assuming {DEFAULT_EXPIRES_IN}s"
                )

        refresh_token = response.get("refresh_token")
        scope = response.get("scope")
        if previous is not None:
            refresh_token = refresh_token or previous.refresh_token
            scope = scope or previous.scope

        return cls(
            access_token=access_token,
            token_type=response.get("token_type") or "Bearer",
            expires_at=now + timedelta(seconds=expires_in),
            refresh_token=refresh_token,
            scope=scope,
            issued_at=now,
        )


@dataclass(frozen=True)
class ClientRegistration:
    """A dynamically registered OAuth client (RFC 7591).

    The registration stays usable only while ``redirect_uris`` contains
    the redirect URI of the current flow.
    """

    client_id: str
    client_secret: str | None = None
    redirect_uris: list[str] = field(default_factory=list)
    grant_types: list[str] = field(default_factory=lambda: ["authorization_code"])
    token_endpoint_auth_method: str | None = None

    def is_confidential(self) -> bool:
        return bool(self.client_secret)

    def allows_redirect_uri(self, redirect_uri: str) -> bool:
        return redirect_uri in self.redirect_uris

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "client_id": self.client_id,
            "redirect_uris": list(self.redirect_uris),
            "grant_types": list(self.grant_types),
        }
        if self.client_secret:
            data["client_secret"] = self.client_secret
        if self.token_endpoint_auth_method:
            data["token_endpoint_auth_method"] = self.token_endpoint_auth_method
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClientRegistration":
        client_id = data["client_id"]
        if not isinstance(client_id, str) or not client_id:
            raise ValueError("client_id must be a non-empty string")
        return cls(
            client_id=client_id,
            client_secret=data.get("client_secret"),
            redirect_uris=list(data.get("redirect_uris") or []),
            grant_types=list(data.get("grant_types") or ["authorization_code"]),
            token_endpoint_auth_method=data.get("token_endpoint_auth_method"),
        )


@dataclass(frozen=True)
class SessionAuth:
    """Credential used by the HTTP layer for a deployment."""

    url: str
    token: str

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "token": self.token}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionAuth":
        return cls(url=data["url"], token=data["token"])
