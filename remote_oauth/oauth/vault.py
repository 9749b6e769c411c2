"""Typed, per-deployment view over a CredentialStore.

Three keys are kept per deployment, namespaced by its safe hostname:

    session.<host>        {"url", "token"}: what the HTTP layer sends
    oauth.tokens.<host>   TokenRecord: access/refresh tokens and expiry
    oauth.client.<host>   ClientRegistration from dynamic registration

Token writes go to ``oauth.tokens`` first and ``session`` last, so a
listener on the session key always observes a complete record.
"""

import json
import logging
from typing import Any

from .deployment import Deployment
from .store import ChangeListener, CredentialStore, Subscription
from .tokens import ClientRegistration, SessionAuth, TokenRecord

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session"
TOKENS_PREFIX = "oauth.tokens"
CLIENT_PREFIX = "oauth.client"


def session_key(deployment: Deployment) -> str:
    return f"{SESSION_PREFIX}.{deployment.safe_hostname}"


def tokens_key(deployment: Deployment) -> str:
    return f"{TOKENS_PREFIX}.{deployment.safe_hostname}"


def client_key(deployment: Deployment) -> str:
    return f"{CLIENT_PREFIX}.{deployment.safe_hostname}"


class CredentialVault:
    """Reads and writes session, token and client entries for deployments."""

    def __init__(self, store: CredentialStore):
        self.store = store

    async def _get_json(self, key: str) -> dict[str, Any] | None:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Stored value for {key} is not valid JSON; ignoring it")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Stored value for {key} has unexpected type {type(data).__name__}")
            return None
        return data

    async def _set_json(self, key: str, data: dict[str, Any]) -> None:
        await self.store.set(key, json.dumps(data))

    # Session

    async def get_session(self, deployment: Deployment) -> SessionAuth | None:
        data = await self._get_json(session_key(deployment))
        if data is None:
            return None
        try:
            return SessionAuth.from_dict(data)
        except (KeyError, TypeError) as e:
            logger.warning(f"Invalid session data for {deployment.safe_hostname}: {e}")
            return None

    async def set_session(self, deployment: Deployment, token: str) -> None:
        """Store a session token directly.

        A token stored here that differs from the OAuth access token makes
        the deployment non-OAuth until the next login.
        """
        await self._set_json(session_key(deployment), SessionAuth(deployment.url, token).to_dict())

    async def clear_session(self, deployment: Deployment) -> None:
        await self.store.delete(session_key(deployment))

    def on_session_change(self, deployment: Deployment, listener: ChangeListener) -> Subscription:
        return self.store.on_change(session_key(deployment), listener)

    # OAuth tokens

    async def get_token_record(self, deployment: Deployment) -> TokenRecord | None:
        """Read the OAuth token record for a deployment.

        Returns None unless the record exists, parses, and its access token
        is the current session token.
        """
        data = await self._get_json(tokens_key(deployment))
        if data is None:
            return None
        try:
            record = TokenRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Invalid token data for {deployment.safe_hostname}: {e}")
            return None

        session = await self.get_session(deployment)
        if session is None or session.token != record.access_token:
            logger.debug(f"Session for {deployment.safe_hostname} is not using OAuth tokens")
            return None
        return record

    async def set_token_record(self, deployment: Deployment, record: TokenRecord) -> None:
        await self._set_json(tokens_key(deployment), record.to_dict())
        await self.set_session(deployment, record.access_token)

    async def clear_token_record(self, deployment: Deployment) -> None:
        await self.store.delete(tokens_key(deployment))
        await self.clear_session(deployment)

    # Client registration

    async def get_registration(self, deployment: Deployment) -> ClientRegistration | None:
        data = await self._get_json(client_key(deployment))
        if data is None:
            return None
        try:
            return ClientRegistration.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Invalid client registration for {deployment.safe_hostname}: {e}")
            return None

    async def set_registration(self, deployment: Deployment, registration: ClientRegistration) -> None:
        await self._set_json(client_key(deployment), registration.to_dict())

    async def clear_registration(self, deployment: Deployment) -> None:
        await self.store.delete(client_key(deployment))
