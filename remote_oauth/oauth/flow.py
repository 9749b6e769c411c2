"""Token endpoint and authorization URL primitives.

Plain functions for each OAuth request this client makes. They carry no
state; TokenLifecycleManager decides when each one runs.
"""

import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from .errors import (
    RefreshError,
    RevocationError,
    TokenEndpointError,
    TokenExchangeError,
    describe_response_error,
    parse_oauth_error,
)
from .metadata import DEFAULT_AUTH_METHOD, AuthServerMetadata
from .pkce import CODE_CHALLENGE_METHOD
from .tokens import ClientRegistration

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def build_authorization_url(
    metadata: AuthServerMetadata,
    client_id: str,
    redirect_uri: str,
    code_challenge: str,
    state: str,
    scopes: list[str] | None = None,
) -> str:
    """Build the browser URL for the authorization request."""
    params: dict[str, str] = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
    }
    if scopes:
        params["scope"] = " ".join(scopes)
    params["state"] = state
    params["code_challenge"] = code_challenge
    params["code_challenge_method"] = CODE_CHALLENGE_METHOD

    separator = "&" if "?" in metadata.authorization_endpoint else "?"
    return f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"


def _apply_client_auth(
    form: dict[str, str],
    registration: ClientRegistration,
    auth_method: str,
) -> httpx.BasicAuth | None:
    """Add client credentials to ``form`` or return HTTP Basic auth."""
    if auth_method == "client_secret_basic" and registration.is_confidential():
        return httpx.BasicAuth(registration.client_id, registration.client_secret or "")

    form["client_id"] = registration.client_id
    if auth_method == "client_secret_post" and registration.is_confidential():
        form["client_secret"] = registration.client_secret or ""
    return None


async def _post_form(
    url: str,
    form: dict[str, str],
    auth: httpx.BasicAuth | None,
    http_client: httpx.AsyncClient | None,
) -> httpx.Response:
    client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
    should_close = http_client is None
    try:
        kwargs: dict[str, Any] = {"data": form, "headers": {"Accept": "application/json"}}
        if auth is not None:
            kwargs["auth"] = auth
        return await client.post(url, **kwargs)
    finally:
        if should_close:
            await client.aclose()


async def _token_request(
    metadata: AuthServerMetadata,
    registration: ClientRegistration,
    form: dict[str, str],
    error_cls: type[TokenEndpointError],
    action: str,
    auth_method: str,
    http_client: httpx.AsyncClient | None,
) -> dict[str, Any]:
    auth = _apply_client_auth(form, registration, auth_method)

    try:
        response = await _post_form(metadata.token_endpoint, form, auth, http_client)
    except httpx.RequestError as e:
        raise error_cls(f"Network error during {action}: {e}") from e

    if response.status_code != 200:
        raise error_cls(
            f"{action.capitalize()} failed (HTTP {response.status_code})"
            f"{describe_response_error(response)}",
            oauth_error=parse_oauth_error(response),
            status_code=response.status_code,
        )

    try:
        data = response.json()
    except ValueError as e:
        raise error_cls(f"{action.capitalize()} response is not valid JSON") from e

    if not isinstance(data, dict) or not isinstance(data.get("access_token"), str):
        raise error_cls(f"{action.capitalize()} response missing access_token")

    return data


async def exchange_code_for_tokens(
    metadata: AuthServerMetadata,
    registration: ClientRegistration,
    code: str,
    redirect_uri: str,
    code_verifier: str,
    auth_method: str = DEFAULT_AUTH_METHOD,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange an authorization code for tokens.

    Returns:
        The token endpoint response

    Raises:
        TokenExchangeError: If the server rejects the code or cannot be reached
    """
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "code_verifier": code_verifier,
    }
    return await _token_request(
        metadata, registration, form, TokenExchangeError, "token exchange", auth_method, http_client
    )


async def refresh_access_token(
    metadata: AuthServerMetadata,
    registration: ClientRegistration,
    refresh_token: str,
    auth_method: str = DEFAULT_AUTH_METHOD,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Run a refresh_token grant.

    Raises:
        RefreshError: Carrying the parsed OAuth error, if the server sent one
    """
    form = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    }
    return await _token_request(
        metadata, registration, form, RefreshError, "token refresh", auth_method, http_client
    )


async def revoke_token(
    metadata: AuthServerMetadata,
    registration: ClientRegistration,
    token: str,
    token_type_hint: str = "refresh_token",
    auth_method: str = DEFAULT_AUTH_METHOD,
    http_client: httpx.AsyncClient | None = None,
) -> None:
    """Revoke a token per RFC 7009.

    A 200 means the token is no longer valid, including when it already
    was not.

    Raises:
        RevocationError: If the server has no revocation endpoint or the call fails
    """
    if not metadata.revocation_endpoint:
        raise RevocationError("Authorization server does not support token revocation")

    form = {"token": token, "token_type_hint": token_type_hint}
    auth = _apply_client_auth(form, registration, auth_method)

    try:
        response = await _post_form(metadata.revocation_endpoint, form, auth, http_client)
    except httpx.RequestError as e:
        raise RevocationError(f"Network error during token revocation: {e}") from e

    if response.status_code != 200:
        raise RevocationError(
            f"Token revocation failed (HTTP {response.status_code})"
            f"{describe_response_error(response)}",
            oauth_error=parse_oauth_error(response),
        )

    logger.debug(f"Revoked {token_type_hint}")
