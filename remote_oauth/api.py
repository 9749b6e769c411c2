"""Authenticated HTTP client for a deployment's API."""

import asyncio
import logging
from typing import Any

import httpx

from .config import Settings
from .oauth.interceptor import AuthRequiredCallback, OAuthInterceptor
from .oauth.manager import TokenLifecycleManager
from .oauth.store import Subscription

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Deployment API request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteApi:
    """httpx client bound to one deployment.

    Sends the stored session token in the session header and follows
    changes to it, so a refresh done by another process is picked up
    without a token request of its own. While the manager holds OAuth
    tokens, 401 responses trigger one refresh-and-retry.
    """

    def __init__(
        self,
        manager: TokenLifecycleManager,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        on_auth_required: AuthRequiredCallback | None = None,
    ):
        self.manager = manager
        self.settings = settings or manager.settings
        self.header_name = self.settings.session_header
        self.client = httpx.AsyncClient(
            base_url=manager.deployment.url,
            timeout=self.settings.http_timeout_seconds,
            transport=transport,
        )
        self.interceptor = OAuthInterceptor(
            self.client,
            manager,
            header_name=self.header_name,
            on_auth_required=on_auth_required,
        )
        self._subscription: Subscription | None = None
        self._reload_task: asyncio.Task[None] | None = None

    @classmethod
    async def create(
        cls,
        manager: TokenLifecycleManager,
        **kwargs: Any,
    ) -> "RemoteApi":
        api = cls(manager, **kwargs)
        await api.reload_session()
        api._subscription = manager.vault.on_session_change(manager.deployment, api._on_session_changed)
        api.interceptor.start()
        return api

    def set_session_token(self, token: str | None) -> None:
        if token:
            self.client.headers[self.header_name] = token
        else:
            self.client.headers.pop(self.header_name, None)

    @property
    def session_token(self) -> str | None:
        return self.client.headers.get(self.header_name)

    async def reload_session(self) -> None:
        session = await self.manager.vault.get_session(self.manager.deployment)
        self.set_session_token(session.token if session else None)

    def _on_session_changed(self) -> None:
        if self._reload_task is not None and not self._reload_task.done():
            self._reload_task.cancel()
        self._reload_task = asyncio.get_running_loop().create_task(self.reload_session())

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request relative to the deployment URL.

        Raises:
            ApiError: On network failure
        """
        try:
            return await self.client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise ApiError(f"Request to {self.manager.deployment.url}{path} failed: {e}") from e

    async def get_json(self, path: str) -> Any:
        """GET ``path`` and decode the JSON body.

        Raises:
            ApiError: On network failure, non-2xx status or invalid JSON
        """
        response = await self.request("GET", path)
        if not response.is_success:
            raise ApiError(
                f"GET {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(f"GET {path} returned invalid JSON") from e

    async def aclose(self) -> None:
        if self._subscription is not None:
            self._subscription.dispose()
            self._subscription = None
        if self._reload_task is not None and not self._reload_task.done():
            self._reload_task.cancel()
        self.interceptor.dispose()
        await self.client.aclose()

    async def __aenter__(self) -> "RemoteApi":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
