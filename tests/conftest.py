"""Shared fixtures for remote-oauth tests."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio

from fakes import BASE_URL, STORED_REGISTRATION, FakeDeployment, make_record
from remote_oauth.config import Settings
from remote_oauth.oauth.deployment import Deployment
from remote_oauth.oauth.manager import TokenLifecycleManager
from remote_oauth.oauth.store import MemoryCredentialStore
from remote_oauth.oauth.tokens import TokenRecord
from remote_oauth.oauth.vault import CredentialVault


# ============================================================================
# Deployment and HTTP Fixtures
# ============================================================================


@pytest.fixture
def deployment() -> Deployment:
    """The deployment served by fake_server."""
    return Deployment.from_url(BASE_URL)


@pytest.fixture
def fake_server() -> FakeDeployment:
    """Authorization server and API answering through MockTransport."""
    return FakeDeployment()


@pytest_asyncio.fixture
async def http_client(fake_server: FakeDeployment) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client wired to fake_server."""
    async with httpx.AsyncClient(transport=fake_server.transport()) as client:
        yield client


# ============================================================================
# Storage Fixtures
# ============================================================================


@pytest.fixture
def store() -> MemoryCredentialStore:
    return MemoryCredentialStore()


@pytest.fixture
def vault(store: MemoryCredentialStore) -> CredentialVault:
    return CredentialVault(store)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with an ephemeral callback port and short authorization timeout."""
    return Settings(
        callback_port=0,
        authorization_timeout_seconds=5,
        store_dir=tmp_path / "credentials",
    )


@pytest_asyncio.fixture
async def seeded(
    vault: CredentialVault,
    deployment: Deployment,
    fake_server: FakeDeployment,
) -> TokenRecord:
    """Store an OAuth session whose refresh token the server accepts.

    The access token itself is not accepted by the API, so the first API
    call answers 401.
    """
    record = make_record()
    await vault.set_token_record(deployment, record)
    await vault.set_registration(deployment, STORED_REGISTRATION)
    fake_server.valid_refresh.add("refresh-0")
    return record


# ============================================================================
# Manager Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def make_manager(
    deployment: Deployment,
    vault: CredentialVault,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> AsyncGenerator[Callable[..., Awaitable[TokenLifecycleManager]], None]:
    """Factory creating managers that are disposed after the test."""
    managers: list[TokenLifecycleManager] = []

    async def factory(**kwargs: Any) -> TokenLifecycleManager:
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("http_client", http_client)
        manager = await TokenLifecycleManager.create(
            kwargs.pop("deployment", deployment),
            kwargs.pop("vault", vault),
            **kwargs,
        )
        managers.append(manager)
        return manager

    yield factory

    for manager in managers:
        await manager.dispose()
