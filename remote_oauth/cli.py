"""CLI entry point for remote-oauth."""

from __future__ import annotations

import asyncio
import json
import logging
import webbrowser
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, NoReturn, TypeVar

import click

from . import __version__
from .api import ApiError, RemoteApi
from .config import ConfigError, Settings, load_settings
from .oauth.deployment import Deployment
from .oauth.errors import (
    AuthorizationError,
    DiscoveryError,
    OAuthClientError,
    RefreshError,
    RegistrationError,
)
from .oauth.manager import TokenLifecycleManager
from .oauth.store import CredentialStore, FileCredentialStore
from .oauth.vault import CredentialVault
from .output import OutputHandler

logger = logging.getLogger("roauth")

T = TypeVar("T")


def open_credential_store(settings: Settings) -> CredentialStore:
    return FileCredentialStore(settings.store_dir, poll_interval=settings.store_poll_interval_seconds)


def _help_for(error: Exception, url: str) -> str | None:
    if isinstance(error, DiscoveryError):
        return "Check the deployment URL and that OAuth is enabled on the deployment."
    if isinstance(error, RegistrationError):
        return "The deployment must allow dynamic client registration."
    if isinstance(error, AuthorizationError):
        return f"Run 'roauth login {url}' to start a new login."
    if isinstance(error, RefreshError) and error.requires_reauth:
        return f"Stored credentials were rejected. Run 'roauth login {url}'."
    if isinstance(error, RefreshError):
        return f"Try again later, or run 'roauth login {url}'."
    return None


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Path to remote-oauth.json")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, config_path: str | None, env_path: str | None, verbose: bool) -> None:
    """remote-oauth - OAuth sessions for remote development deployments."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_settings(ctx: click.Context) -> Settings | NoReturn:
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_settings(ctx.obj["config_path"], ctx.obj["env_path"])
    except FileNotFoundError as e:
        output.error(e, help_text=str(e))
        raise SystemExit(1)
    except json.JSONDecodeError as e:
        output.error(
            e,
            error_type="ConfigParseError",
            help_text="The config file contains invalid JSON. Check for syntax errors.",
        )
        raise SystemExit(1)
    except ConfigError as e:
        output.error(e, help_text="Fix the setting in remote-oauth.json or the environment.")
        raise SystemExit(1)


def _parse_deployment(ctx: click.Context, url: str) -> Deployment:
    output: OutputHandler = ctx.obj["output"]
    try:
        return Deployment.from_url(url)
    except ValueError as e:
        output.error(e, help_text="Pass the deployment's base URL, e.g. https://dev.example.com")
        raise SystemExit(1)


def _run_with_manager(
    ctx: click.Context,
    url: str,
    action: Callable[[TokenLifecycleManager], Awaitable[T]],
) -> T:
    """Create a manager for ``url``, run ``action`` with it and clean up."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)
    deployment = _parse_deployment(ctx, url)

    def open_browser(auth_url: str) -> bool:
        output.info("Opening browser for authorization...")
        if webbrowser.open(auth_url):
            return True
        output.info(f"Could not open a browser. Open this URL to continue:\n{auth_url}")
        return True

    def on_reauth_required(_deployment: Deployment, error: OAuthClientError) -> None:
        output.info(f"Re-authentication required for {_deployment.url}: {error}")

    async def run() -> T:
        store = open_credential_store(settings)
        manager = await TokenLifecycleManager.create(
            deployment,
            CredentialVault(store),
            settings=settings,
            open_browser=open_browser,
            on_reauth_required=on_reauth_required,
        )
        try:
            return await action(manager)
        finally:
            await manager.dispose()
            await store.close()

    try:
        return asyncio.run(run())
    except (OAuthClientError, ApiError) as e:
        output.error(e, help_text=_help_for(e, url))
        raise SystemExit(1)


@main.command()
@click.argument("url")
@click.pass_context
def login(ctx: click.Context, url: str) -> None:
    """Log in to a deployment through the browser."""
    output: OutputHandler = ctx.obj["output"]

    async def action(manager: TokenLifecycleManager) -> dict[str, Any]:
        record = await manager.login()
        return {
            "deployment": manager.deployment.url,
            "expires_at": record.expires_at.isoformat(),
            "scope": record.scope,
            "has_refresh_token": record.has_refresh_token(),
        }

    result = _run_with_manager(ctx, url, action)
    output.success(result, f"Logged in to {result['deployment']}")


@main.command()
@click.argument("url")
@click.pass_context
def logout(ctx: click.Context, url: str) -> None:
    """Revoke and delete stored credentials for a deployment."""
    output: OutputHandler = ctx.obj["output"]

    async def action(manager: TokenLifecycleManager) -> dict[str, Any]:
        await manager.logout()
        return {"deployment": manager.deployment.url, "logged_out": True}

    result = _run_with_manager(ctx, url, action)
    output.success(result, f"Logged out of {result['deployment']}")


@main.command()
@click.argument("url")
@click.pass_context
def status(ctx: click.Context, url: str) -> None:
    """Show the OAuth session state for a deployment."""
    output: OutputHandler = ctx.obj["output"]

    async def action(manager: TokenLifecycleManager) -> dict[str, Any]:
        return manager.get_status().to_dict()

    data = _run_with_manager(ctx, url, action)
    output.success(
        data,
        output.fields(
            data["deployment_url"],
            [
                ("State", data["state"]),
                ("Expires in", data["expires_in_human"]),
                ("Refresh token", "yes" if data["has_refresh_token"] else "no"),
                ("Next refresh", data["next_refresh_in_human"]),
                ("Scope", data["scope"]),
            ],
        ),
    )


@main.command()
@click.argument("url")
@click.pass_context
def refresh(ctx: click.Context, url: str) -> None:
    """Refresh the access token now."""
    output: OutputHandler = ctx.obj["output"]

    async def action(manager: TokenLifecycleManager) -> dict[str, Any]:
        record = await manager.refresh(bypass_throttle=True)
        return {"deployment": manager.deployment.url, "expires_at": record.expires_at.isoformat()}

    result = _run_with_manager(ctx, url, action)
    output.success(result, f"Token refreshed; expires at {result['expires_at']}")


@main.command()
@click.argument("url")
@click.argument("path")
@click.pass_context
def get(ctx: click.Context, url: str, path: str) -> None:
    """GET an API path with the stored session, e.g. /api/v2/users/me."""
    output: OutputHandler = ctx.obj["output"]

    async def action(manager: TokenLifecycleManager) -> Any:
        api = await RemoteApi.create(manager)
        async with api:
            return await api.get_json(path if path.startswith("/") else f"/{path}")

    output.success(_run_with_manager(ctx, url, action))


if __name__ == "__main__":
    main()
