"""Settings discovery and loading for remote-oauth."""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

DEFAULT_SCOPES = [
    "workspace:read",
    "workspace:update",
    "workspace:start",
    "workspace:ssh",
    "workspace:application_connect",
    "template:read",
    "user:read_personal",
]

CONFIG_FILE_NAME = "remote-oauth.json"

# Directories searched for the config file, in priority order
CONFIG_SEARCH_DIRS = [
    Path("."),
    Path.home() / ".config" / "remote-oauth",
]

ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "remote-oauth" / ".env",
]

ENV_PREFIX = "REMOTE_OAUTH_"

AUTH_METHODS = ("client_secret_post", "client_secret_basic", "none")


class ConfigError(Exception):
    """Invalid configuration value."""

    pass


@dataclass
class Settings:
    """Tunable behavior of the OAuth session layer."""

    required_scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    refresh_threshold_seconds: float = 600.0
    refresh_throttle_seconds: float = 30.0
    background_retry_seconds: float = 60.0
    authorization_timeout_seconds: float = 300.0
    callback_host: str = "127.0.0.1"
    callback_port: int = 38471
    client_name: str = "remote-oauth"
    token_endpoint_auth_method: str = "client_secret_post"
    session_header: str = "Coder-Session-Token"
    store_dir: Path = field(default_factory=lambda: Path.home() / ".cache" / "remote-oauth" / "credentials")
    store_poll_interval_seconds: float = 1.0
    http_timeout_seconds: float = 30.0
    config_path: Path | None = None
    env_path: Path | None = None

    def validate(self) -> None:
        """Raise ConfigError for values the session layer cannot work with."""
        for name in (
            "refresh_threshold_seconds",
            "refresh_throttle_seconds",
            "background_retry_seconds",
            "store_poll_interval_seconds",
        ):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        if self.authorization_timeout_seconds <= 0:
            raise ConfigError("authorization_timeout_seconds must be positive")
        if self.http_timeout_seconds <= 0:
            raise ConfigError("http_timeout_seconds must be positive")
        if not 0 <= self.callback_port <= 65535:
            raise ConfigError(f"callback_port out of range: {self.callback_port}")
        if self.token_endpoint_auth_method not in AUTH_METHODS:
            raise ConfigError(
                f"token_endpoint_auth_method must be one of {', '.join(AUTH_METHODS)}, "
                f"got {self.token_endpoint_auth_method!r}"
            )
        if not self.session_header:
            raise ConfigError("session_header must not be empty")


# Keys not settable from files or the environment
_INTERNAL_FIELDS = {"config_path", "env_path"}


def _coerce(name: str, raw: Any, current: Any) -> Any:
    """Convert a config or environment value to the type of the field's default."""
    try:
        if isinstance(current, list):
            if isinstance(raw, str):
                return [item for item in raw.replace(",", " ").split() if item]
            if isinstance(raw, list) and all(isinstance(item, str) for item in raw):
                return list(raw)
            raise ValueError("expected a list of strings")
        if isinstance(current, Path):
            return Path(raw).expanduser()
        if isinstance(current, bool):
            return str(raw).lower() in ("1", "true", "yes")
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
        return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {raw!r} ({e})") from e


def find_config_file(explicit_path: Path | None = None) -> Path | None:
    if explicit_path:
        return explicit_path if explicit_path.exists() else None
    for search_dir in CONFIG_SEARCH_DIRS:
        candidate = search_dir / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    if explicit_path:
        return explicit_path if explicit_path.exists() else None
    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def load_settings(
    config_path: Path | None = None,
    env_path: Path | None = None,
) -> Settings:
    """Load settings from defaults, a JSON file, and the environment.

    Later sources win: defaults, then ``remote-oauth.json``, then
    ``REMOTE_OAUTH_<FIELD>`` variables (a .env file is loaded first
    without overriding variables already set).

    Raises:
        FileNotFoundError: If an explicit config path does not exist
        json.JSONDecodeError: If the config file is not valid JSON
        ConfigError: If a value has the wrong type or is out of range
    """
    settings = Settings()

    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)
        settings.env_path = env_file

    if config_path is not None and not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    settable = {f.name for f in fields(Settings)} - _INTERNAL_FIELDS

    config_file = find_config_file(config_path)
    if config_file:
        with open(config_file) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ConfigError(f"{config_file} must contain a JSON object")
        for key, value in data.items():
            if key not in settable:
                raise ConfigError(f"Unknown setting {key!r} in {config_file}")
            setattr(settings, key, _coerce(key, value, getattr(settings, key)))
        settings.config_path = config_file

    for name in settable:
        raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            setattr(settings, name, _coerce(name, raw, getattr(settings, name)))

    settings.validate()
    return settings
