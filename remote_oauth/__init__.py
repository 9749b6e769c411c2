"""remote-oauth - OAuth session lifecycle for remote development deployments."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("remote-oauth")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    "Settings",
    "load_settings",
    "RemoteApi",
    "ApiError",
    "OutputHandler",
]


# Lazy imports
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("Settings", "load_settings"):
        from .config import Settings, load_settings
        return {"Settings": Settings, "load_settings": load_settings}[name]
    elif name in ("RemoteApi", "ApiError"):
        from .api import ApiError, RemoteApi
        return {"RemoteApi": RemoteApi, "ApiError": ApiError}[name]
    elif name == "OutputHandler":
        from .output import OutputHandler
        return OutputHandler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
