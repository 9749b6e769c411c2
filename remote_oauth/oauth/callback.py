"""Localhost redirect receiver for the authorization callback.

Listens on a fixed loopback port so the redirect URI, and with it the
client registration, stays the same across logins. Every request to the
callback path is handed to a handler (normally
AuthorizationCoordinator.handle_callback) which decides whether it
completes the pending flow.
"""

import asyncio
import html
import logging
from collections.abc import Callable
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlparse

from .errors import AuthorizationError

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/oauth/callback"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 38471


class CallbackServerError(AuthorizationError):
    """The callback server could not be started."""

    pass


@dataclass(frozen=True)
class CallbackResult:
    """Query parameters of one callback request."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        return self.code is not None and self.error is None


CallbackHandler = Callable[[CallbackResult], bool]


PAGE_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            height: 100vh;
            margin: 0;
            background: {background};
        }}
        .card {{
            background: white;
            padding: 40px 60px;
            border-radius: 12px;
            text-align: center;
            max-width: 420px;
        }}
        h1 {{ color: #1a1a1a; margin: 0 0 8px 0; font-size: 22px; }}
        p {{ color: #555; margin: 0 0 12px 0; }}
        code {{ color: #b03a2e; font-size: 13px; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{title}</h1>
        <p>{message}</p>
        {detail}
    </div>
</body>
</html>"""


def render_page(title: str, message: str, detail: str | None = None, ok: bool = True) -> str:
    """Render a callback result page. All inputs are HTML-escaped."""
    return PAGE_HTML.format(
        title=html.escape(title),
        message=html.escape(message),
        detail=f"<code>{html.escape(detail)}</code>" if detail else "",
        background="#eef6ee" if ok else "#f8ecec",
    )


def parse_callback_url(url: str) -> CallbackResult:
    """Parse ``code``, ``state``, ``error`` and ``error_description`` from a callback URL."""
    params = parse_qs(urlparse(url).query)

    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


class LocalhostCallbackServer:
    """Loopback HTTP server that forwards callbacks to a handler.

    Usage:
        async with LocalhostCallbackServer(coordinator.handle_callback) as server:
            code = await coordinator.authorize(metadata, registration, server.redirect_uri)
    """

    def __init__(
        self,
        handler: CallbackHandler,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        path: str = CALLBACK_PATH,
    ):
        self.handler = handler
        self.host = host
        self.port = port
        self.path = path
        self._server: asyncio.Server | None = None

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    @property
    def is_running(self) -> bool:
        return self._server is not None

    async def start(self) -> str:
        """Start listening and return the redirect URI.

        Raises:
            CallbackServerError: If the port cannot be bound
        """
        try:
            self._server = await asyncio.start_server(self._handle_connection, self.host, self.port)
        except OSError as e:
            raise CallbackServerError(
                f"Cannot listen for the OAuth callback on {self.host}:{self.port}: {e}. "
                f"Another login may be in progress."
            ) from e

        if self.port == 0:
            self.port = self._server.sockets[0].getsockname()[1]

        logger.debug(f"Callback server listening on {self.redirect_uri}")
        return self.redirect_uri

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.debug("Callback server stopped")

    def _dispatch(self, result: CallbackResult) -> str:
        try:
            accepted = self.handler(result)
        except Exception as e:
            logger.warning(f"OAuth callback handler failed: {type(e).__name__}: {e}")
            accepted = False

        if result.error:
            return render_page(
                "Authorization Failed",
                "The authorization server returned an error.",
                f"{result.error}: {result.error_description or 'No description provided'}",
                ok=False,
            )
        if accepted:
            return render_page(
                "Authorization Successful",
                "You can close this window and return to your editor.",
            )
        return render_page(
            "Authorization Not Recognized",
            "This callback does not match an active login. Start the login again.",
            ok=False,
        )

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            request_line = (await reader.readline()).decode("utf-8", errors="replace")
            parts = request_line.strip().split(" ")
            if len(parts) < 2:
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = parts[0], parts[1]

            while True:
                header_line = await reader.readline()
                if header_line in (b"\r\n", b"\n", b""):
                    break

            if method != "GET":
                await self._send_response(writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
                return

            if urlparse(target).path != self.path:
                await self._send_response(writer, HTTPStatus.NOT_FOUND, "Not found")
                return

            page = self._dispatch(parse_callback_url(target))
            await self._send_html_response(writer, HTTPStatus.OK, page)

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Callback connection dropped: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _send_response(self, writer: asyncio.StreamWriter, status: HTTPStatus, body: str) -> None:
        payload = body.encode("utf-8")
        head = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/plain; charset=utf-8\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(head.encode("ascii") + payload)
        await writer.drain()

    async def _send_html_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        html_content: str,
    ) -> None:
        body = html_content.encode("utf-8")
        head = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            f"Referrer-Policy: no-referrer\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(head.encode("ascii") + body)
        await writer.drain()

    async def __aenter__(self) -> "LocalhostCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
