"""Tests for the localhost callback server."""

import httpx
import pytest

from remote_oauth.oauth.callback import (
    CallbackResult,
    CallbackServerError,
    LocalhostCallbackServer,
    parse_callback_url,
    render_page,
)


class TestParseCallbackUrl:
    """Tests for parse_callback_url function."""

    def test_success_parameters(self) -> None:
        result = parse_callback_url("/oauth/callback?code=abc&state=xyz")
        assert result == CallbackResult(code="abc", state="xyz")
        assert result.is_success()

    def test_error_parameters(self) -> None:
        result = parse_callback_url(
            "/oauth/callback?error=access_denied&error_description=User+denied&state=xyz"
        )
        assert result.error == "access_denied"
        assert result.error_description == "User denied"
        assert not result.is_success()


class TestRenderPage:
    """Tests for render_page function."""

    def test_escapes_html(self) -> None:
        page = render_page("Failed", "msg", "<script>alert(1)</script>", ok=False)
        assert "<script>" not in page
        assert "&lt;script&gt;" in page


class TestLocalhostCallbackServer:
    """Tests for LocalhostCallbackServer class."""

    @pytest.mark.asyncio
    async def test_forwards_callback_to_handler(self) -> None:
        received: list[CallbackResult] = []

        def handler(result: CallbackResult) -> bool:
            received.append(result)
            return True

        async with LocalhostCallbackServer(handler, port=0) as server:
            assert server.port != 0
            assert server.redirect_uri == f"http://127.0.0.1:{server.port}/oauth/callback"
            async with httpx.AsyncClient(trust_env=False) as client:
                response = await client.get(f"{server.redirect_uri}?code=abc&state=xyz")

        assert response.status_code == 200
        assert "Authorization Successful" in response.text
        assert response.headers["X-Frame-Options"] == "DENY"
        assert received == [CallbackResult(code="abc", state="xyz")]
        assert not server.is_running

    @pytest.mark.asyncio
    async def test_unrecognized_callback_page(self) -> None:
        async with LocalhostCallbackServer(lambda result: False, port=0) as server:
            async with httpx.AsyncClient(trust_env=False) as client:
                response = await client.get(f"{server.redirect_uri}?code=abc&state=wrong")
        assert "Not Recognized" in response.text

    @pytest.mark.asyncio
    async def test_error_callback_page(self) -> None:
        async with LocalhostCallbackServer(lambda result: False, port=0) as server:
            async with httpx.AsyncClient(trust_env=False) as client:
                response = await client.get(
                    f"{server.redirect_uri}?error=access_denied&error_description=%3Cb%3Enope%3C%2Fb%3E"
                )
        assert "Authorization Failed" in response.text
        assert "access_denied" in response.text
        assert "<b>nope</b>" not in response.text

    @pytest.mark.asyncio
    async def test_handler_exception_is_contained(self) -> None:
        def handler(result: CallbackResult) -> bool:
            raise RuntimeError("boom")

        async with LocalhostCallbackServer(handler, port=0) as server:
            async with httpx.AsyncClient(trust_env=False) as client:
                response = await client.get(f"{server.redirect_uri}?code=abc&state=xyz")
        assert response.status_code == 200
        assert "Not Recognized" in response.text

    @pytest.mark.asyncio
    async def test_other_paths_and_methods(self) -> None:
        calls: list[CallbackResult] = []
        async with LocalhostCallbackServer(lambda r: bool(calls.append(r)), port=0) as server:
            base = f"http://127.0.0.1:{server.port}"
            async with httpx.AsyncClient(trust_env=False) as client:
                not_found = await client.get(f"{base}/favicon.ico")
                not_allowed = await client.post(f"{server.redirect_uri}?code=abc")
        assert not_found.status_code == 404
        assert not_allowed.status_code == 405
        assert calls == []

    @pytest.mark.asyncio
    async def test_port_in_use(self) -> None:
        async with LocalhostCallbackServer(lambda r: True, port=0) as first:
            second = LocalhostCallbackServer(lambda r: True, port=first.port)
            with pytest.raises(CallbackServerError, match="Another login may be in progress"):
                await second.start()
