"""MCP OAuth Callback Listener.

A short-lived local HTTP listener that receives the authorization-code
redirect for exactly one authorization attempt. It binds the first free
port at or above a base port and is used as an async context manager so
that it is torn down on every exit path.

    async with OAuthCallbackListener(base_port=19876) as listener:
        listener.expect(state)
        open_browser(build_url(redirect_uri=listener.redirect_uri, state=state))
        code = await listener.wait_for_code()
"""

import asyncio
import html
import logging
from types import TracebackType

from aiohttp import web

from toolchat.domain.exceptions.mcp import OAuthError

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/mcp/oauth/callback"
CALLBACK_HOST = "127.0.0.1"
DEFAULT_BASE_PORT = 19876
DEFAULT_CALLBACK_TIMEOUT = 5 * 60.0  # 5 minutes
MAX_PORT_ATTEMPTS = 50

PAGE_TEMPLATE = (
    "<!DOCTYPE html><html><head><title>{title}</title></head>"
    "<body><h1>{title}</h1><p>{body}</p></body></html>"
)


def render_page(title: str, body: str) -> str:
    """Render the plain page shown in the browser after the redirect."""
    return PAGE_TEMPLATE.format(title=html.escape(title), body=html.escape(body))


class OAuthCallbackListener:
    """Ephemeral OAuth redirect listener for one authorization attempt."""

    def __init__(
        self,
        base_port: int = DEFAULT_BASE_PORT,
        timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        host: str = CALLBACK_HOST,
        max_port_attempts: int = MAX_PORT_ATTEMPTS,
    ) -> None:
        self._base_port = base_port
        self._timeout = timeout
        self._host = host
        self._max_port_attempts = max_port_attempts
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._port: int | None = None
        self._expected_state: str | None = None
        self._result: asyncio.Future[str] | None = None

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int:
        if self._port is None:
            raise RuntimeError("OAuth callback listener is not running")
        return self._port

    @property
    def redirect_uri(self) -> str:
        return f"http://{self._host}:{self.port}{CALLBACK_PATH}"

    def expect(self, state: str) -> None:
        """Register the state nonce the callback must carry."""
        self._expected_state = state
        self._result = asyncio.get_running_loop().create_future()

    async def _handle_callback(self, request: web.Request) -> web.Response:
        code = request.query.get("code")
        state = request.query.get("state")
        error = request.query.get("error")
        error_description = request.query.get("error_description")

        logger.info(f"Received OAuth callback: error={error}")

        if self._result is None or self._result.done():
            return self._error_response("No authorization is pending", status=400)

        if not state or state != self._expected_state:
            logger.error("OAuth callback state mismatch - potential CSRF attack")
            self._fail("State parameter mismatch in OAuth callback")
            return self._error_response("Invalid or missing state parameter", status=400)

        if error:
            message = error_description or error
            self._fail(f"Authorization failed: {message}")
            return self._error_response(message)

        if not code:
            self._fail("No authorization code in OAuth callback")
            return self._error_response("No authorization code provided", status=400)

        self._result.set_result(code)
        return web.Response(
            text=render_page("Authorization complete", "You can close this window."),
            content_type="text/html",
        )

    def _fail(self, message: str) -> None:
        if self._result is not None and not self._result.done():
            self._result.set_exception(OAuthError(message))

    @staticmethod
    def _error_response(message: str, status: int = 200) -> web.Response:
        return web.Response(
            text=render_page("Authorization failed", message),
            status=status,
            content_type="text/html",
        )

    async def start(self) -> None:
        """
        Bind the first free port at or above the base port.

        Raises:
            OAuthError: If no port in range could be bound.
        """
        if self.is_running:
            return

        app = web.Application()
        app.router.add_get(CALLBACK_PATH, self._handle_callback)
        self._runner = web.AppRunner(app, access_log=None)
        await self._runner.setup()

        last_error: OSError | None = None
        for port in range(self._base_port, self._base_port + self._max_port_attempts):
            site = web.TCPSite(self._runner, self._host, port)
            try:
                await site.start()
            except OSError as e:
                last_error = e
                continue
            self._site = site
            self._port = port
            logger.info(f"OAuth callback listener started on port {port}")
            return

        await self._runner.cleanup()
        self._runner = None
        raise OAuthError(
            f"No free port for OAuth callback in {self._base_port}-"
            f"{self._base_port + self._max_port_attempts - 1}",
            original_error=last_error,
        )

    async def wait_for_code(self) -> str:
        """
        Wait for the callback registered with ``expect``.

        Raises:
            OAuthError: On state mismatch, provider error, cancellation or timeout.
        """
        if self._result is None:
            raise RuntimeError("expect() must be called before wait_for_code()")
        try:
            return await asyncio.wait_for(asyncio.shield(self._result), timeout=self._timeout)
        except TimeoutError:
            raise OAuthError(
                f"OAuth callback timeout after {self._timeout:g}s - authorization took too long"
            ) from None

    async def stop(self) -> None:
        """Stop the listener. Idempotent."""
        if self._result is not None and not self._result.done():
            self._result.cancel()
        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        if self._port is not None:
            logger.info(f"OAuth callback listener on port {self._port} stopped")
        self._port = None

    async def __aenter__(self) -> "OAuthCallbackListener":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()
