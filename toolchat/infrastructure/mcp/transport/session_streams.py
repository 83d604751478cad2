"""
Shared base for MCP transports built on the ``mcp`` SDK clients.

The SDK clients own the HTTP wire protocol and hand back a pair of memory
streams carrying ``SessionMessage`` objects. The client context is entered
and exited by one owner task, because its task group must not cross tasks.
Responses read from the stream are correlated with ``PendingRequests``.
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any

import anyio
import httpx
from mcp.shared.message import SessionMessage
from mcp.types import JSONRPCMessage

from toolchat.domain.exceptions.mcp import (
    AuthorizationRequired,
    ConnectError,
    ConnectTimeout,
    Disconnected,
    RemoteError,
    TransportError,
    TransportTimeout,
)
from toolchat.domain.model.mcp.server import ServerConfig
from toolchat.domain.ports.mcp.transport_port import CloseHandler, NotificationHandler
from toolchat.infrastructure.mcp.transport.base import (
    DEFAULT_REQUEST_TIMEOUT,
    PendingRequests,
    build_notification,
    build_request,
    closed_error,
    route_message,
)

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 5.0

# Event streams stay open while the server is idle.
SSE_READ_TIMEOUT = 300.0


def create_http_client(
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    auth: httpx.Auth | None = None,
) -> httpx.AsyncClient:
    """Default HTTP client factory handed to the SDK clients."""
    return httpx.AsyncClient(
        headers=headers,
        timeout=timeout or httpx.Timeout(DEFAULT_REQUEST_TIMEOUT),
        auth=auth,
        follow_redirects=True,
    )


class SessionStreamTransport:
    """
    MCP transport over an SDK client's read/write stream pair.

    Subclasses implement ``_enter_streams`` to enter their SDK client on
    the exit stack owned by the runner task.
    """

    transport_name = "HTTP"

    def __init__(
        self,
        config: ServerConfig,
        connect_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        http_client_factory: Any | None = None,
    ) -> None:
        self.server_id = config.id
        self.on_notification: NotificationHandler | None = None
        self.on_close: CloseHandler | None = None
        self._config = config
        self._connect_timeout = connect_timeout
        self._client_factory = http_client_factory or create_http_client
        self._pending = PendingRequests(config.id)
        self._write_stream: Any | None = None
        self._runner: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._stop: asyncio.Event | None = None
        self._unauthorized = False
        self._is_open = False
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._is_open

    async def _enter_streams(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        raise NotImplementedError

    def _http_client(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        auth: httpx.Auth | None = None,
    ) -> httpx.AsyncClient:
        """Create an HTTP client whose responses are watched for HTTP 401."""
        client = self._client_factory(headers=headers, timeout=timeout, auth=auth)
        client.event_hooks["response"].append(self._watch_response)
        return client

    async def _watch_response(self, response: httpx.Response) -> None:
        if response.status_code == 401:
            self._unauthorized = True
        elif response.is_success:
            self._unauthorized = False

    async def open(self) -> None:
        """
        Start the SDK client and wait until its streams are ready.

        Raises:
            AuthorizationRequired: If the server answered 401.
            ConnectTimeout: If the client was not ready in time.
            ConnectError: For any other failure.
        """
        if self._is_open:
            return

        self._closing = False
        self._unauthorized = False
        self._ready = asyncio.get_running_loop().create_future()
        self._stop = asyncio.Event()
        self._runner = asyncio.create_task(self._run())

        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self._connect_timeout)
        except TimeoutError:
            await self.close()
            raise ConnectTimeout(
                f"MCP server '{self.server_id}' not ready within {self._connect_timeout:g}s"
            ) from None
        except ConnectError:
            await self.close()
            raise
        logger.info(f"[{self.server_id}] {self.transport_name} transport connected: {self._config.url}")

    async def _run(self) -> None:
        assert self._ready is not None and self._stop is not None
        reason: Exception = closed_error(self.server_id, "server closed the stream")
        try:
            async with AsyncExitStack() as stack:
                read_stream, self._write_stream = await self._enter_streams(stack)
                self._is_open = True
                if not self._ready.done():
                    self._ready.set_result(None)

                reader = asyncio.create_task(self._read_loop(read_stream))
                stopper = asyncio.create_task(self._stop.wait())
                try:
                    done, _ = await asyncio.wait(
                        {reader, stopper}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if reader in done:
                        reader.result()
                finally:
                    stopper.cancel()
                    reader.cancel()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = self._failure(e)
        finally:
            self._write_stream = None
        self._finish(reason)

    async def _read_loop(self, read_stream: Any) -> None:
        async for item in read_stream:
            if isinstance(item, Exception):
                # Not attributable to a request id; nothing in flight can be answered reliably.
                logger.warning(f"[{self.server_id}] Invalid message from server: {item}")
                self._pending.fail_all(
                    TransportError(
                        f"[{self.server_id}] Invalid message from server", original_error=item
                    )
                )
                continue
            message = item.message.model_dump(by_alias=True, mode="json", exclude_none=True)
            await route_message(
                message, self._pending, self.on_notification, self._send, self.server_id
            )

    def _failure(self, exc: Exception) -> Exception:
        if self._unauthorized:
            return AuthorizationRequired(self.server_id)
        logger.debug(f"[{self.server_id}] {self.transport_name} client failed: {exc!r}")
        return Disconnected(
            f"[{self.server_id}] {self.transport_name} connection failed: {exc}",
            original_error=exc,
        )

    def _finish(self, reason: Exception) -> None:
        was_open = self._is_open
        self._is_open = False

        if self._ready is not None and not self._ready.done():
            if not isinstance(reason, ConnectError):
                reason = ConnectError(
                    f"Failed to connect to MCP server '{self.server_id}'", original_error=reason
                )
            self._ready.set_exception(reason)
            return

        self._pending.fail_all(reason)
        if was_open and not self._closing:
            logger.warning(f"{reason}")
            if self.on_close is not None:
                try:
                    self.on_close(reason)
                except Exception as e:
                    logger.error(f"[{self.server_id}] Close handler failed: {e}", exc_info=True)

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        if not self._is_open:
            raise closed_error(self.server_id, "transport not connected")

        timeout = timeout or DEFAULT_REQUEST_TIMEOUT
        request_id, future = self._pending.register()
        try:
            await asyncio.wait_for(
                self._send(build_request(request_id, method, params)), timeout=timeout
            )
        except TimeoutError:
            self._pending.discard(request_id)
            raise TransportTimeout(
                f"[{self.server_id}] Could not send {method} (id={request_id}) "
                f"within {timeout:g}s"
            ) from None
        except BaseException:
            self._pending.discard(request_id)
            raise

        try:
            return await self._pending.wait(request_id, future, method, timeout)
        except (RemoteError, TransportTimeout):
            if self._unauthorized:
                raise AuthorizationRequired(self.server_id) from None
            raise

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        if not self._is_open:
            raise closed_error(self.server_id, "transport not connected")
        await asyncio.wait_for(
            self._send(build_notification(method, params)), timeout=DEFAULT_REQUEST_TIMEOUT
        )

    async def _send(self, message: dict[str, Any]) -> None:
        write_stream = self._write_stream
        if write_stream is None:
            raise closed_error(self.server_id, "transport not connected")
        logger.debug(
            f"[{self.server_id}] Sending: {message.get('method', 'response')} (id={message.get('id')})"
        )
        try:
            await write_stream.send(SessionMessage(JSONRPCMessage.model_validate(message)))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            raise Disconnected(
                f"[{self.server_id}] {self.transport_name} stream closed", original_error=e
            ) from e

    async def close(self) -> None:
        """Stop the SDK client. Idempotent."""
        runner, self._runner = self._runner, None
        if runner is None:
            return

        self._closing = True
        self._is_open = False
        self._pending.fail_all(closed_error(self.server_id, "connection closed"))

        if self._ready is not None and not self._ready.done():
            # Still connecting; the SDK context has no body to leave gracefully.
            runner.cancel()
            self._ready.cancel()
        elif self._stop is not None:
            self._stop.set()

        await asyncio.wait({runner}, timeout=STOP_TIMEOUT)
        if not runner.done():
            logger.warning(f"[{self.server_id}] {self.transport_name} client did not stop in time")
            runner.cancel()
            await asyncio.wait({runner})
        logger.info(f"[{self.server_id}] {self.transport_name} transport stopped")
