"""
Shared building blocks for MCP transports.

Each transport variant composes a ``PendingRequests`` table instead of
inheriting behavior: the table owns the monotonically increasing request
id counter and the futures of in-flight requests, and guarantees that a
request id is answered at most once.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, cast

from toolchat.domain.exceptions.mcp import Disconnected, RemoteError, TransportTimeout
from toolchat.domain.ports.mcp.transport_port import NotificationHandler

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

DEFAULT_REQUEST_TIMEOUT = 30.0


def build_request(request_id: int, method: str, params: dict[str, Any] | None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def build_notification(method: str, params: dict[str, Any] | None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def _error_code(code: Any) -> int:
    try:
        return int(code)
    except (TypeError, ValueError):
        return INTERNAL_ERROR


class PendingRequests:
    """
    Request id allocation and response correlation for one connection.

    The first response for an id resolves its future and removes the entry;
    any later response carrying the same id is dropped.
    """

    def __init__(self, server_id: str) -> None:
        self._server_id = server_id
        self._request_id = 0
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def register(self) -> tuple[int, asyncio.Future[dict[str, Any]]]:
        """Allocate the next request id and a future for its response."""
        self._request_id += 1
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[self._request_id] = future
        return self._request_id, future

    def discard(self, request_id: int) -> None:
        future = self._pending.pop(request_id, None)
        if future is not None and not future.done():
            future.cancel()

    def resolve(self, message: dict[str, Any]) -> bool:
        """
        Resolve the request a response message answers.

        Returns:
            True if the message matched an in-flight request.
        """
        request_id = message.get("id")
        future = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if future is None:
            logger.debug(f"[{self._server_id}] Dropping response for unknown id={request_id!r}")
            return False
        if future.done():
            return False

        error = message.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"code": INTERNAL_ERROR, "message": str(error)}
            future.set_exception(
                RemoteError(
                    code=_error_code(error.get("code")),
                    message=str(error.get("message", "Unknown error")),
                    data=error.get("data"),
                )
            )
        else:
            result = message.get("result")
            future.set_result(cast(dict[str, Any], result if isinstance(result, dict) else {}))
        return True

    def fail_all(self, exc: Exception) -> None:
        """Fail every in-flight request with the given exception."""
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)
        if pending:
            logger.debug(f"[{self._server_id}] Failed {len(pending)} pending request(s): {exc}")

    async def wait(
        self,
        request_id: int,
        future: asyncio.Future[dict[str, Any]],
        method: str,
        timeout: float | None,
    ) -> dict[str, Any]:
        """Wait for a registered request's response."""
        timeout = timeout or DEFAULT_REQUEST_TIMEOUT
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            self.discard(request_id)
            raise TransportTimeout(
                f"[{self._server_id}] No response to {method} (id={request_id}) "
                f"within {timeout:g}s"
            ) from None
        except asyncio.CancelledError:
            self.discard(request_id)
            raise


async def route_message(
    message: Any,
    pending: PendingRequests,
    on_notification: NotificationHandler | None,
    reply: Callable[[dict[str, Any]], Awaitable[None]] | None = None,
    server_id: str = "",
) -> None:
    """
    Route one decoded JSON-RPC message.

    Responses resolve pending requests. Notifications (method without id)
    go to the notification handler. Server-initiated requests are not
    supported by this client and are answered with "method not found".
    """
    if isinstance(message, list):
        for item in message:
            await route_message(item, pending, on_notification, reply, server_id)
        return
    if not isinstance(message, dict):
        logger.warning(f"[{server_id}] Ignoring non-object JSON-RPC message: {message!r:.200}")
        return

    has_id = "id" in message and message["id"] is not None
    if has_id and ("result" in message or "error" in message):
        pending.resolve(message)
    elif "method" in message and not has_id:
        if on_notification is not None:
            try:
                on_notification(message)
            except Exception as e:
                logger.error(f"[{server_id}] Notification handler failed: {e}", exc_info=True)
    elif "method" in message:
        logger.debug(f"[{server_id}] Rejecting server request: {message['method']}")
        if reply is not None:
            await reply(
                {
                    "jsonrpc": JSONRPC_VERSION,
                    "id": message["id"],
                    "error": {
                        "code": METHOD_NOT_FOUND,
                        "message": f"Method not found: {message['method']}",
                    },
                }
            )
    else:
        logger.warning(f"[{server_id}] Unrecognized JSON-RPC message: {message!r:.200}")


def decode_json(text: str, server_id: str = "") -> Any | None:
    """Decode a JSON payload, returning None (and logging) if malformed."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.warning(f"[{server_id}] Invalid JSON from server: {text[:200]}")
        return None


def closed_error(server_id: str, reason: str = "connection closed") -> Disconnected:
    return Disconnected(f"[{server_id}] {reason}")
