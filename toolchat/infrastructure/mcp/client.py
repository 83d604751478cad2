"""
MCP Client.

Binds one ServerConfig to one live transport session: performs the MCP
initialize handshake, discovers tools, calls tools and answers liveness
checks. Owned exclusively by the connection registry.
"""

import logging
import time
from collections.abc import Callable
from types import TracebackType
from typing import Any, cast

from toolchat.domain.exceptions.mcp import (
    ConnectError,
    ConnectTimeout,
    Disconnected,
    HandshakeError,
    TransportError,
    TransportTimeout,
)
from toolchat.domain.model.mcp.server import ServerConfig
from toolchat.domain.ports.mcp.transport_port import MCPTransportPort
from toolchat.infrastructure.mcp.transport.base import DEFAULT_REQUEST_TIMEOUT
from toolchat.infrastructure.mcp.transport.factory import create_transport

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "toolchat", "version": "0.1.0"}
TOOLS_CHANGED = "notifications/tools/list_changed"

# Bound on tools/list pagination.
MAX_TOOL_PAGES = 50


class MCPClient:
    """
    MCP protocol client over one transport.

    Usage:
        async with MCPClient(config) as client:
            tools = await client.list_tools()
            result = await client.call_tool("fetch", {"url": "https://example.com"})
    """

    def __init__(
        self,
        config: ServerConfig,
        transport: MCPTransportPort | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        connect_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """
        Initialize MCP client.

        Args:
            config: Server configuration.
            transport: Optional pre-built transport; created from config if omitted.
            request_timeout: Default timeout for requests, in seconds.
            connect_timeout: Timeout for opening and the initialize handshake.
        """
        self.config = config
        self.transport = transport
        self.request_timeout = request_timeout
        self.connect_timeout = connect_timeout
        self.server_info: dict[str, Any] = {}
        self.capabilities: dict[str, Any] = {}
        self.last_healthy_at: float | None = None
        self.on_tools_changed: Callable[[], None] | None = None
        self.on_connection_lost: Callable[[Exception], None] | None = None
        self._connected = False

    @property
    def server_id(self) -> str:
        return self.config.id

    @property
    def is_connected(self) -> bool:
        return self._connected and self.transport is not None and self.transport.is_open

    async def connect(self) -> None:
        """
        Open the transport and perform the initialize handshake.

        Raises:
            ConnectError: Any failure; subclasses distinguish timeout, spawn
                and handshake failures. The transport is closed on failure.
        """
        if self._connected:
            return

        if self.transport is None:
            self.transport = create_transport(self.config, connect_timeout=self.connect_timeout)
        self.transport.on_notification = self._handle_notification
        self.transport.on_close = self._handle_transport_closed

        try:
            await self.transport.open()
            await self._initialize()
        except BaseException:
            await self.transport.close()
            raise

        self._connected = True
        self.last_healthy_at = time.time()
        logger.info(
            f"MCP client connected to '{self.server_id}' via {self.config.transport_type.value}: "
            f"{self.server_info.get('name', 'unknown')} {self.server_info.get('version', '')}".rstrip()
        )

    async def _initialize(self) -> None:
        """Perform MCP protocol initialization handshake."""
        assert self.transport is not None
        init_params = {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"roots": {"listChanged": False}},
            "clientInfo": CLIENT_INFO,
        }
        try:
            result = await self.transport.request(
                "initialize", init_params, timeout=self.connect_timeout
            )
            await self.transport.notify("notifications/initialized")
        except ConnectError:
            raise
        except TransportTimeout as e:
            raise ConnectTimeout(
                f"MCP server '{self.server_id}' did not complete initialize within "
                f"{self.connect_timeout:g}s",
                original_error=e,
            ) from e
        except TransportError as e:
            raise HandshakeError(
                f"MCP initialize failed for '{self.server_id}'", original_error=e
            ) from e

        self.server_info = cast(dict[str, Any], result.get("serverInfo") or {})
        self.capabilities = cast(dict[str, Any], result.get("capabilities") or {})
        logger.debug(
            f"[{self.server_id}] Negotiated protocol {result.get('protocolVersion', PROTOCOL_VERSION)}"
        )

    def _handle_notification(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        logger.debug(f"[{self.server_id}] Notification: {method}")
        if method == TOOLS_CHANGED and self.on_tools_changed is not None:
            self.on_tools_changed()

    def _handle_transport_closed(self, reason: Exception) -> None:
        self._connected = False
        if self.on_connection_lost is not None:
            self.on_connection_lost(reason)

    def _require_transport(self) -> MCPTransportPort:
        if not self._connected or self.transport is None:
            raise Disconnected(f"MCP client for '{self.server_id}' not connected")
        return self.transport

    async def disconnect(self) -> None:
        """Close connection to MCP server. Idempotent."""
        transport = self.transport
        self._connected = False
        if transport is None:
            return
        transport.on_close = None
        await transport.close()
        logger.info(f"MCP client for '{self.server_id}' disconnected")

    async def list_tools(self, timeout: float | None = None) -> list[dict[str, Any]]:
        """
        List all available tools from the MCP server, following pagination.

        Returns:
            List of tool definitions with name, description, and inputSchema
        """
        transport = self._require_transport()
        tools: list[dict[str, Any]] = []
        cursor: str | None = None
        for _ in range(MAX_TOOL_PAGES):
            params = {"cursor": cursor} if cursor else None
            result = await transport.request(
                "tools/list", params, timeout=timeout or self.request_timeout
            )
            tools.extend(t for t in result.get("tools", []) if isinstance(t, dict))
            cursor = result.get("nextCursor")
            if not cursor:
                break
        else:
            logger.warning(f"[{self.server_id}] tools/list pagination exceeded {MAX_TOOL_PAGES} pages")
        return tools

    async def call_tool(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """
        Call a tool on the MCP server.

        Returns:
            Raw ``tools/call`` result with ``content`` and ``isError``.
        """
        transport = self._require_transport()
        return await transport.request(
            "tools/call",
            {"name": tool_name, "arguments": arguments},
            timeout=timeout or self.request_timeout,
        )

    async def ping(self, timeout: float | None = None) -> None:
        """
        Liveness check.

        Issues a ``tools/list`` request; it has its own request id and does
        not touch any conversation state.

        Raises:
            TransportError: If the server did not answer.
        """
        transport = self._require_transport()
        await transport.request("tools/list", None, timeout=timeout or self.request_timeout)
        self.last_healthy_at = time.time()

    async def __aenter__(self) -> "MCPClient":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Async context manager exit."""
        await self.disconnect()
