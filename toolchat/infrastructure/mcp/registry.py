"""
MCP Connection Registry.

Owns every configured MCP server: its configuration, its live client, its
connection status and the tools it contributes to the aggregated catalog.

Features:
- Concurrent connect of all enabled servers; one failure never blocks the rest
- Per-server status with change listeners
- Periodic health checks using a tools/list liveness check
- Reconnect on the next health cycle after a lost connection
- OAuth authorization followed by exactly one reconnect
- Collision-free tool naming across servers
"""

import asyncio
import contextlib
import logging
import re
from collections.abc import Callable, Coroutine, Iterable
from types import TracebackType
from typing import Any

from toolchat.domain.exceptions.mcp import (
    AuthorizationRequired,
    ConnectError,
    Disconnected,
    MCPServerBusyError,
    MCPServerError,
    MCPServerNotFoundError,
    OAuthError,
    TransportError,
)
from toolchat.domain.model.mcp.server import ServerConfig
from toolchat.domain.model.mcp.status import ServerStatus, ServerStatusType
from toolchat.domain.model.mcp.tool import ToolDescriptor
from toolchat.infrastructure.mcp.client import MCPClient
from toolchat.infrastructure.mcp.oauth import OAuthCoordinator
from toolchat.infrastructure.mcp.transport.base import DEFAULT_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)

StatusListener = Callable[[str, ServerStatus], None]
ClientFactory = Callable[[ServerConfig], MCPClient]

# Separator between server id and tool name for disambiguated tools.
TOOL_NAME_SEPARATOR = "__"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class MCPConnectionRegistry:
    """
    Registry of MCP server connections and their tools.

    Usage:
        async with MCPConnectionRegistry(configs, oauth=coordinator) as registry:
            await registry.connect_all()
            tools = registry.openai_tools()
    """

    def __init__(
        self,
        configs: Iterable[ServerConfig] = (),
        *,
        oauth: OAuthCoordinator | None = None,
        health_check_interval_seconds: float = 60.0,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        connect_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_reconnect_attempts: int = 3,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """
        Initialize MCP connection registry.

        Args:
            configs: Initial server configurations
            oauth: Coordinator for remote servers that need authorization
            health_check_interval_seconds: Interval between health checks
            request_timeout: Timeout for discovery and liveness requests
            connect_timeout: Timeout for opening a connection
            max_reconnect_attempts: Health cycles spent reconnecting a lost server
            client_factory: Builds the client for a config (tests inject fakes)
        """
        self.oauth = oauth
        self.health_check_interval_seconds = health_check_interval_seconds
        self.request_timeout = request_timeout
        self.connect_timeout = connect_timeout
        self.max_reconnect_attempts = max_reconnect_attempts
        self._client_factory = client_factory or self._default_client

        self._configs: dict[str, ServerConfig] = {}
        self._statuses: dict[str, ServerStatus] = {}
        self._clients: dict[str, MCPClient] = {}
        self._effective_configs: dict[str, ServerConfig] = {}
        self._connect_tasks: dict[str, asyncio.Task[None]] = {}

        # Exposed tool name -> descriptor, and server_id -> exposed names
        self._tools: dict[str, ToolDescriptor] = {}
        self._server_tools: dict[str, list[str]] = {}

        # Lost servers awaiting reconnect: server_id -> attempts so far
        self._reconnect_attempts: dict[str, int] = {}

        self._listeners: list[StatusListener] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._health_check_task: asyncio.Task[None] | None = None
        self._running = False

        for config in configs:
            self.add_server(config)

    def _default_client(self, config: ServerConfig) -> MCPClient:
        return MCPClient(
            config,
            request_timeout=self.request_timeout,
            connect_timeout=self.connect_timeout,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start background health checks."""
        if self._running:
            return

        self._running = True
        self._health_check_task = asyncio.create_task(self._run_health_checks())
        logger.info("MCP connection registry started")

    async def stop(self) -> None:
        """Stop health checks and disconnect all servers."""
        self._running = False

        if self._health_check_task:
            self._health_check_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_check_task
            self._health_check_task = None

        for task in list(self._connect_tasks.values()) + list(self._background):
            task.cancel()
        for task in list(self._connect_tasks.values()) + list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for server_id in list(self._clients):
            await self.disconnect(server_id)
        logger.info("MCP connection registry stopped")

    async def __aenter__(self) -> "MCPConnectionRegistry":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    # =========================================================================
    # Configuration
    # =========================================================================

    def add_server(self, config: ServerConfig) -> None:
        """Add a server configuration. Replacing an existing one requires it to be idle."""
        if config.id in self._configs:
            self.update_server(config)
            return
        self._configs[config.id] = config
        self._statuses[config.id] = ServerStatus.disconnected()
        logger.info(f"Added MCP server: {config.id} ({config.transport_type.value})")

    def update_server(self, config: ServerConfig) -> None:
        """
        Replace a server configuration.

        Raises:
            MCPServerNotFoundError: If the server is not configured.
            MCPServerBusyError: If the server is connected or connecting.
        """
        self._require_idle(config.id)
        self._configs[config.id] = config
        logger.info(f"Updated MCP server config: {config.id}")

    async def remove_server(self, server_id: str) -> None:
        """Disconnect a server and forget its configuration and OAuth credentials."""
        config = self._require_config(server_id)
        await self.disconnect(server_id)
        if self.oauth is not None and config.transport_type.is_remote:
            await self.oauth.tokens.revoke(server_id)
        self._configs.pop(server_id, None)
        self._statuses.pop(server_id, None)
        self._reconnect_attempts.pop(server_id, None)
        logger.info(f"Removed MCP server: {server_id}")

    def get_config(self, server_id: str) -> ServerConfig:
        return self._require_config(server_id)

    def server_ids(self) -> list[str]:
        return list(self._configs)

    def _require_config(self, server_id: str) -> ServerConfig:
        config = self._configs.get(server_id)
        if config is None:
            raise MCPServerNotFoundError(server_id)
        return config

    def _require_idle(self, server_id: str) -> None:
        self._require_config(server_id)
        status = self._statuses[server_id]
        if server_id in self._clients or server_id in self._connect_tasks:
            raise MCPServerBusyError(server_id, str(status))

    # =========================================================================
    # Status
    # =========================================================================

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """
        Subscribe to status changes.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def status(self, server_id: str) -> ServerStatus:
        self._require_config(server_id)
        return self._statuses[server_id]

    def statuses(self) -> dict[str, ServerStatus]:
        return dict(self._statuses)

    def _set_status(self, server_id: str, status: ServerStatus) -> None:
        if server_id not in self._configs or self._statuses.get(server_id) == status:
            return
        self._statuses[server_id] = status
        logger.info(f"MCP server {server_id} status: {status}")
        for listener in list(self._listeners):
            try:
                listener(server_id, status)
            except Exception as e:
                logger.error(f"Status listener failed for {server_id}: {e}", exc_info=True)

    # =========================================================================
    # Connect / Disconnect
    # =========================================================================

    async def connect_all(self) -> dict[str, ServerStatus]:
        """
        Connect every enabled server concurrently.

        Returns:
            Status of each enabled server once its attempt has settled.
        """
        server_ids = [sid for sid, config in self._configs.items() if config.enabled]
        results = await asyncio.gather(
            *(self.connect(sid) for sid in server_ids), return_exceptions=True
        )
        for server_id, result in zip(server_ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(f"Unexpected error connecting MCP server {server_id}: {result}")
        return {sid: self._statuses[sid] for sid in server_ids if sid in self._statuses}

    async def connect(self, server_id: str) -> ServerStatus:
        """
        Connect one server and discover its tools.

        Connection failures are reported through the returned status, never
        raised. A connect already in progress is joined rather than repeated.
        """
        config = self._require_config(server_id)
        if server_id in self._clients:
            return self._statuses[server_id]

        task = self._connect_tasks.get(server_id)
        if task is None:
            task = asyncio.create_task(self._connect(config))
            self._connect_tasks[server_id] = task
            task.add_done_callback(lambda t: self._forget_connect_task(server_id, t))
        await asyncio.shield(task)
        return self._statuses.get(server_id, ServerStatus.disconnected())

    def _forget_connect_task(self, server_id: str, task: asyncio.Task[None]) -> None:
        if self._connect_tasks.get(server_id) is task:
            del self._connect_tasks[server_id]

    async def _connect(self, config: ServerConfig) -> None:
        server_id = config.id
        self._set_status(server_id, ServerStatus.connecting())

        headers: dict[str, str] = {}
        if self.oauth is not None and config.transport_type.is_remote:
            headers = await self.oauth.authorization_headers(config)
        effective = config.with_headers(headers) if headers else config

        client = self._client_factory(effective)
        client.on_tools_changed = lambda: self._spawn(self.refresh_tools(server_id))
        client.on_connection_lost = lambda exc: self._on_connection_lost(server_id, client, exc)

        try:
            await client.connect()
        except AuthorizationRequired as e:
            logger.warning(f"MCP server {server_id} requires authorization")
            self._set_status(server_id, ServerStatus.authenticating(str(e)))
            return
        except ConnectError as e:
            logger.error(f"Failed to connect MCP server {server_id}: {e}")
            self._set_status(server_id, ServerStatus.failed(str(e)))
            return
        except Exception as e:
            self._set_status(server_id, ServerStatus.failed(str(e)))
            raise

        try:
            tools = await client.list_tools()
        except TransportError as e:
            logger.error(f"Tool discovery failed for MCP server {server_id}: {e}")
            await self._close_client(server_id, client)
            self._set_status(server_id, ServerStatus.failed(f"tool discovery failed: {e}"))
            return
        except BaseException:
            await self._close_client(server_id, client)
            raise

        if not tools:
            logger.warning(f"MCP server {server_id} exposes no tools, disconnecting")
            await self._close_client(server_id, client)
            self._set_status(server_id, ServerStatus.failed("server exposes no tools"))
            return

        self._clients[server_id] = client
        self._effective_configs[server_id] = effective
        self._reconnect_attempts.pop(server_id, None)
        self._register_tools(server_id, tools)
        self._set_status(server_id, ServerStatus.connected())

    async def disconnect(self, server_id: str) -> None:
        """Disconnect a server and drop its tools. Idempotent."""
        self._require_config(server_id)
        self._reconnect_attempts.pop(server_id, None)

        task = self._connect_tasks.get(server_id)
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self._set_status(server_id, ServerStatus.disconnected())

        await self._teardown(server_id)

    async def _teardown(self, server_id: str) -> None:
        client = self._clients.pop(server_id, None)
        if client is None:
            return
        self._effective_configs.pop(server_id, None)
        self._remove_tools(server_id)
        await self._close_client(server_id, client)
        self._set_status(server_id, ServerStatus.disconnected())

    @staticmethod
    async def _close_client(server_id: str, client: MCPClient) -> None:
        try:
            await client.disconnect()
        except Exception as e:
            logger.error(f"Error disconnecting MCP server {server_id}: {e}")

    # =========================================================================
    # OAuth
    # =========================================================================

    async def authenticate(self, server_id: str) -> ServerStatus:
        """
        Run the OAuth flow for a server, then reconnect it exactly once.

        Raises:
            MCPServerError: If no OAuth coordinator is configured.
        """
        config = self._require_config(server_id)
        if self.oauth is None:
            raise MCPServerError(f"No OAuth coordinator configured for '{server_id}'")

        await self.disconnect(server_id)
        self._set_status(server_id, ServerStatus.authenticating())
        try:
            await self.oauth.authorize(config)
        except OAuthError as e:
            logger.error(f"OAuth failed for MCP server {server_id}: {e}")
            self._set_status(server_id, ServerStatus.failed(f"authorization failed: {e}"))
            return self._statuses[server_id]

        return await self.connect(server_id)

    # =========================================================================
    # Health
    # =========================================================================

    async def health_check(self, server_id: str) -> bool:
        """
        Check a connected server with tools/list.

        A failed check disconnects the server, removes its tools and queues
        it for reconnect on the next health cycle.
        """
        client = self._clients.get(server_id)
        if not client:
            return False

        try:
            await client.ping(timeout=self.request_timeout)
            return True
        except TransportError as e:
            logger.error(f"Health check failed for MCP server {server_id}: {e}")
            await self._mark_unhealthy(server_id, client)
            return False

    async def run_health_cycle(self) -> None:
        """Check connected servers and retry servers lost since the last cycle."""
        connected = list(self._clients)
        pending = [
            sid
            for sid in self._reconnect_attempts
            if sid not in self._clients and sid not in self._connect_tasks
        ]
        results = await asyncio.gather(
            *(self.health_check(sid) for sid in connected),
            *(self._attempt_reconnect(sid) for sid in pending),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Error in health check cycle: {result}")

    async def _run_health_checks(self) -> None:
        """Background task for periodic health checks."""
        while self._running:
            try:
                await asyncio.sleep(self.health_check_interval_seconds)
                await self.run_health_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in health check loop: {e}")

    async def _attempt_reconnect(self, server_id: str) -> None:
        attempts = self._reconnect_attempts.get(server_id, 0)
        if attempts >= self.max_reconnect_attempts:
            self._reconnect_attempts.pop(server_id, None)
            logger.error(
                f"Failed to reconnect to MCP server {server_id} after {attempts} attempts"
            )
            self._set_status(
                server_id, ServerStatus.failed(f"gave up reconnecting after {attempts} attempts")
            )
            return

        self._reconnect_attempts[server_id] = attempts + 1
        logger.info(f"Reconnecting to MCP server {server_id} (attempt {attempts + 1})")
        await self.connect(server_id)

    async def _mark_unhealthy(self, server_id: str, client: MCPClient) -> None:
        if self._clients.get(server_id) is not client:
            return
        self._reconnect_attempts.setdefault(server_id, 0)
        await self._teardown(server_id)

    def _on_connection_lost(self, server_id: str, client: MCPClient, reason: Exception) -> None:
        logger.warning(f"Lost connection to MCP server {server_id}: {reason}")
        self._spawn(self._mark_unhealthy(server_id, client))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # =========================================================================
    # Tools
    # =========================================================================

    async def refresh_tools(self, server_id: str) -> list[ToolDescriptor]:
        """Re-discover the tools of a connected server."""
        client = self._clients.get(server_id)
        if client is None:
            return []
        try:
            tools = await client.list_tools()
        except TransportError as e:
            logger.error(f"Failed to refresh tools from MCP server {server_id}: {e}")
            await self._mark_unhealthy(server_id, client)
            return []

        self._remove_tools(server_id)
        descriptors = self._register_tools(server_id, tools)
        logger.info(f"Refreshed {len(descriptors)} tools from MCP server {server_id}")
        return descriptors

    def _register_tools(
        self, server_id: str, tools: list[dict[str, Any]]
    ) -> list[ToolDescriptor]:
        descriptors = []
        for raw in tools:
            original = raw.get("name")
            if not original:
                logger.warning(f"Skipping unnamed tool from MCP server {server_id}")
                continue
            descriptor = ToolDescriptor.from_mcp(raw, server_id, self._unique_name(server_id, original))
            self._tools[descriptor.name] = descriptor
            descriptors.append(descriptor)
        self._server_tools[server_id] = [d.name for d in descriptors]
        logger.info(f"Registered {len(descriptors)} tools from MCP server {server_id}")
        return descriptors

    def _unique_name(self, server_id: str, original: str) -> str:
        if original not in self._tools:
            return original
        prefix = _UNSAFE_NAME_CHARS.sub("_", server_id)
        candidate = f"{prefix}{TOOL_NAME_SEPARATOR}{original}"
        suffix = 2
        while candidate in self._tools:
            candidate = f"{prefix}{TOOL_NAME_SEPARATOR}{original}_{suffix}"
            suffix += 1
        return candidate

    def _remove_tools(self, server_id: str) -> None:
        names = self._server_tools.pop(server_id, [])
        for name in names:
            self._tools.pop(name, None)
        if names:
            logger.info(f"Removed {len(names)} tools of MCP server {server_id}")

    def get_tool(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def tools(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    def tool_catalog(self) -> list[dict[str, Any]]:
        """Catalog entries of all connected servers' tools, with server status."""
        return [
            descriptor.to_catalog_entry(str(self._statuses[descriptor.server_id]))
            for descriptor in self._tools.values()
        ]

    def openai_tools(self, local_only: bool = False) -> list[dict[str, Any]]:
        """
        Function-tool definitions for the model.

        Args:
            local_only: Only include tools of stdio servers, for backends that
                reach remote servers themselves.
        """
        return [
            descriptor.to_openai_tool()
            for descriptor in self._tools.values()
            if not local_only or not self._configs[descriptor.server_id].transport_type.is_remote
        ]

    def remote_servers(self) -> list[ServerConfig]:
        """Connected remote servers, with the headers their connection used."""
        return [
            self._effective_configs[sid]
            for sid, config in self._configs.items()
            if config.transport_type.is_remote
            and sid in self._clients
            and self._statuses[sid].status is ServerStatusType.CONNECTED
        ]

    async def call_tool(
        self,
        descriptor: ToolDescriptor,
        arguments: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """
        Call a catalog tool on its owning server.

        Raises:
            Disconnected: If the owning server is not connected.
            TransportError: On remote error or timeout.
        """
        client = self._clients.get(descriptor.server_id)
        if client is None:
            raise Disconnected(f"MCP server '{descriptor.server_id}' is not connected")
        logger.debug(f"Calling tool {descriptor.original_name} on MCP server {descriptor.server_id}")
        return await client.call_tool(descriptor.original_name, arguments, timeout=timeout)
