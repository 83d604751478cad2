"""
MCPTransportPort - Abstract interface for MCP transport operations.

One contract, three variants (stdio, sse, streamableHttp). Every variant
carries the same JSON-RPC 2.0 envelope and guarantees at most one
response per request id.
"""

from abc import abstractmethod
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

# Called with each unsolicited server message (method without id).
NotificationHandler = Callable[[dict[str, Any]], None]

# Called once when the connection is lost without close() being called.
CloseHandler = Callable[[Exception], None]


@runtime_checkable
class MCPTransportPort(Protocol):
    """
    Abstract interface for MCP transport layer.

    This port defines the contract for exchanging MCP protocol messages
    over different transport mechanisms.
    """

    server_id: str
    on_notification: NotificationHandler | None
    on_close: CloseHandler | None

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Check if transport is currently open."""
        ...

    @abstractmethod
    async def open(self) -> None:
        """
        Open the transport.

        Raises:
            ConnectTimeout: If the transport could not be opened in time.
            ProcessSpawnError: If a local server process could not be started.
            ConnectError: For any other failure to establish the channel.
        """
        ...

    @abstractmethod
    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """
        Send a JSON-RPC request and wait for its response.

        Returns:
            The ``result`` member of the response.

        Raises:
            RemoteError: If the server returned a JSON-RPC error.
            TransportTimeout: If no response arrived within the timeout.
            Disconnected: If the transport is (or becomes) closed.
        """
        ...

    @abstractmethod
    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a JSON-RPC notification (no response expected)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """
        Close the transport.

        Idempotent. Fails every pending request with Disconnected.
        """
        ...
