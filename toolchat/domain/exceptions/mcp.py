"""
MCP domain exceptions.

Exception hierarchy for connecting to MCP servers, exchanging JSON-RPC
messages with them, executing their tools, authorizing against them and
consuming the chat backend stream.

Exception Hierarchy:
    MCPError (base)
    ├── MCPServerError
    │   ├── MCPServerNotFoundError      - Server not found by ID
    │   └── MCPServerBusyError          - Config edit while server is live
    ├── ConnectError                    - Spawn/handshake/auth failure
    │   ├── ConnectTimeout
    │   ├── ProcessSpawnError
    │   ├── HandshakeError
    │   └── AuthorizationRequired       - Remote server answered 401
    ├── TransportError                  - Mid-session I/O failure
    │   ├── RemoteError                 - JSON-RPC error response
    │   ├── TransportTimeout            - No response in time
    │   └── Disconnected                - Connection closed with request pending
    ├── ToolExecutionError
    │   ├── UnknownTool
    │   ├── ToolDenied
    │   └── ToolTimeout
    ├── OAuthError                      - Any authorization step failure
    ├── StreamProtocolError             - Malformed chat backend event
    └── TurnInProgressError             - Turn started while another is running
"""

from typing import Any


class MCPError(Exception):
    """Base exception for all MCP-related errors."""

    def __init__(
        self,
        message: str,
        original_error: Exception | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.details = details or {}

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message} (caused by: {self.original_error})"
        return self.message


class MCPServerError(MCPError):
    """Base exception for MCP server management errors."""


class MCPServerNotFoundError(MCPServerError):
    """Raised when an MCP server cannot be found."""

    def __init__(self, server_id: str, message: str | None = None) -> None:
        self.server_id = server_id
        msg = message or f"MCP server '{server_id}' not found"
        super().__init__(msg, details={"server_id": server_id})


class MCPServerBusyError(MCPServerError):
    """Raised when editing the configuration of a server that is not disconnected."""

    def __init__(self, server_id: str, status: str) -> None:
        self.server_id = server_id
        super().__init__(
            f"MCP server '{server_id}' must be disconnected to edit its config (status={status})",
            details={"server_id": server_id, "status": status},
        )


# === Connect ===


class ConnectError(MCPError):
    """Raised when a connection to an MCP server cannot be established."""


class ConnectTimeout(ConnectError):
    """Raised when connecting or the initialize handshake takes too long."""


class ProcessSpawnError(ConnectError):
    """Raised when a local MCP server process cannot be started."""


class HandshakeError(ConnectError):
    """Raised when the MCP initialize handshake fails."""


class AuthorizationRequired(ConnectError):
    """Raised when a remote MCP server rejects the connection as unauthorized."""

    def __init__(self, server_id: str, message: str | None = None) -> None:
        self.server_id = server_id
        super().__init__(
            message or f"MCP server '{server_id}' requires authorization",
            details={"server_id": server_id},
        )


# === Transport ===


class TransportError(MCPError):
    """Raised on mid-session I/O failure."""


class RemoteError(TransportError):
    """A JSON-RPC error response returned by the server."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.data = data
        super().__init__(message, details={"code": code, "data": data})

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class TransportTimeout(TransportError):
    """Raised when a request receives no response within its timeout."""


class Disconnected(TransportError):
    """Raised for requests pending on (or issued to) a closed connection."""


# Short alias used in signatures mirroring the transport contract.
Timeout = TransportTimeout


# === Tools ===


class ToolExecutionError(MCPError):
    """Raised when a tool call cannot produce a result."""

    def __init__(
        self,
        tool_name: str,
        message: str,
        original_error: Exception | None = None,
    ) -> None:
        self.tool_name = tool_name
        super().__init__(message, original_error=original_error, details={"tool_name": tool_name})


class UnknownTool(ToolExecutionError):
    """Raised when a tool name is absent from the aggregated catalog."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(tool_name, f"Unknown tool '{tool_name}'")


class ToolDenied(ToolExecutionError):
    """Raised when the approval gate denies a tool call."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(tool_name, f"Permission to run tool '{tool_name}' was denied")


class ToolTimeout(ToolExecutionError):
    """Raised when a tool call exceeds its per-call timeout."""

    def __init__(self, tool_name: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(tool_name, f"Tool '{tool_name}' timed out after {timeout:g}s")


# === OAuth ===


class OAuthError(MCPError):
    """Raised when any step of the OAuth authorization flow fails."""

    def __init__(
        self,
        message: str,
        state: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        self.state = state
        super().__init__(message, original_error=original_error, details={"state": state})


# === Chat stream ===


class StreamProtocolError(MCPError):
    """Raised when the chat backend emits a malformed or unexpected event."""


class TurnInProgressError(MCPError):
    """Raised when a chat turn is started while another turn is still running."""
