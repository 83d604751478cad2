"""
Domain exceptions for toolchat.

Re-exports the MCP exception hierarchy so callers can import from one place.
"""

from toolchat.domain.exceptions.mcp import (
    AuthorizationRequired,
    ConnectError,
    ConnectTimeout,
    Disconnected,
    HandshakeError,
    MCPError,
    MCPServerBusyError,
    MCPServerError,
    MCPServerNotFoundError,
    OAuthError,
    ProcessSpawnError,
    RemoteError,
    StreamProtocolError,
    Timeout,
    ToolDenied,
    ToolExecutionError,
    ToolTimeout,
    TransportError,
    TransportTimeout,
    TurnInProgressError,
    UnknownTool,
)

__all__ = [
    "MCPError",
    "MCPServerError",
    "MCPServerNotFoundError",
    "MCPServerBusyError",
    "ConnectError",
    "ConnectTimeout",
    "ProcessSpawnError",
    "HandshakeError",
    "AuthorizationRequired",
    "TransportError",
    "RemoteError",
    "TransportTimeout",
    "Timeout",
    "Disconnected",
    "ToolExecutionError",
    "UnknownTool",
    "ToolDenied",
    "ToolTimeout",
    "OAuthError",
    "StreamProtocolError",
    "TurnInProgressError",
]
