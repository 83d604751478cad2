"""
MCP Transport Layer.

Transport variants for MCP protocol communication:
- stdio: newline-delimited JSON-RPC over a spawned process's pipes
- sse: legacy GET event stream plus POSTed messages (mcp SDK)
- streamableHttp: POST whose reply is JSON or an event stream (mcp SDK)

All variants satisfy MCPTransportPort from the domain layer.
"""

from toolchat.infrastructure.mcp.transport.base import PendingRequests
from toolchat.infrastructure.mcp.transport.factory import create_transport
from toolchat.infrastructure.mcp.transport.session_streams import SessionStreamTransport
from toolchat.infrastructure.mcp.transport.sse import SSETransport
from toolchat.infrastructure.mcp.transport.stdio import StdioTransport
from toolchat.infrastructure.mcp.transport.streamable_http import StreamableHTTPTransport

__all__ = [
    "PendingRequests",
    "SessionStreamTransport",
    "create_transport",
    "SSETransport",
    "StdioTransport",
    "StreamableHTTPTransport",
]
