"""
Transport factory for MCP.

Selects the transport variant for a server configuration.
"""

import logging

from toolchat.domain.model.mcp.server import ServerConfig, TransportType
from toolchat.domain.ports.mcp.transport_port import MCPTransportPort
from toolchat.infrastructure.mcp.transport.base import DEFAULT_REQUEST_TIMEOUT
from toolchat.infrastructure.mcp.transport.sse import SSETransport
from toolchat.infrastructure.mcp.transport.stdio import StdioTransport
from toolchat.infrastructure.mcp.transport.streamable_http import StreamableHTTPTransport

logger = logging.getLogger(__name__)


def create_transport(
    config: ServerConfig,
    connect_timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> MCPTransportPort:
    """
    Create an unopened transport for a server.

    Args:
        config: Server configuration (headers already include any bearer token).
        connect_timeout: Bound on opening the HTTP channels.

    Returns:
        Transport instance matching ``config.transport_type``.
    """
    logger.debug(f"Creating {config.transport_type.value} transport for {config.id}")
    match config.transport_type:
        case TransportType.STDIO:
            return StdioTransport(config)
        case TransportType.SSE:
            return SSETransport(config, connect_timeout=connect_timeout)
        case TransportType.STREAMABLE_HTTP:
            return StreamableHTTPTransport(config, connect_timeout=connect_timeout)
    raise ValueError(f"Unsupported transport type: {config.transport_type}")
