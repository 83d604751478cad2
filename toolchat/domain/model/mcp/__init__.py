"""MCP domain models."""

from toolchat.domain.model.mcp.server import OAuthRequirement, ServerConfig, TransportType
from toolchat.domain.model.mcp.status import ServerStatus, ServerStatusType
from toolchat.domain.model.mcp.tool import ToolCallRequest, ToolDescriptor, ToolResult

__all__ = [
    "OAuthRequirement",
    "ServerConfig",
    "TransportType",
    "ServerStatus",
    "ServerStatusType",
    "ToolCallRequest",
    "ToolDescriptor",
    "ToolResult",
]
