"""MCP (Model Context Protocol) integration package."""

from toolchat.infrastructure.mcp.client import MCPClient
from toolchat.infrastructure.mcp.config import parse_server_config, parse_server_configs
from toolchat.infrastructure.mcp.oauth import (
    OAuthClientInfo,
    OAuthCoordinator,
    OAuthState,
    OAuthTokens,
    OAuthTokenStore,
    base64_url_encode,
)
from toolchat.infrastructure.mcp.oauth_callback import OAuthCallbackListener
from toolchat.infrastructure.mcp.registry import MCPConnectionRegistry

__all__ = [
    "MCPClient",
    "MCPConnectionRegistry",
    "OAuthCallbackListener",
    "OAuthClientInfo",
    "OAuthCoordinator",
    "OAuthState",
    "OAuthTokenStore",
    "OAuthTokens",
    "base64_url_encode",
    "parse_server_config",
    "parse_server_configs",
]
