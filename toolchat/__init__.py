"""toolchat - MCP client manager and tool-calling chat coordinator."""

__version__ = "0.1.0"
