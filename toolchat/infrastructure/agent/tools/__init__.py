"""Tool execution against MCP servers."""

from .gateway import DENIAL_MARKER, ToolExecutionGateway, format_tool_content
from .truncation import MAX_OUTPUT_CHARS, TruncationResult, truncate_output

__all__ = [
    "DENIAL_MARKER",
    "MAX_OUTPUT_CHARS",
    "ToolExecutionGateway",
    "TruncationResult",
    "format_tool_content",
    "truncate_output",
]
