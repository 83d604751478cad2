"""
MCP Tool Domain Models.

Defines the tool descriptor exposed in the aggregated catalog, the tool
call request issued by the model, and the result handed back to the
conversation.
"""

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ToolDescriptor:
    """
    A tool discovered on a connected server.

    ``name`` is unique within the aggregated catalog. ``original_name`` is
    the name the owning server knows the tool by; the two differ only when
    the catalog had to disambiguate a collision.
    """

    name: str
    server_id: str
    original_name: str
    description: str | None = None
    input_schema: dict[str, Any] = field(default_factory=dict)

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to an OpenAI function-tool definition."""
        parameters = self.input_schema or {"type": "object", "properties": {}}
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or "",
                "parameters": parameters,
            },
        }

    def to_catalog_entry(self, status: str) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
            "serverId": self.server_id,
            "status": status,
        }

    @classmethod
    def from_mcp(cls, data: dict[str, Any], server_id: str, name: str | None = None) -> "ToolDescriptor":
        """Create from a ``tools/list`` entry."""
        original = data.get("name", "")
        return cls(
            name=name or original,
            server_id=server_id,
            original_name=original,
            description=data.get("description"),
            input_schema=data.get("inputSchema", data.get("input_schema", {})) or {},
        )


@dataclass(frozen=True)
class ToolCallRequest:
    """A model-issued request to invoke a named tool."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    @property
    def arguments_json(self) -> str:
        return json.dumps(self.arguments, ensure_ascii=False)

    def to_openai_tool_call(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }


@dataclass
class ToolResult:
    """
    Result of one tool call, always representable as a tool-role message.

    Failures (denied, unknown tool, remote error, timeout) are carried with
    ``is_error=True`` rather than raised.
    """

    call_id: str
    name: str
    output: str
    is_error: bool = False
    was_truncated: bool = False
    original_length: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> dict[str, Any]:
        """Convert to a tool-role conversation message."""
        return {
            "role": "tool",
            "tool_call_id": self.call_id,
            "name": self.name,
            "content": self.output,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "name": self.name,
            "output": self.output,
            "is_error": self.is_error,
            "was_truncated": self.was_truncated,
            "original_length": self.original_length,
            "metadata": self.metadata,
        }
