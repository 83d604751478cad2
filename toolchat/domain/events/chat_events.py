"""Typed stream events for chat turns."""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from toolchat.domain.model.mcp.tool import ToolCallRequest, ToolResult


class ChatEventType(str, Enum):
    """Event types emitted by chat backends and the turn loop."""

    # Backend stream events
    CONTENT_DELTA = "content-delta"
    REASONING_DELTA = "reasoning-delta"
    TOOL_CALL_DELTA = "tool-call-delta"
    TOOL_CALL_COMPLETE = "tool-call-complete"
    PRE_CALCULATED_TOOL_RESPONSE = "pre-calculated-tool-response"
    APPROVAL_REQUEST = "approval-request"
    TURN_COMPLETE = "turn-complete"
    ERROR = "error"

    # Emitted by the turn loop after local execution
    TOOL_RESULT = "tool-result"


class TurnCompleteReason(str, Enum):
    """Why a turn (or one backend stream) ended."""

    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    MAX_ITERATIONS = "max_iterations"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass
class ChatEvent:
    """
    One typed record of a chat stream.

    Used for real-time streaming of:
    - Content and reasoning deltas
    - Tool calls as they are assembled and completed
    - Server-executed tool calls and approval requests
    - Local tool results
    - Turn completion with usage, and errors
    """

    type: ChatEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_sse_format(self) -> str:
        """
        Convert to SSE wire format.

        Returns:
            String in SSE format: "event: type\\ndata: json\\n\\n"
        """
        data_json = json.dumps({**self.data, "timestamp": self.timestamp}, ensure_ascii=False)
        return f"event: {self.type.value}\ndata: {data_json}\n\n"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"type": self.type.value, "data": self.data, "timestamp": self.timestamp}

    @classmethod
    def content_delta(cls, delta: str) -> "ChatEvent":
        return cls(ChatEventType.CONTENT_DELTA, {"delta": delta})

    @classmethod
    def reasoning_delta(cls, delta: str) -> "ChatEvent":
        return cls(ChatEventType.REASONING_DELTA, {"delta": delta})

    @classmethod
    def tool_call_delta(
        cls,
        index: int,
        call_id: str | None,
        name: str | None,
        arguments_delta: str,
    ) -> "ChatEvent":
        """Create a tool call delta event (partial arguments)."""
        return cls(
            ChatEventType.TOOL_CALL_DELTA,
            {
                "index": index,
                "call_id": call_id,
                "name": name,
                "arguments_delta": arguments_delta,
            },
        )

    @classmethod
    def tool_call_complete(cls, call: ToolCallRequest) -> "ChatEvent":
        """Create a tool call complete event with parsed arguments."""
        return cls(
            ChatEventType.TOOL_CALL_COMPLETE,
            {"call_id": call.id, "name": call.name, "arguments": call.arguments},
        )

    @classmethod
    def pre_calculated_tool_response(
        cls,
        call_id: str,
        name: str,
        arguments: dict[str, Any],
        output: str,
        server_label: str | None = None,
        is_error: bool = False,
    ) -> "ChatEvent":
        """Create an event for a tool call the backend already executed."""
        return cls(
            ChatEventType.PRE_CALCULATED_TOOL_RESPONSE,
            {
                "call_id": call_id,
                "name": name,
                "arguments": arguments,
                "output": output,
                "server_label": server_label,
                "is_error": is_error,
            },
        )

    @classmethod
    def approval_request(
        cls,
        approval_id: str,
        name: str,
        arguments: dict[str, Any],
        server_label: str | None = None,
    ) -> "ChatEvent":
        """Create an event asking to approve a server-side tool call."""
        return cls(
            ChatEventType.APPROVAL_REQUEST,
            {
                "approval_id": approval_id,
                "name": name,
                "arguments": arguments,
                "server_label": server_label,
            },
        )

    @classmethod
    def tool_result(cls, result: ToolResult) -> "ChatEvent":
        return cls(ChatEventType.TOOL_RESULT, result.to_dict())

    @classmethod
    def turn_complete(
        cls,
        reason: TurnCompleteReason | str = TurnCompleteReason.STOP,
        usage: dict[str, Any] | None = None,
    ) -> "ChatEvent":
        """Create a turn complete event."""
        value = reason.value if isinstance(reason, TurnCompleteReason) else reason
        data: dict[str, Any] = {"reason": value}
        if usage:
            data["usage"] = usage
        return cls(ChatEventType.TURN_COMPLETE, data)

    @classmethod
    def error(cls, message: str, code: str | None = None) -> "ChatEvent":
        """Create an error event."""
        data = {"message": message}
        if code:
            data["code"] = code
        return cls(ChatEventType.ERROR, data)
