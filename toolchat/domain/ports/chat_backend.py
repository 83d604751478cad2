"""
ChatBackendPort - Abstract interface for a streaming chat model backend.

One call to ``stream`` is one model invocation: it yields a lazy, finite,
non-restartable sequence of typed chat events and ends with either a
``turn-complete`` or an ``error`` event. Closing the iterator early
(``aclose()``) must close the underlying network stream.
"""

from collections.abc import AsyncIterator
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from toolchat.domain.events.chat_events import ChatEvent
from toolchat.domain.model.mcp.server import ServerConfig


class ChatMode(str, Enum):
    """Who executes the tools a model calls."""

    CLIENT = "client"  # every tool call runs locally through the gateway
    SERVER = "server"  # the backend reaches remote servers itself


@runtime_checkable
class ChatBackendPort(Protocol):
    """Streaming chat backend."""

    mode: ChatMode

    def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        remote_servers: list[ServerConfig],
    ) -> AsyncIterator[ChatEvent]:
        """
        Stream one assistant turn.

        Args:
            messages: Conversation in OpenAI chat format
            tools: Function-tool definitions executed locally
            remote_servers: Remote MCP servers the backend calls itself
                (ignored by client-executed backends)
        """
        ...
