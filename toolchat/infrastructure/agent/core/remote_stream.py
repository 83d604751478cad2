"""
Responses Stream - server-assisted chat backend.

Streams the Responses API through the OpenAI SDK. Besides local function
tools the request declares remote MCP servers, which the backend calls
itself:
- ``mcp_call`` output items arrive already executed and are surfaced as
  pre-calculated tool responses
- ``mcp_approval_request`` output items ask the client to approve a
  server-side call; the answer travels in the next request's input as an
  ``mcp_approval_response`` item

Conversation history is kept in chat format; ``to_responses_input``
converts it for each request.
"""

import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import openai
from openai import AsyncOpenAI

from toolchat.domain.events.chat_events import ChatEvent, ChatEventType, TurnCompleteReason
from toolchat.domain.exceptions.mcp import StreamProtocolError
from toolchat.domain.model.mcp.server import ServerConfig
from toolchat.domain.model.mcp.tool import ToolCallRequest
from toolchat.domain.ports.chat_backend import ChatMode
from toolchat.infrastructure.agent.core.tool_arguments import parse_tool_arguments

logger = logging.getLogger(__name__)

# Flags on stored assistant tool calls that the backend, not the client, handled.
SERVER_EXECUTED_KEY = "server_executed"
APPROVAL_REQUEST_KEY = "approval_request"
SERVER_LABEL_KEY = "server_label"

# Field on the tool-role message answering an approval request.
APPROVAL_KEY = "approval"


@dataclass
class ResponsesConfig:
    """Configuration for the Responses endpoint."""

    model: str
    base_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = 4096
    timeout: float = 600.0
    max_retries: int = 2
    extra_body: dict[str, Any] = field(default_factory=dict)


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    return ""


def _user_content(content: Any) -> str | list[dict[str, Any]]:
    if not isinstance(content, list):
        return _text_of(content)
    parts: list[dict[str, Any]] = []
    for part in content:
        if not isinstance(part, dict):
            continue
        if part.get("type") == "text":
            parts.append({"type": "input_text", "text": part.get("text", "")})
        elif part.get("type") == "image_url":
            image = part.get("image_url")
            url = image.get("url") if isinstance(image, dict) else image
            parts.append({"type": "input_image", "image_url": url})
    return parts


def to_responses_input(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert chat-format messages into Responses input items."""
    tool_messages = {
        m.get("tool_call_id"): m for m in messages if m.get("role") == "tool"
    }
    special_calls: set[str] = set()
    items: list[dict[str, Any]] = []

    for message in messages:
        role = message.get("role")
        if role in ("system", "developer"):
            items.append({"role": role, "content": _text_of(message.get("content"))})
        elif role == "user":
            items.append({"role": "user", "content": _user_content(message.get("content"))})
        elif role == "assistant":
            text = _text_of(message.get("content"))
            if text:
                items.append({"role": "assistant", "content": text})
            for call in message.get("tool_calls") or []:
                items.extend(_call_items(call, tool_messages, special_calls))
        elif role == "tool":
            call_id = message.get("tool_call_id")
            if call_id in special_calls:
                continue
            items.append(
                {
                    "type": "function_call_output",
                    "call_id": call_id,
                    "output": _text_of(message.get("content")),
                }
            )
    return items


def _call_items(
    call: dict[str, Any],
    tool_messages: dict[Any, dict[str, Any]],
    special_calls: set[str],
) -> list[dict[str, Any]]:
    call_id = call.get("id", "")
    function = call.get("function") or {}
    name = function.get("name", "")
    arguments = function.get("arguments") or "{}"
    reply = tool_messages.get(call_id) or {}

    if call.get(SERVER_EXECUTED_KEY):
        special_calls.add(call_id)
        return [
            {
                "type": "mcp_call",
                "id": call_id,
                "server_label": call.get(SERVER_LABEL_KEY, ""),
                "name": name,
                "arguments": arguments,
                "output": _text_of(reply.get("content")),
            }
        ]

    if call.get(APPROVAL_REQUEST_KEY):
        special_calls.add(call_id)
        items = [
            {
                "type": "mcp_approval_request",
                "id": call_id,
                "server_label": call.get(SERVER_LABEL_KEY, ""),
                "name": name,
                "arguments": arguments,
            }
        ]
        approval = reply.get(APPROVAL_KEY)
        if isinstance(approval, dict):
            items.append(
                {
                    "type": "mcp_approval_response",
                    "approval_request_id": call_id,
                    "approve": bool(approval.get("approve")),
                }
            )
        return items

    return [{"type": "function_call", "call_id": call_id, "name": name, "arguments": arguments}]


def to_responses_tools(
    tools: list[dict[str, Any]], remote_servers: list[ServerConfig]
) -> list[dict[str, Any]]:
    """Function tools in Responses shape plus one ``mcp`` tool per remote server."""
    result: list[dict[str, Any]] = []
    for tool in tools:
        function = tool.get("function", tool)
        result.append(
            {
                "type": "function",
                "name": function.get("name"),
                "description": function.get("description", ""),
                "parameters": function.get("parameters") or {"type": "object", "properties": {}},
            }
        )
    for server in remote_servers:
        entry: dict[str, Any] = {
            "type": "mcp",
            "server_label": server.id,
            "server_url": server.url,
            "require_approval": "always",
        }
        if server.headers:
            entry["headers"] = dict(server.headers)
        result.append(entry)
    return result



class ResponsesStream:
    """
    Streaming backend for the Responses API.

    Usage:
        backend = ResponsesStream(ResponsesConfig(model="gpt-4.1", api_key=key))
        async for event in backend.stream(messages, tools, registry.remote_servers()):
            ...
    """

    mode = ChatMode.SERVER

    def __init__(
        self,
        config: ResponsesConfig,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None

        # Per-stream state
        self._calls_by_item: dict[str, dict[str, Any]] = {}
        self._pending_actions = 0

    async def aclose(self) -> None:
        """Release the owned SDK client."""
        if self._client is not None and self._owns_client:
            await self._client.close()
        self._client = None

    def _openai(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                max_retries=self.config.max_retries,
            )
        return self._client

    def build_request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        remote_servers: list[ServerConfig],
    ) -> dict[str, Any]:
        """Keyword arguments for ``responses.create``."""
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "input": to_responses_input(messages),
        }
        declared = to_responses_tools(tools, remote_servers)
        if declared:
            kwargs["tools"] = declared
        if self.config.temperature is not None:
            kwargs["temperature"] = self.config.temperature
        if self.config.max_output_tokens:
            kwargs["max_output_tokens"] = self.config.max_output_tokens
        if self.config.extra_body:
            kwargs["extra_body"] = dict(self.config.extra_body)
        return kwargs

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        remote_servers: list[ServerConfig],
    ) -> AsyncIterator[ChatEvent]:
        """
        Stream one assistant turn.

        Yields:
            ChatEvent objects; the last one is turn-complete or error.
        """
        request_id = str(uuid.uuid4())
        self._calls_by_item = {}
        self._pending_actions = 0
        kwargs = self.build_request(messages, tools, remote_servers)

        logger.debug(
            f"Starting Responses stream: model={self.config.model}, request_id={request_id}, "
            f"remote_servers={[s.id for s in remote_servers]}"
        )
        start_time = time.time()

        try:
            response_stream = await self._openai().responses.create(**kwargs, stream=True)
            try:
                async for event in response_stream:
                    for chat_event in self._handle_event(event):
                        yield chat_event
                        if chat_event.type in (ChatEventType.TURN_COMPLETE, ChatEventType.ERROR):
                            return
            except ValueError as e:
                raise StreamProtocolError(f"Malformed event data: {e}", original_error=e) from e
            finally:
                await response_stream.close()

            raise StreamProtocolError("Response stream ended before completion")

        except StreamProtocolError as e:
            logger.error(f"Responses stream protocol error: {e}")
            yield ChatEvent.error(str(e), code=type(e).__name__)
        except openai.APIStatusError as e:
            logger.error(f"Responses request rejected: HTTP {e.status_code}: {e.message}")
            yield ChatEvent.error(
                f"Chat backend returned HTTP {e.status_code}: {e.message}",
                code=f"HTTP_{e.status_code}",
            )
        except openai.OpenAIError as e:
            logger.error(f"Responses stream error: {e}", exc_info=True)
            yield ChatEvent.error(str(e), code=type(e).__name__)
        finally:
            elapsed = time.time() - start_time
            logger.debug(f"Responses stream finished: request_id={request_id}, elapsed={elapsed:.2f}s")

    def _handle_event(self, event: Any) -> list[ChatEvent]:
        match getattr(event, "type", None):
            case "response.output_text.delta":
                return [ChatEvent.content_delta(event.delta or "")]
            case "response.reasoning_text.delta" | "response.reasoning_summary_text.delta":
                return [ChatEvent.reasoning_delta(event.delta or "")]
            case "response.output_item.added":
                self._track_item(event)
                return []
            case "response.function_call_arguments.delta":
                return [self._arguments_delta(event)]
            case "response.output_item.done":
                return self._item_done(event.item)
            case "response.completed" | "response.incomplete":
                return [self._completed(event.response)]
            case "response.failed":
                error = getattr(event.response, "error", None)
                return [
                    ChatEvent.error(
                        getattr(error, "message", None) or "Response failed",
                        getattr(error, "code", None),
                    )
                ]
            case "error":
                return [
                    ChatEvent.error(
                        getattr(event, "message", None) or "Unknown backend error",
                        getattr(event, "code", None),
                    )
                ]
            case None:
                raise StreamProtocolError(f"Event without a type: {event!r:.200}")
            case other:
                logger.debug(f"Ignoring Responses event: {other}")
                return []

    def _track_item(self, event: Any) -> None:
        item = event.item
        if getattr(item, "type", None) == "function_call":
            self._calls_by_item[getattr(item, "id", None) or ""] = {
                "call_id": getattr(item, "call_id", None),
                "name": getattr(item, "name", None),
                "index": getattr(event, "output_index", 0),
            }

    def _arguments_delta(self, event: Any) -> ChatEvent:
        call = self._calls_by_item.get(getattr(event, "item_id", None) or "", {})
        return ChatEvent.tool_call_delta(
            index=call.get("index", getattr(event, "output_index", 0)),
            call_id=call.get("call_id"),
            name=call.get("name"),
            arguments_delta=getattr(event, "delta", None) or "",
        )

    def _item_done(self, item: Any) -> list[ChatEvent]:
        if item is None:
            raise StreamProtocolError("output_item.done without an item")

        item_type = getattr(item, "type", None)
        name = getattr(item, "name", None) or ""
        arguments = getattr(item, "arguments", None)

        if item_type == "function_call":
            call_id = getattr(item, "call_id", None) or getattr(item, "id", None)
            if not name or not call_id:
                raise StreamProtocolError("function_call item without name or call_id")
            self._pending_actions += 1
            request = ToolCallRequest(
                id=call_id, name=name, arguments=parse_tool_arguments(arguments, name)
            )
            return [ChatEvent.tool_call_complete(request)]

        if item_type == "mcp_call":
            error = getattr(item, "error", None)
            output = getattr(item, "output", None)
            if output is None:
                output = f"Error: {error}" if error else ""
            return [
                ChatEvent.pre_calculated_tool_response(
                    call_id=getattr(item, "id", None) or "",
                    name=name,
                    arguments=parse_tool_arguments(arguments, name),
                    output=output if isinstance(output, str) else json.dumps(output),
                    server_label=getattr(item, "server_label", None),
                    is_error=bool(error),
                )
            ]

        if item_type == "mcp_approval_request":
            self._pending_actions += 1
            return [
                ChatEvent.approval_request(
                    approval_id=getattr(item, "id", None) or "",
                    name=name,
                    arguments=parse_tool_arguments(arguments, name),
                    server_label=getattr(item, "server_label", None),
                )
            ]

        return []

    def _completed(self, response: Any) -> ChatEvent:
        reason = TurnCompleteReason.TOOL_CALLS if self._pending_actions else TurnCompleteReason.STOP
        if getattr(response, "status", None) == "incomplete":
            details = getattr(response, "incomplete_details", None)
            if getattr(details, "reason", None) == "max_output_tokens":
                reason = TurnCompleteReason.LENGTH
        return ChatEvent.turn_complete(reason, usage=self._extract_usage(getattr(response, "usage", None)))

    @staticmethod
    def _extract_usage(usage: Any) -> dict[str, int] | None:
        if usage is None:
            return None
        details = getattr(usage, "output_tokens_details", None)
        return {
            "input_tokens": getattr(usage, "input_tokens", 0) or 0,
            "output_tokens": getattr(usage, "output_tokens", 0) or 0,
            "reasoning_tokens": getattr(details, "reasoning_tokens", 0) or 0,
        }
