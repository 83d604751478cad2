"""
LLM Stream - Async streaming wrapper for LiteLLM (client-executed mode).

Provides the streaming chat backend for Chat Completions style models:
- Text generation (streaming deltas)
- Tool calls (function calling), accumulated by index
- Reasoning/thinking tokens (o1/Claude style)
- Token usage tracking

Every tool call the model emits is executed locally by the caller.
"""

import logging
import time
import uuid
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from typing import Any

import litellm

from toolchat.domain.events.chat_events import ChatEvent, TurnCompleteReason
from toolchat.domain.model.mcp.server import ServerConfig
from toolchat.domain.model.mcp.tool import ToolCallRequest
from toolchat.domain.ports.chat_backend import ChatMode
from toolchat.infrastructure.agent.core.tool_arguments import parse_tool_arguments

logger = logging.getLogger(__name__)


@dataclass
class ToolCallChunk:
    """
    Partial tool call being accumulated from stream.

    Tool calls may arrive in multiple chunks:
    - First chunk: id, name (possibly partial)
    - Subsequent chunks: argument deltas
    """

    id: str
    index: int
    name: str = ""
    arguments: str = ""


@dataclass
class StreamConfig:
    """
    Configuration for LLM streaming.

    Controls model behavior, token limits, and streaming options.
    """

    model: str
    api_key: str | None = None
    base_url: str | None = None
    temperature: float = 0.0
    max_tokens: int = 4096
    tool_choice: str | None = None  # "auto", "none", "required"

    # Provider-specific options
    provider_options: dict[str, Any] = field(default_factory=dict)

    timeout: int = 600  # seconds

    def to_litellm_kwargs(self) -> dict[str, Any]:
        """
        Convert to LiteLLM acompletion kwargs.

        Returns:
            Dictionary of kwargs for litellm.acompletion()
        """
        kwargs: dict[str, Any] = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
            "timeout": self.timeout,
        }

        if self.api_key:
            kwargs["api_key"] = self.api_key

        if self.base_url:
            kwargs["api_base"] = self.base_url

        # Merge provider-specific options
        kwargs.update(self.provider_options)

        return kwargs


class LLMStream:
    """
    Async streaming wrapper for LiteLLM.

    Usage:
        stream = LLMStream(StreamConfig(model="gpt-4o-mini"))
        async for event in stream.stream(messages, tools, []):
            if event.type == ChatEventType.CONTENT_DELTA:
                print(event.data["delta"], end="")
    """

    mode = ChatMode.CLIENT

    def __init__(self, config: StreamConfig) -> None:
        self.config = config

        # Accumulated state during streaming
        self._text_buffer: str = ""
        self._reasoning_buffer: str = ""
        self._tool_calls: dict[int, ToolCallChunk] = {}
        self._usage: dict[str, int] | None = None
        self._finish_reason: str | None = None

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        remote_servers: list[ServerConfig],
    ) -> AsyncIterator[ChatEvent]:
        """
        Generate streaming response from LLM.

        ``remote_servers`` is ignored: in client-executed mode remote tools
        are offered as ordinary function tools and run through the gateway.

        Yields:
            ChatEvent objects as response is generated
        """
        request_id = str(uuid.uuid4())
        self._reset_state()

        kwargs = self.config.to_litellm_kwargs()
        kwargs["messages"] = messages
        if tools:
            kwargs["tools"] = tools
            if self.config.tool_choice:
                kwargs["tool_choice"] = self.config.tool_choice

        logger.debug(f"Starting LLM stream: model={self.config.model}, request_id={request_id}")
        start_time = time.time()

        try:
            response = await litellm.acompletion(**kwargs)
            try:
                async for chunk in response:
                    for event in self._process_chunk(chunk):
                        yield event
            finally:
                aclose = getattr(response, "aclose", None)
                if aclose is not None:
                    await aclose()

            for event in self._finalize():
                yield event

            elapsed = time.time() - start_time
            logger.debug(f"LLM stream completed: request_id={request_id}, elapsed={elapsed:.2f}s")

        except Exception as e:
            logger.error(f"LLM stream error: {e}", exc_info=True)
            yield ChatEvent.error(str(e), code=type(e).__name__)

    def _reset_state(self) -> None:
        """Reset accumulated state for new generation."""
        self._text_buffer = ""
        self._reasoning_buffer = ""
        self._tool_calls = {}
        self._usage = None
        self._finish_reason = None

    def _process_chunk(self, chunk: Any) -> Iterator[ChatEvent]:
        """
        Process a single streaming chunk.

        Handles content deltas, reasoning content, tool call deltas and the
        usage data of the final chunk.
        """
        usage = getattr(chunk, "usage", None)
        if usage:
            self._usage = self._extract_usage(usage)

        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return

        choice = choices[0]
        delta = getattr(choice, "delta", None)
        if delta is not None:
            content = getattr(delta, "content", None)
            if content:
                self._text_buffer += content
                yield ChatEvent.content_delta(content)

            # Reasoning content (o1, Claude extended thinking)
            reasoning = (
                getattr(delta, "reasoning_content", None)
                or getattr(delta, "thinking", None)
                or getattr(delta, "reasoning", None)
            )
            if reasoning:
                self._reasoning_buffer += reasoning
                yield ChatEvent.reasoning_delta(reasoning)

            tool_calls = getattr(delta, "tool_calls", None)
            if tool_calls:
                yield from self._process_tool_calls(tool_calls)

        finish_reason = getattr(choice, "finish_reason", None)
        if finish_reason:
            self._finish_reason = finish_reason

    def _process_tool_calls(self, tool_calls: list[Any]) -> Iterator[ChatEvent]:
        """
        Process tool call deltas.

        Tool calls arrive incrementally: the first chunk of an index has the
        id and function name, later chunks carry argument fragments.
        """
        for tc in tool_calls:
            index = getattr(tc, "index", None) or 0

            if index not in self._tool_calls:
                call_id = getattr(tc, "id", None) or f"call_{uuid.uuid4().hex[:8]}"
                self._tool_calls[index] = ToolCallChunk(id=call_id, index=index)

            tracker = self._tool_calls[index]
            function = getattr(tc, "function", None)
            if function is None:
                continue

            name = getattr(function, "name", None)
            if name:
                tracker.name = name

            args_delta = getattr(function, "arguments", None) or ""
            if args_delta:
                tracker.arguments += args_delta
            yield ChatEvent.tool_call_delta(
                index=index,
                call_id=tracker.id,
                name=tracker.name or None,
                arguments_delta=args_delta,
            )

    def _parse_tool_arguments(self, tracker: ToolCallChunk) -> dict[str, Any]:
        if self._finish_reason == "length" and tracker.arguments:
            logger.warning(
                f"[LLMStream] Output hit max_tokens while streaming arguments for {tracker.name}"
            )
        return parse_tool_arguments(tracker.arguments, tracker.name)

    def _finalize(self) -> Iterator[ChatEvent]:
        """Complete accumulated tool calls and emit the turn-complete event."""
        for index in sorted(self._tool_calls):
            tracker = self._tool_calls[index]
            if not tracker.name:
                logger.warning(f"[LLMStream] Dropping tool call {tracker.id} without a name")
                continue
            yield ChatEvent.tool_call_complete(
                ToolCallRequest(
                    id=tracker.id,
                    name=tracker.name,
                    arguments=self._parse_tool_arguments(tracker),
                )
            )

        reason = self._finish_reason or TurnCompleteReason.STOP.value
        if self._tool_calls and reason == TurnCompleteReason.STOP.value:
            reason = TurnCompleteReason.TOOL_CALLS.value
        yield ChatEvent.turn_complete(reason, usage=self._usage)

    def _extract_usage(self, usage: Any) -> dict[str, int]:
        """
        Extract token usage from response.

        Handles different provider formats:
        - OpenAI: prompt_tokens, completion_tokens
        - Anthropic: input_tokens, output_tokens
        - Reasoning models: completion_tokens_details.reasoning_tokens
        """
        result = {"input_tokens": 0, "output_tokens": 0, "reasoning_tokens": 0}

        if getattr(usage, "prompt_tokens", None) is not None:
            result["input_tokens"] = usage.prompt_tokens or 0
        elif getattr(usage, "input_tokens", None) is not None:
            result["input_tokens"] = usage.input_tokens or 0

        if getattr(usage, "completion_tokens", None) is not None:
            result["output_tokens"] = usage.completion_tokens or 0
        elif getattr(usage, "output_tokens", None) is not None:
            result["output_tokens"] = usage.output_tokens or 0

        details = getattr(usage, "completion_tokens_details", None)
        if details is not None:
            result["reasoning_tokens"] = getattr(details, "reasoning_tokens", 0) or 0

        return result
