"""
Chat Coordinator - drives one conversation turn in either chat mode.

The loop:
1. Prune the conversation to the context budget
2. Stream one assistant turn from the backend
3. Resolve every outstanding tool call: local calls through the gateway,
   server-side approval requests through the approval policy
4. Append the results and invoke the model again
5. Stop when a turn has nothing outstanding or the iteration cap is hit

The conversation list passed to ``run_turn`` is extended in place with the
assistant messages and tool results of the turn. Pruning only affects what
is sent to the backend.
"""

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from toolchat.domain.events.chat_events import ChatEvent, ChatEventType, TurnCompleteReason
from toolchat.domain.exceptions.mcp import TurnInProgressError
from toolchat.domain.model.mcp.tool import ToolCallRequest, ToolResult
from toolchat.domain.ports.chat_backend import ChatBackendPort, ChatMode
from toolchat.infrastructure.agent.context.window_manager import ContextWindowManager
from toolchat.infrastructure.agent.core.remote_stream import (
    APPROVAL_KEY,
    APPROVAL_REQUEST_KEY,
    SERVER_EXECUTED_KEY,
    SERVER_LABEL_KEY,
)
from toolchat.infrastructure.agent.permission.approval import ApprovalPolicy
from toolchat.infrastructure.agent.tools.gateway import DENIAL_MARKER, ToolExecutionGateway
from toolchat.infrastructure.mcp.registry import MCPConnectionRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ITERATIONS = 10

CANCELLED_OUTPUT = "[tool call cancelled]"
ITERATION_LIMIT_NOTICE = (
    "[Response truncated: stopped after {limit} model invocations in one turn. "
    "Send a new message to continue.]"
)

USAGE_KEYS = ("input_tokens", "output_tokens", "reasoning_tokens")


@dataclass
class _StepState:
    """What one backend stream produced."""

    text: str = ""
    calls: list[ToolCallRequest] = field(default_factory=list)
    pre_calculated: list[dict[str, Any]] = field(default_factory=list)
    approvals: list[dict[str, Any]] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict[str, Any] | None = None
    error: ChatEvent | None = None

    @property
    def has_pending(self) -> bool:
        return bool(self.calls or self.approvals)

    def assistant_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": self.text or None}
        tool_calls = [call.to_openai_tool_call() for call in self.calls]
        for item in self.pre_calculated:
            tool_calls.append(
                {
                    **_server_call(item["call_id"], item["name"], item.get("arguments")),
                    SERVER_EXECUTED_KEY: True,
                    SERVER_LABEL_KEY: item.get("server_label"),
                }
            )
        for item in self.approvals:
            tool_calls.append(
                {
                    **_server_call(item["approval_id"], item["name"], item.get("arguments")),
                    APPROVAL_REQUEST_KEY: True,
                    SERVER_LABEL_KEY: item.get("server_label"),
                }
            )
        if tool_calls:
            message["tool_calls"] = tool_calls
        return message


def _server_call(call_id: str, name: str, arguments: dict[str, Any] | None) -> dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(arguments or {}, ensure_ascii=False)},
    }


async def _next_event(stream: AsyncIterator[ChatEvent]) -> ChatEvent | None:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


class ChatCoordinator:
    """
    Single-flight turn loop over a chat backend.

    Example:
        coordinator = ChatCoordinator(backend, registry, gateway, approval)
        messages.append({"role": "user", "content": "List my files"})
        async for event in coordinator.run_turn(messages):
            render(event)
    """

    def __init__(
        self,
        backend: ChatBackendPort,
        registry: MCPConnectionRegistry,
        gateway: ToolExecutionGateway,
        approval: ApprovalPolicy,
        window: ContextWindowManager | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        """
        Initialize chat coordinator.

        Args:
            backend: Streaming chat backend; its mode decides who runs remote tools
            registry: Source of tool definitions and remote servers
            gateway: Executes local tool calls
            approval: Answers server-side approval requests
            window: Context pruning; defaults to a 128k window at 50%
            max_iterations: Model invocations allowed per turn
        """
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.backend = backend
        self.registry = registry
        self.gateway = gateway
        self.approval = approval
        self.window = window or ContextWindowManager()
        self.max_iterations = max_iterations
        self._busy = False
        self._abort_event: asyncio.Event | None = None

    @property
    def mode(self) -> ChatMode:
        return self.backend.mode

    @property
    def is_busy(self) -> bool:
        """True while a turn is running; a new user message must wait."""
        return self._busy

    def abort(self) -> None:
        """Abort the running turn. The stream is closed and the turn ends as aborted."""
        if self._abort_event is not None and not self._abort_event.is_set():
            logger.info("Chat turn abort requested")
            self._abort_event.set()

    async def run_turn(self, messages: list[dict[str, Any]]) -> AsyncIterator[ChatEvent]:
        """
        Run one turn.

        Yields:
            Backend events as they stream, tool-result events for local and
            approval results, and exactly one final turn-complete event.

        Raises:
            TurnInProgressError: If another turn is running.
        """
        if self._busy:
            raise TurnInProgressError("A chat turn is already in progress")

        self._busy = True
        self._abort_event = asyncio.Event()
        try:
            async for event in self._run(messages):
                yield event
        finally:
            self._busy = False
            self._abort_event = None

    async def _run(self, messages: list[dict[str, Any]]) -> AsyncIterator[ChatEvent]:
        usage: dict[str, int] = {}
        server_mode = self.mode is ChatMode.SERVER

        for iteration in range(1, self.max_iterations + 1):
            if self._aborted:
                yield self._finish_aborted(messages, None, usage)
                return

            pruned = self.window.prune(messages)
            tools = self.registry.openai_tools(local_only=server_mode)
            remote_servers = self.registry.remote_servers() if server_mode else []
            logger.debug(
                f"Model invocation {iteration}/{self.max_iterations}: "
                f"{len(pruned.messages)} messages, {len(tools)} tools, "
                f"{len(remote_servers)} remote servers"
            )

            step = _StepState()
            async for event in self._stream_step(pruned.messages, tools, remote_servers, step):
                yield event
            _add_usage(usage, step.usage)

            if self._aborted:
                yield self._finish_aborted(messages, step.text, usage)
                return

            if step.error is not None:
                if step.text:
                    # Keep what was already rendered
                    messages.append({"role": "assistant", "content": step.text})
                yield step.error
                yield ChatEvent.turn_complete(TurnCompleteReason.ERROR, usage=usage or None)
                return

            messages.append(step.assistant_message())
            for item in step.pre_calculated:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": item["call_id"],
                        "name": item["name"],
                        "content": item.get("output", ""),
                    }
                )

            if not step.has_pending:
                yield ChatEvent.turn_complete(step.finish_reason or TurnCompleteReason.STOP, usage=usage or None)
                return

            resolved = await self._until_aborted(self._resolve_pending(step))
            if resolved is None:
                yield self._finish_aborted(messages, None, usage)
                return
            for result, message in resolved:
                messages.append(message)
                yield ChatEvent.tool_result(result)

        notice = ITERATION_LIMIT_NOTICE.format(limit=self.max_iterations)
        logger.warning(f"Chat turn stopped at iteration limit ({self.max_iterations})")
        messages.append({"role": "assistant", "content": notice})
        yield ChatEvent.content_delta(notice)
        yield ChatEvent.turn_complete(TurnCompleteReason.MAX_ITERATIONS, usage=usage or None)

    @property
    def _aborted(self) -> bool:
        return self._abort_event is not None and self._abort_event.is_set()

    async def _stream_step(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        remote_servers: list[Any],
        step: _StepState,
    ) -> AsyncIterator[ChatEvent]:
        """Pull one backend stream, recording what it produced into ``step``."""
        stream = self.backend.stream(messages, tools, remote_servers)
        try:
            while True:
                event = await self._until_aborted(_next_event(stream))
                if event is None:
                    return

                match event.type:
                    case ChatEventType.CONTENT_DELTA:
                        step.text += event.data.get("delta", "")
                    case ChatEventType.TOOL_CALL_COMPLETE:
                        step.calls.append(
                            ToolCallRequest(
                                id=event.data["call_id"],
                                name=event.data["name"],
                                arguments=event.data.get("arguments") or {},
                            )
                        )
                    case ChatEventType.PRE_CALCULATED_TOOL_RESPONSE:
                        step.pre_calculated.append(event.data)
                    case ChatEventType.APPROVAL_REQUEST:
                        step.approvals.append(event.data)
                    case ChatEventType.TURN_COMPLETE:
                        step.finish_reason = event.data.get("reason")
                        step.usage = event.data.get("usage")
                        return
                    case ChatEventType.ERROR:
                        step.error = event
                        return

                yield event
        finally:
            await stream.aclose()  # type: ignore[attr-defined]

    async def _until_aborted(self, awaitable: Awaitable[T]) -> T | None:
        """
        Await ``awaitable`` unless the turn is aborted first.

        Returns:
            The result, or None when aborted or when a stream is exhausted.
        """
        assert self._abort_event is not None
        task = asyncio.ensure_future(awaitable)
        abort_wait = asyncio.ensure_future(self._abort_event.wait())
        try:
            done, _ = await asyncio.wait({task, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            abort_wait.cancel()

        if task in done:
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        return None

    async def _resolve_pending(
        self, step: _StepState
    ) -> list[tuple[ToolResult, dict[str, Any]]]:
        """Run local calls and answer approval requests concurrently."""
        local, approvals = await asyncio.gather(
            self.gateway.execute_batch(step.calls),
            asyncio.gather(*(self._answer_approval(item) for item in step.approvals)),
        )
        resolved = [(result, result.to_message()) for result in local]
        resolved.extend(approvals)
        return resolved

    async def _answer_approval(self, item: dict[str, Any]) -> tuple[ToolResult, dict[str, Any]]:
        name = item["name"]
        approved = await self.approval.resolve(name)
        if approved:
            output = f"Approved server-side call to '{name}'"
        else:
            output = f"{DENIAL_MARKER} Permission to run tool '{name}' was denied"
        result = ToolResult(
            call_id=item["approval_id"],
            name=name,
            output=output,
            is_error=not approved,
            metadata={"server_label": item.get("server_label"), "approval": approved},
        )
        message = result.to_message()
        message[APPROVAL_KEY] = {"approve": approved}
        return result, message

    def _finish_aborted(
        self,
        messages: list[dict[str, Any]],
        partial_text: str | None,
        usage: dict[str, int],
    ) -> ChatEvent:
        """
        Close the conversation consistently after an abort.

        ``partial_text`` is assistant text streamed but not yet appended.
        Every tool call of the last assistant message gets a result.
        """
        if partial_text:
            messages.append({"role": "assistant", "content": partial_text})

        answered = {m.get("tool_call_id") for m in messages if m.get("role") == "tool"}
        last: dict[str, Any] = {}
        for message in reversed(messages):
            if message.get("role") == "assistant":
                last = message
                break
        for call in last.get("tool_calls") or []:
            if call.get("id") not in answered:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.get("id"),
                        "name": (call.get("function") or {}).get("name", ""),
                        "content": CANCELLED_OUTPUT,
                    }
                )

        logger.info("Chat turn aborted")
        return ChatEvent.turn_complete(TurnCompleteReason.ABORTED, usage=usage or None)


def _add_usage(total: dict[str, int], usage: dict[str, Any] | None) -> None:
    if not usage:
        return
    for key in USAGE_KEYS:
        total[key] = total.get(key, 0) + int(usage.get(key, 0) or 0)
