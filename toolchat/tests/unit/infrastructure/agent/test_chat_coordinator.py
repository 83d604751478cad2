"""Unit tests for ChatCoordinator."""

import asyncio

import pytest

from toolchat.domain.events.chat_events import ChatEvent, ChatEventType, TurnCompleteReason
from toolchat.domain.exceptions.mcp import TurnInProgressError
from toolchat.domain.model.mcp.server import ServerConfig
from toolchat.domain.model.mcp.tool import ToolCallRequest
from toolchat.domain.ports.chat_backend import ChatMode
from toolchat.domain.ports.credential_store import AUTO_APPROVE_ALL_KEY, TOOL_APPROVAL_KEY
from toolchat.infrastructure.agent.context.window_manager import (
    ContextWindowConfig,
    ContextWindowManager,
)
from toolchat.infrastructure.agent.permission.approval import ApprovalChoice, ApprovalPolicy
from toolchat.infrastructure.agent.processor.processor import (
    CANCELLED_OUTPUT,
    ChatCoordinator,
)
from toolchat.infrastructure.agent.tools.gateway import DENIAL_MARKER, ToolExecutionGateway
from toolchat.infrastructure.credentials.memory_store import InMemoryCredentialStore

FS = ServerConfig.stdio("fs", "mcp-fs")
DOCS = ServerConfig.remote("docs", "https://docs.test/mcp")

# Script entry that blocks the backend stream until it is cancelled.
HANG = object()


class ScriptedBackend:
    """Chat backend replaying one script of events per model invocation."""

    def __init__(self, *scripts, mode=ChatMode.CLIENT, repeat_last=False):
        self.mode = mode
        self.scripts = list(scripts)
        self.repeat_last = repeat_last
        self.invocations: list[dict] = []
        self.closed = 0

    async def stream(self, messages, tools, remote_servers):
        self.invocations.append(
            {
                "messages": [dict(m) for m in messages],
                "tools": [t["function"]["name"] for t in tools],
                "remote_servers": [s.id for s in remote_servers],
            }
        )
        script = self.scripts[0] if self.repeat_last and len(self.scripts) == 1 else self.scripts.pop(0)
        try:
            for event in script:
                if event is HANG:
                    await asyncio.Event().wait()
                yield event
        finally:
            self.closed += 1


def text_turn(text, usage=None):
    return [ChatEvent.content_delta(text), ChatEvent.turn_complete(TurnCompleteReason.STOP, usage=usage)]


def call_turn(*calls, usage=None):
    return [
        *(ChatEvent.tool_call_complete(call) for call in calls),
        ChatEvent.turn_complete(TurnCompleteReason.TOOL_CALLS, usage=usage),
    ]


@pytest.fixture
async def registry(make_registry, client_factory):
    client_factory.specs["fs"] = {"tools": [{"name": "read"}, {"name": "write"}]}
    client_factory.specs["docs"] = {"tools": [{"name": "lookup"}]}
    registry = make_registry(FS, DOCS)
    await registry.connect_all()
    return registry


@pytest.fixture
def make_coordinator(registry):
    def _make(backend, store=None, decide=None, **kwargs):
        store = store or InMemoryCredentialStore({AUTO_APPROVE_ALL_KEY: True})
        approval = ApprovalPolicy(store, decide=decide)
        gateway = ToolExecutionGateway(registry, approval)
        return ChatCoordinator(backend, registry, gateway, approval, **kwargs)

    return _make


async def drain(coordinator, messages):
    return [event async for event in coordinator.run_turn(messages)]


@pytest.mark.unit
class TestClientMode:
    """Test the turn loop with locally executed tools."""

    async def test_text_only_turn(self, make_coordinator):
        """A reply without tool calls completes after one invocation."""
        backend = ScriptedBackend(text_turn("Hello", usage={"input_tokens": 3, "output_tokens": 1}))
        coordinator = make_coordinator(backend)
        messages = [{"role": "user", "content": "hi"}]

        events = await drain(coordinator, messages)

        assert [e.type for e in events] == [ChatEventType.CONTENT_DELTA, ChatEventType.TURN_COMPLETE]
        assert events[-1].data["reason"] == "stop"
        assert messages[-1] == {"role": "assistant", "content": "Hello"}
        assert backend.invocations[0]["tools"] == ["read", "write", "lookup"]
        assert backend.invocations[0]["remote_servers"] == []
        assert coordinator.is_busy is False

    async def test_approved_and_denied_calls_both_answered(self, make_coordinator, client_factory):
        """Both results are in the history before the next model invocation."""
        store = InMemoryCredentialStore({TOOL_APPROVAL_KEY.format(tool_name="read"): "always"})
        backend = ScriptedBackend(
            call_turn(ToolCallRequest("c1", "read", {"path": "a"}), ToolCallRequest("c2", "write", {})),
            text_turn("Done"),
        )
        coordinator = make_coordinator(backend, store=store, decide=lambda name: ApprovalChoice.DENY)
        messages = [{"role": "user", "content": "copy a"}]

        events = await drain(coordinator, messages)

        results = [e.data for e in events if e.type is ChatEventType.TOOL_RESULT]
        assert [r["call_id"] for r in results] == ["c1", "c2"]
        assert results[0]["is_error"] is False
        assert DENIAL_MARKER in results[1]["output"]

        second_request = backend.invocations[1]["messages"]
        tool_messages = [m for m in second_request if m["role"] == "tool"]
        assert [m["tool_call_id"] for m in tool_messages] == ["c1", "c2"]
        assert [c["id"] for c in second_request[1]["tool_calls"]] == ["c1", "c2"]
        assert client_factory.latest("fs").calls == [("read", {"path": "a"})]
        assert messages[-1] == {"role": "assistant", "content": "Done"}

    async def test_iteration_cap(self, make_coordinator):
        """A model that keeps calling tools is stopped with a notice."""
        backend = ScriptedBackend(call_turn(ToolCallRequest("c1", "read", {})), repeat_last=True)
        coordinator = make_coordinator(backend, max_iterations=3)
        messages = [{"role": "user", "content": "loop"}]

        events = await drain(coordinator, messages)

        assert len(backend.invocations) == 3
        assert events[-1].data["reason"] == "max_iterations"
        assert events[-2].type is ChatEventType.CONTENT_DELTA
        assert "stopped after 3 model invocations" in events[-2].data["delta"]
        assert messages[-1]["role"] == "assistant"
        assert sum(1 for m in messages if m["role"] == "tool") == 3

    async def test_usage_is_summed_across_invocations(self, make_coordinator):
        usage = {"input_tokens": 10, "output_tokens": 5, "reasoning_tokens": 1}
        backend = ScriptedBackend(
            call_turn(ToolCallRequest("c1", "read", {}), usage=usage),
            text_turn("ok", usage=usage),
        )
        coordinator = make_coordinator(backend)

        events = await drain(coordinator, [{"role": "user", "content": "go"}])

        assert events[-1].data["usage"] == {"input_tokens": 20, "output_tokens": 10, "reasoning_tokens": 2}

    async def test_backend_error_ends_turn(self, make_coordinator):
        """Partial text is kept and the turn completes as failed."""
        backend = ScriptedBackend([ChatEvent.content_delta("par"), ChatEvent.error("boom", "StreamProtocolError")])
        coordinator = make_coordinator(backend)
        messages = [{"role": "user", "content": "go"}]

        events = await drain(coordinator, messages)

        assert [e.type for e in events] == [
            ChatEventType.CONTENT_DELTA,
            ChatEventType.ERROR,
            ChatEventType.TURN_COMPLETE,
        ]
        assert events[-1].data["reason"] == "error"
        assert messages[-1] == {"role": "assistant", "content": "par"}

    async def test_pruning_only_affects_the_request(self, make_coordinator):
        """The stored history keeps pruned messages."""
        window = ContextWindowManager(
            ContextWindowConfig(context_window_tokens=100, target_ratio=0.5, tokens_per_char=1.0)
        )
        backend = ScriptedBackend(text_turn("ok"))
        coordinator = make_coordinator(backend, window=window)
        messages = [{"role": "user", "content": "x" * 80}, {"role": "user", "content": "latest"}]

        await drain(coordinator, messages)

        assert backend.invocations[0]["messages"] == [{"role": "user", "content": "latest"}]
        assert len(messages) == 3

    async def test_invalid_iteration_limit(self, make_coordinator):
        with pytest.raises(ValueError):
            make_coordinator(ScriptedBackend(), max_iterations=0)


@pytest.mark.unit
class TestServerMode:
    """Test the turn loop with a server-assisted backend."""

    async def test_pre_calculated_and_approval(self, make_coordinator):
        """Server-executed results are recorded and approvals answered."""
        backend = ScriptedBackend(
            [
                ChatEvent.pre_calculated_tool_response("m1", "lookup", {"q": "x"}, "found", server_label="docs"),
                ChatEvent.approval_request("a1", "publish", {}, server_label="docs"),
                ChatEvent.turn_complete(TurnCompleteReason.TOOL_CALLS),
            ],
            text_turn("Published"),
            mode=ChatMode.SERVER,
        )
        coordinator = make_coordinator(
            backend, store=InMemoryCredentialStore(), decide=lambda name: ApprovalChoice.APPROVE_ONCE
        )
        messages = [{"role": "user", "content": "publish"}]

        events = await drain(coordinator, messages)

        first = backend.invocations[0]
        assert first["tools"] == ["read", "write"]
        assert first["remote_servers"] == ["docs"]

        assistant = messages[1]
        assert assistant["tool_calls"][0]["server_executed"] is True
        assert assistant["tool_calls"][1]["approval_request"] is True
        assert messages[2] == {"role": "tool", "tool_call_id": "m1", "name": "lookup", "content": "found"}
        assert messages[3]["tool_call_id"] == "a1"
        assert messages[3]["approval"] == {"approve": True}

        results = [e.data for e in events if e.type is ChatEventType.TOOL_RESULT]
        assert [r["call_id"] for r in results] == ["a1"]
        assert events[-1].data["reason"] == "stop"

    async def test_denied_approval(self, make_coordinator):
        backend = ScriptedBackend(
            [ChatEvent.approval_request("a1", "publish", {}), ChatEvent.turn_complete(TurnCompleteReason.TOOL_CALLS)],
            text_turn("Okay"),
            mode=ChatMode.SERVER,
        )
        coordinator = make_coordinator(backend, store=InMemoryCredentialStore())
        messages = [{"role": "user", "content": "publish"}]

        await drain(coordinator, messages)

        assert messages[2]["approval"] == {"approve": False}
        assert DENIAL_MARKER in messages[2]["content"]


@pytest.mark.unit
class TestTurnControl:
    """Test single-flight turns and abort."""

    async def test_second_turn_is_rejected_while_busy(self, make_coordinator):
        backend = ScriptedBackend([ChatEvent.content_delta("a"), HANG])
        coordinator = make_coordinator(backend)
        turn = coordinator.run_turn([{"role": "user", "content": "one"}])

        await turn.__anext__()
        assert coordinator.is_busy is True

        with pytest.raises(TurnInProgressError):
            await coordinator.run_turn([{"role": "user", "content": "two"}]).__anext__()

        coordinator.abort()
        rest = [event async for event in turn]
        assert rest[-1].data["reason"] == "aborted"
        assert coordinator.is_busy is False

    async def test_abort_while_streaming(self, make_coordinator):
        """The stream is closed and partial text is kept."""
        backend = ScriptedBackend([ChatEvent.content_delta("partial"), HANG])
        coordinator = make_coordinator(backend)
        messages = [{"role": "user", "content": "go"}]
        events = []

        async for event in coordinator.run_turn(messages):
            events.append(event)
            if event.type is ChatEventType.CONTENT_DELTA:
                coordinator.abort()

        assert events[-1].type is ChatEventType.TURN_COMPLETE
        assert events[-1].data["reason"] == "aborted"
        assert backend.closed == 1
        assert messages[-1] == {"role": "assistant", "content": "partial"}

    async def test_abort_while_tools_run(self, make_coordinator, client_factory):
        """Calls still running are answered with a cancellation result."""

        async def hang(name, arguments):
            await asyncio.sleep(10)

        client_factory.latest("fs").call_result = hang
        backend = ScriptedBackend(call_turn(ToolCallRequest("c1", "read", {})))
        coordinator = make_coordinator(backend)
        messages = [{"role": "user", "content": "go"}]
        events = []

        async for event in coordinator.run_turn(messages):
            events.append(event)
            if event.type is ChatEventType.TOOL_CALL_COMPLETE:
                asyncio.get_running_loop().call_later(0.05, coordinator.abort)

        assert events[-1].data["reason"] == "aborted"
        assert messages[-1] == {
            "role": "tool",
            "tool_call_id": "c1",
            "name": "read",
            "content": CANCELLED_OUTPUT,
        }
        assert len(backend.invocations) == 1

    async def test_abort_without_running_turn_is_ignored(self, make_coordinator):
        coordinator = make_coordinator(ScriptedBackend(text_turn("ok")))

        coordinator.abort()
        events = await drain(coordinator, [{"role": "user", "content": "go"}])

        assert events[-1].data["reason"] == "stop"
