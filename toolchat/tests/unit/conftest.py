"""Shared fixtures for unit tests: fake MCP clients and a registry built on them."""

import asyncio
from typing import Any

import pytest

from toolchat.domain.model.mcp.server import ServerConfig
from toolchat.infrastructure.credentials.memory_store import InMemoryCredentialStore
from toolchat.infrastructure.mcp.registry import MCPConnectionRegistry


class FakeMCPClient:
    """Stands in for MCPClient; behavior is set per instance."""

    def __init__(
        self,
        config: ServerConfig,
        tools: list[dict[str, Any]] | None = None,
        connect_error: Exception | None = None,
        list_error: Exception | None = None,
        call_result: Any = None,
        list_delay: float = 0,
    ) -> None:
        self.config = config
        self.tools = tools if tools is not None else [{"name": "read", "description": "Read a file"}]
        self.connect_error = connect_error
        self.list_error = list_error
        self.ping_error: Exception | None = None
        self.call_result = call_result
        self.list_delay = list_delay
        self.list_started = asyncio.Event()
        self.on_tools_changed = None
        self.on_connection_lost = None
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.connect_calls = 0
        self.disconnect_calls = 0

    @property
    def server_id(self) -> str:
        return self.config.id

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error

    async def list_tools(self, timeout: float | None = None) -> list[dict[str, Any]]:
        self.list_started.set()
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.list_error is not None:
            raise self.list_error
        return self.tools

    async def call_tool(
        self, tool_name: str, arguments: dict[str, Any], timeout: float | None = None
    ) -> dict[str, Any]:
        self.calls.append((tool_name, arguments))
        if callable(self.call_result):
            result = self.call_result(tool_name, arguments)
            if hasattr(result, "__await__"):
                result = await result
            return result
        if isinstance(self.call_result, Exception):
            raise self.call_result
        if self.call_result is not None:
            return self.call_result
        return {"content": [{"type": "text", "text": f"{self.config.id}:{tool_name}"}]}

    async def ping(self, timeout: float | None = None) -> None:
        if self.ping_error is not None:
            raise self.ping_error

    async def disconnect(self) -> None:
        self.disconnect_calls += 1


class FakeClientFactory:
    """
    Builds FakeMCPClients from per-server specs.

    ``specs[server_id]`` is a dict of FakeMCPClient keyword arguments, or a
    list of such dicts consumed one per connect attempt (the last repeats).
    """

    def __init__(self) -> None:
        self.specs: dict[str, Any] = {}
        self.created: dict[str, list[FakeMCPClient]] = {}

    def __call__(self, config: ServerConfig) -> FakeMCPClient:
        spec = self.specs.get(config.id, {})
        if isinstance(spec, list):
            spec = spec.pop(0) if len(spec) > 1 else spec[0]
        client = FakeMCPClient(config, **spec)
        self.created.setdefault(config.id, []).append(client)
        return client

    def latest(self, server_id: str) -> FakeMCPClient:
        return self.created[server_id][-1]


@pytest.fixture
def client_factory():
    """Factory of fake MCP clients, configured per test via ``specs``."""
    return FakeClientFactory()


@pytest.fixture
def credential_store():
    """Empty in-memory credential store."""
    return InMemoryCredentialStore()


@pytest.fixture
def make_registry(client_factory):
    """Build a registry over fake clients."""

    def _make(*configs: ServerConfig, **kwargs: Any) -> MCPConnectionRegistry:
        return MCPConnectionRegistry(configs, client_factory=client_factory, **kwargs)

    return _make
