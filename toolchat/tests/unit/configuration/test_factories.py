"""Unit tests for runtime assembly."""

import pytest

from toolchat.configuration.config import Settings
from toolchat.configuration.factories import create_chat_backend, create_chat_runtime
from toolchat.domain.ports.chat_backend import ChatMode
from toolchat.infrastructure.agent.core.llm_stream import LLMStream
from toolchat.infrastructure.agent.core.remote_stream import ResponsesStream
from toolchat.infrastructure.credentials.memory_store import InMemoryCredentialStore


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        CHAT_MODE="client",
        LLM_MODEL="gpt-4o-mini",
        MCP_CREDENTIALS_PATH=str(tmp_path / "credentials.json"),
        CHAT_MAX_TOOL_ITERATIONS=4,
    )


@pytest.mark.unit
class TestFactories:
    """Test backend selection and wiring."""

    def test_client_mode_backend(self, settings):
        backend = create_chat_backend(settings)

        assert isinstance(backend, LLMStream)
        assert backend.config.model == "gpt-4o-mini"

    def test_server_mode_backend(self, settings):
        settings = settings.model_copy(update={"chat_mode": "server", "llm_base_url": "http://llm.test/v1"})

        backend = create_chat_backend(settings)

        assert isinstance(backend, ResponsesStream)
        assert backend.config.base_url == "http://llm.test/v1"

    def test_runtime_wiring(self, settings):
        """Components share one registry and one approval policy."""
        store = InMemoryCredentialStore()
        runtime = create_chat_runtime(
            [{"id": "fs", "type": "stdio", "command": "mcp-fs"}],
            settings=settings,
            credential_store=store,
        )

        assert runtime.registry.server_ids() == ["fs"]
        assert runtime.gateway.registry is runtime.registry
        assert runtime.coordinator.approval is runtime.approval
        assert runtime.coordinator.max_iterations == 4
        assert runtime.coordinator.mode is ChatMode.CLIENT
        assert runtime.credential_store is store

    def test_invalid_server_entry(self, settings):
        with pytest.raises(ValueError):
            create_chat_runtime([{"id": "web", "type": "sse"}], settings=settings)

    async def test_start_and_stop(self, settings):
        """A runtime with no servers starts and stops cleanly."""
        runtime = create_chat_runtime([], settings=settings, credential_store=InMemoryCredentialStore())

        async with runtime:
            assert runtime.registry.statuses() == {}
