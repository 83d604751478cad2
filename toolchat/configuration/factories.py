"""
Factory functions that assemble the chat runtime from settings.

Nothing here is a module-level singleton: ``create_chat_runtime`` builds a
fresh object graph, ``ChatRuntime.start`` connects it and ``ChatRuntime.stop``
tears it down. Callers pass the runtime (or its parts) explicitly.
"""

import logging
from dataclasses import dataclass
from typing import Any

from toolchat.configuration.config import Settings, get_settings
from toolchat.domain.model.mcp.status import ServerStatus
from toolchat.domain.ports.chat_backend import ChatBackendPort, ChatMode
from toolchat.domain.ports.credential_store import CredentialStorePort
from toolchat.infrastructure.agent.context.window_manager import (
    ContextWindowConfig,
    ContextWindowManager,
)
from toolchat.infrastructure.agent.core.llm_stream import LLMStream, StreamConfig
from toolchat.infrastructure.agent.core.remote_stream import ResponsesConfig, ResponsesStream
from toolchat.infrastructure.agent.permission.approval import ApprovalPolicy, DecisionFunction
from toolchat.infrastructure.agent.processor.processor import ChatCoordinator
from toolchat.infrastructure.agent.tools.gateway import ToolExecutionGateway
from toolchat.infrastructure.credentials.json_file_store import JsonFileCredentialStore
from toolchat.infrastructure.mcp.config import parse_server_configs
from toolchat.infrastructure.mcp.oauth import OAuthCoordinator
from toolchat.infrastructure.mcp.registry import MCPConnectionRegistry

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    """Configure root logging from LOG_LEVEL. Hosts with their own logging setup skip this."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_chat_backend(settings: Settings) -> ChatBackendPort:
    """
    Create the streaming backend for the configured chat mode.

    ``client`` mode streams Chat Completions through LiteLLM; ``server`` mode
    streams a Responses-style endpoint that calls remote MCP servers itself.
    """
    if ChatMode(settings.chat_mode) is ChatMode.SERVER:
        logger.info(f"Using server-assisted chat backend: model={settings.llm_model}")
        return ResponsesStream(
            ResponsesConfig(
                model=settings.llm_model,
                base_url=settings.llm_base_url or ResponsesConfig.base_url,
                api_key=settings.llm_api_key,
                temperature=settings.llm_temperature,
                max_output_tokens=settings.llm_max_tokens,
                timeout=settings.llm_timeout,
            )
        )

    logger.info(f"Using client-executed chat backend: model={settings.llm_model}")
    return LLMStream(
        StreamConfig(
            model=settings.llm_model,
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=int(settings.llm_timeout),
        )
    )


def create_window_manager(settings: Settings) -> ContextWindowManager:
    return ContextWindowManager(
        ContextWindowConfig(
            context_window_tokens=settings.chat_context_window_tokens,
            target_ratio=settings.chat_prune_target_ratio,
            tokens_per_char=settings.chat_tokens_per_char,
            image_token_cost=settings.chat_image_token_cost,
        )
    )


@dataclass
class ChatRuntime:
    """Process-scoped components of one chat application."""

    settings: Settings
    credential_store: CredentialStorePort
    oauth: OAuthCoordinator
    registry: MCPConnectionRegistry
    approval: ApprovalPolicy
    gateway: ToolExecutionGateway
    coordinator: ChatCoordinator

    async def start(self) -> dict[str, ServerStatus]:
        """Connect every configured server and start health checks."""
        statuses = await self.registry.connect_all()
        await self.registry.start()
        connected = sum(1 for status in statuses.values() if status.is_connected)
        logger.info(f"Chat runtime started: {connected}/{len(statuses)} servers connected")
        return statuses

    async def stop(self) -> None:
        """Disconnect every server and release backend resources."""
        await self.registry.stop()
        aclose = getattr(self.coordinator.backend, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info("Chat runtime stopped")

    async def __aenter__(self) -> "ChatRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.stop()


def create_chat_runtime(
    server_entries: list[dict[str, Any]],
    *,
    settings: Settings | None = None,
    decide: DecisionFunction | None = None,
    credential_store: CredentialStorePort | None = None,
    backend: ChatBackendPort | None = None,
) -> ChatRuntime:
    """
    Build the chat runtime.

    Args:
        server_entries: Server configuration dicts as persisted by the host
        settings: Defaults to ``get_settings()``
        decide: Approval decision function of the UI; denies when omitted
        credential_store: Defaults to the JSON file at ``MCP_CREDENTIALS_PATH``
        backend: Overrides the backend chosen by ``CHAT_MODE``

    Returns:
        An unstarted ChatRuntime

    Raises:
        ValueError: If a server entry is invalid
    """
    settings = settings or get_settings()
    store = credential_store or JsonFileCredentialStore(settings.credentials_file)

    oauth = OAuthCoordinator(
        store,
        callback_base_port=settings.mcp_oauth_callback_base_port,
        callback_timeout=settings.mcp_oauth_callback_timeout,
        client_name=settings.mcp_oauth_client_name,
    )
    registry = MCPConnectionRegistry(
        parse_server_configs(server_entries),
        oauth=oauth,
        health_check_interval_seconds=settings.mcp_health_check_interval,
        request_timeout=settings.mcp_request_timeout,
        connect_timeout=settings.mcp_connect_timeout,
        max_reconnect_attempts=settings.mcp_max_reconnect_attempts,
    )
    approval = ApprovalPolicy(store, decide=decide)
    gateway = ToolExecutionGateway(
        registry,
        approval,
        timeout=settings.mcp_tool_call_timeout,
        max_output_chars=settings.mcp_tool_output_max_chars,
    )
    coordinator = ChatCoordinator(
        backend or create_chat_backend(settings),
        registry,
        gateway,
        approval,
        window=create_window_manager(settings),
        max_iterations=settings.chat_max_tool_iterations,
    )
    return ChatRuntime(
        settings=settings,
        credential_store=store,
        oauth=oauth,
        registry=registry,
        approval=approval,
        gateway=gateway,
        coordinator=coordinator,
    )
