"""Conversation turn processing."""

from toolchat.infrastructure.agent.processor.processor import (
    CANCELLED_OUTPUT,
    DEFAULT_MAX_ITERATIONS,
    ITERATION_LIMIT_NOTICE,
    ChatCoordinator,
)

__all__ = [
    "CANCELLED_OUTPUT",
    "ChatCoordinator",
    "DEFAULT_MAX_ITERATIONS",
    "ITERATION_LIMIT_NOTICE",
]
