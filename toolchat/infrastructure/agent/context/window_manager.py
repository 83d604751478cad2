"""
Context Window Manager - keeps the conversation within the model's budget.

Before every model invocation the message list is pruned from the oldest
end, in whole logical groups, until the estimated token count is at or
below a target fraction of the context window.

Groups:
- Leading system messages are pinned and never removed
- An assistant message with tool calls and the tool results answering it
  form one group, so a call is never separated from its result
- Every other message is a group of its own

The most recent group is always kept, even when it alone exceeds the budget.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class ContextWindowConfig:
    """Configuration for context window management."""

    context_window_tokens: int = 128000
    target_ratio: float = 0.5  # prune down to this share of the window

    # Token estimation
    tokens_per_char: float = 0.25
    image_token_cost: int = 85

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not 0 < self.target_ratio <= 1:
            raise ValueError(f"target_ratio must be in (0, 1], got {self.target_ratio}")
        if self.context_window_tokens <= 0:
            raise ValueError("context_window_tokens must be positive")

    @property
    def token_budget(self) -> int:
        return int(self.context_window_tokens * self.target_ratio)


@dataclass
class PruneResult:
    """Result of pruning a message list."""

    messages: list[dict[str, Any]]
    removed_count: int = 0
    estimated_tokens: int = 0
    token_budget: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def was_pruned(self) -> bool:
        return self.removed_count > 0


class ContextWindowManager:
    """
    Prunes conversation history to the token budget.

    Usage:
        manager = ContextWindowManager(ContextWindowConfig(context_window_tokens=32000))
        result = manager.prune(messages)
        # Use result.messages for the model call
    """

    def __init__(self, config: ContextWindowConfig | None = None) -> None:
        self.config = config or ContextWindowConfig()

    def estimate_message_tokens(self, message: dict[str, Any]) -> int:
        """
        Estimate token count for a message.

        ``characters * tokens_per_char`` over text content, tool call names
        and arguments, plus a flat cost per embedded image.
        """
        chars = 0
        images = 0

        content = message.get("content")
        if isinstance(content, str):
            chars += len(content)
        elif isinstance(content, list):
            # Multi-part content (text + images)
            for part in content:
                if not isinstance(part, dict):
                    continue
                if part.get("type") in ("text", "input_text"):
                    chars += len(part.get("text", ""))
                elif part.get("type") in ("image_url", "input_image", "image"):
                    images += 1

        for tool_call in message.get("tool_calls") or []:
            function = tool_call.get("function") or {}
            chars += len(function.get("name") or "")
            chars += len(function.get("arguments") or "")

        chars += len(message.get("name") or "")
        return int(chars * self.config.tokens_per_char) + images * self.config.image_token_cost

    def estimate_messages_tokens(self, messages: list[dict[str, Any]]) -> int:
        """Estimate total token count for messages."""
        return sum(self.estimate_message_tokens(msg) for msg in messages)

    @staticmethod
    def group_messages(
        messages: list[dict[str, Any]],
    ) -> tuple[list[dict[str, Any]], list[list[dict[str, Any]]]]:
        """
        Split messages into pinned leading system messages and removable groups.

        Returns:
            Tuple of (pinned, groups) in original order.
        """
        index = 0
        while index < len(messages) and messages[index].get("role") == "system":
            index += 1
        pinned = list(messages[:index])

        groups: list[list[dict[str, Any]]] = []
        for message in messages[index:]:
            role = message.get("role")
            if role == "tool" and groups:
                # Results join the group of the call they answer
                groups[-1].append(message)
            else:
                groups.append([message])
        return pinned, groups

    def prune(self, messages: list[dict[str, Any]]) -> PruneResult:
        """
        Remove the oldest groups until the estimate fits the budget.

        Args:
            messages: Messages in OpenAI format

        Returns:
            PruneResult; ``messages`` is a new list, the input is untouched.
        """
        budget = self.config.token_budget
        total = self.estimate_messages_tokens(messages)
        if total <= budget:
            return PruneResult(
                messages=list(messages), estimated_tokens=total, token_budget=budget
            )

        pinned, groups = self.group_messages(messages)
        removed = 0
        while len(groups) > 1 and total > budget:
            group = groups.pop(0)
            total -= self.estimate_messages_tokens(group)
            removed += len(group)

        kept = pinned + [message for group in groups for message in group]
        if total > budget:
            logger.warning(
                f"Context still over budget after pruning: {total} > {budget} tokens "
                f"({len(kept)} messages kept)"
            )
        if removed:
            logger.info(f"Pruned {removed} messages from context ({total}/{budget} tokens)")
        return PruneResult(
            messages=kept,
            removed_count=removed,
            estimated_tokens=total,
            token_budget=budget,
        )
