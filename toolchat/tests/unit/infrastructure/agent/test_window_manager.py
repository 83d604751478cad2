"""Unit tests for ContextWindowManager."""

import pytest

from toolchat.infrastructure.agent.context.window_manager import (
    ContextWindowConfig,
    ContextWindowManager,
)


def text(role: str, chars: int) -> dict:
    return {"role": role, "content": "x" * chars}


def call_group(call_id: str, chars: int) -> list[dict]:
    return [
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {"id": call_id, "type": "function", "function": {"name": "read", "arguments": "{}"}}
            ],
        },
        {"role": "tool", "tool_call_id": call_id, "content": "y" * chars},
    ]


@pytest.fixture
def manager():
    # 1 token per char, budget of 100 tokens
    return ContextWindowManager(
        ContextWindowConfig(context_window_tokens=200, target_ratio=0.5, tokens_per_char=1.0)
    )


@pytest.mark.unit
class TestEstimation:
    """Test token estimation."""

    def test_text_and_tool_calls_are_counted(self, manager):
        message = call_group("c1", 0)[0]
        assert manager.estimate_message_tokens(message) == len("read") + len("{}")
        assert manager.estimate_message_tokens(text("user", 40)) == 40

    def test_images_have_flat_cost(self):
        manager = ContextWindowManager(ContextWindowConfig(tokens_per_char=1.0, image_token_cost=85))
        message = {
            "role": "user",
            "content": [
                {"type": "text", "text": "look"},
                {"type": "image_url", "image_url": {"url": "data:..."}},
            ],
        }

        assert manager.estimate_message_tokens(message) == 4 + 85

    def test_invalid_ratio(self):
        with pytest.raises(ValueError):
            ContextWindowConfig(target_ratio=0)


@pytest.mark.unit
class TestPrune:
    """Test oldest-first pruning in whole groups."""

    def test_under_budget_is_untouched(self, manager):
        messages = [text("system", 10), text("user", 20)]

        result = manager.prune(messages)

        assert result.messages == messages
        assert result.messages is not messages
        assert result.was_pruned is False

    def test_oldest_messages_are_removed_first(self, manager):
        """Pruning stops as soon as the estimate fits."""
        messages = [text("user", 60), text("assistant", 30), text("user", 40)]

        result = manager.prune(messages)

        assert result.messages == messages[1:]
        assert result.removed_count == 1
        assert result.estimated_tokens == 70

    def test_system_prompt_is_pinned(self, manager):
        """Leading system messages are never removed."""
        messages = [text("system", 30), text("user", 80), text("user", 50)]

        result = manager.prune(messages)

        assert result.messages == [messages[0], messages[2]]

    def test_tool_call_is_never_separated_from_its_result(self, manager):
        """A call and its result leave the context together."""
        messages = [text("user", 10), *call_group("c1", 80), text("user", 30)]

        result = manager.prune(messages)

        assert result.messages == [messages[-1]]
        assert result.removed_count == 3
        remaining_ids = [m.get("tool_call_id") for m in result.messages]
        assert "c1" not in remaining_ids

    def test_most_recent_group_is_kept_over_budget(self, manager):
        """The last group survives even when it alone exceeds the budget."""
        messages = [text("user", 10), *call_group("c1", 500)]

        result = manager.prune(messages)

        assert result.messages == messages[1:]
        assert result.estimated_tokens > result.token_budget

    def test_input_is_not_modified(self, manager):
        messages = [text("user", 150), text("user", 10)]
        snapshot = list(messages)

        manager.prune(messages)

        assert messages == snapshot
