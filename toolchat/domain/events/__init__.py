"""Domain events."""

from toolchat.domain.events.chat_events import ChatEvent, ChatEventType, TurnCompleteReason

__all__ = ["ChatEvent", "ChatEventType", "TurnCompleteReason"]
