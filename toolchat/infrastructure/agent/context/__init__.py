"""Context window management."""

from .window_manager import ContextWindowConfig, ContextWindowManager, PruneResult

__all__ = ["ContextWindowConfig", "ContextWindowManager", "PruneResult"]
