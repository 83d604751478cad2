"""Tool approval policy."""

from .approval import (
    ApprovalChoice,
    ApprovalDecision,
    ApprovalPolicy,
    DecisionFunction,
    deny_all,
)

__all__ = [
    "ApprovalChoice",
    "ApprovalDecision",
    "ApprovalPolicy",
    "DecisionFunction",
    "deny_all",
]
