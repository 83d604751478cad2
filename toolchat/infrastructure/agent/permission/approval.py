"""Approval policy for tool calls.

Three-level decision per tool:
- APPROVED: auto-approve-all is set, or the tool was approved "always"
- DENIED: the tool carries a stored "never" record
- PROMPT_PENDING: the decision function must be asked

The decision function is supplied by the UI layer and may be a plain
function (run in a worker thread so the event loop keeps serving other
calls) or a coroutine function. Only the call awaiting the decision is
suspended. The UI owns persistence of "always" decisions; the policy only
remembers them for the lifetime of the process.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from toolchat.domain.ports.credential_store import (
    AUTO_APPROVE_ALL_KEY,
    TOOL_APPROVAL_KEY,
    CredentialStorePort,
)

logger = logging.getLogger(__name__)


class ApprovalChoice(str, Enum):
    """Answer of the decision function."""

    APPROVE_ONCE = "approve-once"
    APPROVE_ALWAYS = "approve-always"
    DENY = "deny"

    @classmethod
    def _missing_(cls, value: object) -> "ApprovalChoice | None":
        # Accept "APPROVE_ONCE", "approve_once" and similar spellings.
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class ApprovalDecision(str, Enum):
    """Current approval state of a tool."""

    PROMPT_PENDING = "prompt_pending"
    APPROVED = "approved"
    DENIED = "denied"


DecisionFunction = Callable[[str], "ApprovalChoice | str | Awaitable[ApprovalChoice | str]"]

# Stored per-tool values.
ALWAYS = "always"
NEVER = "never"


def deny_all(tool_name: str) -> ApprovalChoice:
    """Default decision function: nothing runs unapproved."""
    return ApprovalChoice.DENY


class ApprovalPolicy:
    """
    Resolves whether a tool call may run.

    Example:
        policy = ApprovalPolicy(store, decide=ask_user)
        if await policy.resolve("read_file"):
            ...
    """

    def __init__(
        self,
        credential_store: CredentialStorePort,
        decide: DecisionFunction | None = None,
    ) -> None:
        """
        Initialize approval policy.

        Args:
            credential_store: Read-through source of approval records
            decide: UI decision function; denies everything when omitted
        """
        self._store = credential_store
        self._decide: DecisionFunction = decide or deny_all
        self._always_approved: set[str] = set()

    async def current(self, tool_name: str) -> ApprovalDecision:
        """Read the approval state of a tool without prompting."""
        if await self._store.get(AUTO_APPROVE_ALL_KEY) is True:
            return ApprovalDecision.APPROVED
        if tool_name in self._always_approved:
            return ApprovalDecision.APPROVED

        record = await self._store.get(TOOL_APPROVAL_KEY.format(tool_name=tool_name))
        if record == ALWAYS:
            return ApprovalDecision.APPROVED
        if record == NEVER:
            return ApprovalDecision.DENIED
        return ApprovalDecision.PROMPT_PENDING

    async def resolve(self, tool_name: str) -> bool:
        """
        Decide whether a tool call may run, prompting when no scope matches.

        Returns:
            True if approved, False if denied.
        """
        decision = await self.current(tool_name)
        if decision is not ApprovalDecision.PROMPT_PENDING:
            return decision is ApprovalDecision.APPROVED

        choice = await self._ask(tool_name)
        if choice is ApprovalChoice.APPROVE_ALWAYS:
            self._always_approved.add(tool_name)
            logger.info(f"Tool approved for this session: {tool_name}")
        elif choice is ApprovalChoice.DENY:
            logger.warning(f"Tool call denied: {tool_name}")
        return choice is not ApprovalChoice.DENY

    async def _ask(self, tool_name: str) -> ApprovalChoice:
        try:
            if inspect.iscoroutinefunction(self._decide):
                answer = await self._decide(tool_name)
            else:
                answer = await asyncio.to_thread(self._decide, tool_name)
                if inspect.isawaitable(answer):
                    answer = await answer
            return ApprovalChoice(answer)
        except ValueError:
            logger.error(f"Invalid approval answer for {tool_name}, denying")
            return ApprovalChoice.DENY
        except Exception as e:
            logger.error(f"Approval decision failed for {tool_name}: {e}", exc_info=True)
            return ApprovalChoice.DENY
