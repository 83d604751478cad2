"""
CredentialStorePort - Abstract interface for the external credential store.

Holds OAuth tokens, registered OAuth clients, API keys and per-tool
approval records. The store is owned outside the core; the core only
reads and writes individual keys through this contract.
"""

from abc import abstractmethod
from typing import Any, Protocol, runtime_checkable

# Key conventions shared by the OAuth coordinator and the approval policy.
OAUTH_TOKENS_KEY = "mcp.oauth.{server_id}.tokens"
OAUTH_CLIENT_KEY = "mcp.oauth.{server_id}.client"
TOOL_APPROVAL_KEY = "mcp.approval.tool.{tool_name}"
AUTO_APPROVE_ALL_KEY = "mcp.approval.auto_approve_all"


@runtime_checkable
class CredentialStorePort(Protocol):
    """Simple async key-value store for JSON-serializable values."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """
        Get the value stored under a key.

        Returns:
            The stored value, or None if the key is absent.
        """
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value under a key."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""
        ...
