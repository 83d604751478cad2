"""MCP server connection status."""

from dataclasses import dataclass
from enum import Enum


class ServerStatusType(str, Enum):
    """MCP connection status types."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    ERROR = "error"


@dataclass(frozen=True)
class ServerStatus:
    """Status of one configured server, with a reason when in error."""

    status: ServerStatusType
    error: str | None = None

    @classmethod
    def disconnected(cls) -> "ServerStatus":
        return cls(ServerStatusType.DISCONNECTED)

    @classmethod
    def connecting(cls) -> "ServerStatus":
        return cls(ServerStatusType.CONNECTING)

    @classmethod
    def connected(cls) -> "ServerStatus":
        return cls(ServerStatusType.CONNECTED)

    @classmethod
    def authenticating(cls, reason: str | None = None) -> "ServerStatus":
        return cls(ServerStatusType.AUTHENTICATING, reason)

    @classmethod
    def failed(cls, reason: str) -> "ServerStatus":
        return cls(ServerStatusType.ERROR, reason)

    @property
    def is_connected(self) -> bool:
        return self.status is ServerStatusType.CONNECTED

    def __str__(self) -> str:
        if self.error:
            return f"{self.status.value}({self.error})"
        return self.status.value
