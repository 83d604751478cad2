"""
MCP Server Domain Models.

Defines transport protocol types and the immutable server configuration
value object consumed by the connection registry.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class TransportType(str, Enum):
    """MCP transport protocol types."""

    STDIO = "stdio"  # spawned local process
    SSE = "sse"  # legacy GET event stream + POST endpoint
    STREAMABLE_HTTP = "streamableHttp"  # POST with JSON or event-stream reply

    @classmethod
    def normalize(cls, value: str) -> "TransportType":
        """Normalize transport type string to enum."""
        normalized = value.strip()
        aliases = {
            "local": cls.STDIO,
            "stdio": cls.STDIO,
            "sse": cls.SSE,
            "http": cls.STREAMABLE_HTTP,
            "streamablehttp": cls.STREAMABLE_HTTP,
            "streamable-http": cls.STREAMABLE_HTTP,
            "streamable_http": cls.STREAMABLE_HTTP,
        }
        try:
            return aliases[normalized.lower()]
        except KeyError:
            raise ValueError(f"Unsupported MCP transport type: {value!r}") from None

    @property
    def is_remote(self) -> bool:
        return self is not TransportType.STDIO


@dataclass(frozen=True)
class OAuthRequirement:
    """OAuth settings for a remote server. Empty client_id means dynamic registration."""

    client_id: str | None = None
    client_secret: str | None = None
    scope: str | None = None


@dataclass(frozen=True)
class ServerConfig:
    """
    MCP server configuration value object.

    Immutable once connected; the registry only accepts a replacement
    while the server is disconnected.
    """

    id: str
    transport_type: TransportType

    # stdio
    command: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)

    # sse / streamableHttp
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    oauth: OAuthRequirement | None = None
    enabled: bool = True

    def __post_init__(self):
        """Validate configuration based on transport type."""
        if not self.id:
            raise ValueError("Server id is required")
        if self.transport_type is TransportType.STDIO:
            if not self.command:
                raise ValueError(f"Command is required for stdio server '{self.id}'")
        elif not self.url:
            raise ValueError(
                f"URL is required for {self.transport_type.value} server '{self.id}'"
            )

    @property
    def requires_oauth(self) -> bool:
        return self.oauth is not None

    def with_headers(self, extra: dict[str, str]) -> "ServerConfig":
        """Return a copy with additional HTTP headers merged over the configured ones."""
        if not extra:
            return self
        return replace(self, headers={**self.headers, **extra})

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted configuration shape."""
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.transport_type.value,
            "enabled": self.enabled,
        }
        if self.transport_type is TransportType.STDIO:
            data.update({"command": self.command, "args": list(self.args), "env": dict(self.env)})
        else:
            data.update({"url": self.url, "headers": dict(self.headers)})
        if self.oauth is not None:
            data["oauth"] = {
                "client_id": self.oauth.client_id,
                "client_secret": self.oauth.client_secret,
                "scope": self.oauth.scope,
            }
        return data

    @classmethod
    def stdio(
        cls,
        server_id: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> "ServerConfig":
        """Create a local process server config."""
        return cls(
            id=server_id,
            transport_type=TransportType.STDIO,
            command=command,
            args=tuple(args or ()),
            env=dict(env or {}),
        )

    @classmethod
    def remote(
        cls,
        server_id: str,
        url: str,
        transport_type: TransportType = TransportType.STREAMABLE_HTTP,
        headers: dict[str, str] | None = None,
        oauth: OAuthRequirement | None = None,
    ) -> "ServerConfig":
        """Create an SSE or streamable HTTP server config."""
        return cls(
            id=server_id,
            transport_type=transport_type,
            url=url,
            headers=dict(headers or {}),
            oauth=oauth,
        )
