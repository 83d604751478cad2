"""
MCP Configuration Models.

Pydantic models for the persisted server configuration schema:

    {id, type: stdio|sse|streamableHttp, command/args/env | url/headers, oauth?: {...}}

Parsed entries are converted into the immutable ``ServerConfig`` value
object the registry works with.
"""

import logging
from typing import Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from toolchat.domain.model.mcp.server import OAuthRequirement, ServerConfig, TransportType

logger = logging.getLogger(__name__)


class McpOAuthConfig(BaseModel):
    """
    OAuth configuration for remote MCP servers.

    Supports RFC 7591 dynamic client registration when client_id is not provided.
    """

    client_id: str | None = Field(
        default=None,
        description="OAuth client ID. If not provided, dynamic client registration will be attempted",
    )
    client_secret: str | None = Field(
        default=None, description="OAuth client secret (if required by the authorization server)"
    )
    scope: str | None = Field(
        default=None, description="OAuth scopes to request during authorization"
    )


class McpStdioConfig(BaseModel):
    """
    Configuration for a local MCP server (stdio transport).

    Example:
        {
            "id": "fetch",
            "type": "stdio",
            "command": "uvx",
            "args": ["mcp-server-fetch"],
            "env": {"DEBUG": "true"}
        }
    """

    id: str = Field(..., min_length=1)
    type: Literal["stdio"] = "stdio"
    command: str = Field(..., min_length=1, description="Executable to spawn")
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    enabled: bool = Field(default=True, description="Connect this server on startup")


class McpRemoteConfig(BaseModel):
    """
    Configuration for a remote MCP server (SSE or streamable HTTP transport).

    Example:
        {
            "id": "docs",
            "type": "streamableHttp",
            "url": "https://api.example.com/mcp",
            "headers": {"X-Team": "core"},
            "oauth": {"client_id": "my-app"}
        }
    """

    id: str = Field(..., min_length=1)
    type: Literal["sse", "streamableHttp"]
    url: str = Field(..., description="Server endpoint (http:// or https://)")
    headers: dict[str, str] = Field(default_factory=dict)
    oauth: McpOAuthConfig | None = Field(
        default=None, description="OAuth settings; true enables OAuth with dynamic registration"
    )
    enabled: bool = Field(default=True, description="Connect this server on startup")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https://, got {v!r}")
        return v

    @field_validator("oauth", mode="before")
    @classmethod
    def normalize_oauth(cls, value: Any) -> Any:
        if value is True:
            return {}
        if value is False:
            return None
        return value


McpServerEntry = Union[McpStdioConfig, McpRemoteConfig]

_entry_adapter: TypeAdapter[McpServerEntry] = TypeAdapter(McpServerEntry)


def _normalize_type(data: dict[str, Any]) -> dict[str, Any]:
    raw_type = data.get("type", "stdio")
    normalized = TransportType.normalize(str(raw_type)).value
    return {**data, "type": normalized}


def parse_server_config(data: dict[str, Any]) -> ServerConfig:
    """
    Parse one persisted server entry.

    Raises:
        ValueError: If the entry does not match the configuration schema.
    """
    try:
        entry = _entry_adapter.validate_python(_normalize_type(data))
    except ValidationError as e:
        raise ValueError(f"Invalid MCP server config {data.get('id')!r}: {e}") from e

    if isinstance(entry, McpStdioConfig):
        return ServerConfig(
            id=entry.id,
            transport_type=TransportType.STDIO,
            command=entry.command,
            args=tuple(entry.args),
            env=dict(entry.env),
            enabled=entry.enabled,
        )

    oauth = None
    if entry.oauth is not None:
        oauth = OAuthRequirement(
            client_id=entry.oauth.client_id,
            client_secret=entry.oauth.client_secret,
            scope=entry.oauth.scope,
        )
    return ServerConfig(
        id=entry.id,
        transport_type=TransportType(entry.type),
        url=entry.url,
        headers=dict(entry.headers),
        oauth=oauth,
        enabled=entry.enabled,
    )


def parse_server_configs(entries: list[dict[str, Any]]) -> list[ServerConfig]:
    """
    Parse a list of persisted server entries.

    Raises:
        ValueError: If any entry is invalid or two entries share an id.
    """
    configs = [parse_server_config(entry) for entry in entries]
    seen: set[str] = set()
    for config in configs:
        if config.id in seen:
            raise ValueError(f"Duplicate MCP server id: {config.id!r}")
        seen.add(config.id)
    logger.debug(f"Parsed {len(configs)} MCP server configs")
    return configs
