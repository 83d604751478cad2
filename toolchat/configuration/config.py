"""Configuration management for toolchat."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # MCP Connection Settings
    mcp_health_check_interval: float = Field(default=60.0, alias="MCP_HEALTH_CHECK_INTERVAL")
    mcp_request_timeout: float = Field(default=30.0, alias="MCP_REQUEST_TIMEOUT")
    mcp_connect_timeout: float = Field(default=30.0, alias="MCP_CONNECT_TIMEOUT")
    mcp_max_reconnect_attempts: int = Field(default=3, alias="MCP_MAX_RECONNECT_ATTEMPTS")

    # Tool Execution Settings
    mcp_tool_call_timeout: float = Field(default=120.0, alias="MCP_TOOL_CALL_TIMEOUT")
    mcp_tool_output_max_chars: int = Field(default=20000, alias="MCP_TOOL_OUTPUT_MAX_CHARS")

    # OAuth Settings
    mcp_oauth_callback_base_port: int = Field(default=19876, alias="MCP_OAUTH_CALLBACK_BASE_PORT")
    mcp_oauth_callback_timeout: float = Field(default=300.0, alias="MCP_OAUTH_CALLBACK_TIMEOUT")
    mcp_oauth_client_name: str = Field(default="toolchat", alias="MCP_OAUTH_CLIENT_NAME")

    # Credential Storage
    mcp_credentials_path: str = Field(
        default="~/.toolchat/credentials.json", alias="MCP_CREDENTIALS_PATH"
    )

    # Chat Settings
    chat_mode: Literal["client", "server"] = Field(default="client", alias="CHAT_MODE")
    chat_max_tool_iterations: int = Field(default=10, alias="CHAT_MAX_TOOL_ITERATIONS")
    chat_context_window_tokens: int = Field(default=128000, alias="CHAT_CONTEXT_WINDOW_TOKENS")
    chat_prune_target_ratio: float = Field(default=0.5, alias="CHAT_PRUNE_TARGET_RATIO")
    chat_tokens_per_char: float = Field(default=0.25, alias="CHAT_TOKENS_PER_CHAR")
    chat_image_token_cost: int = Field(default=85, alias="CHAT_IMAGE_TOKEN_COST")

    # LLM Settings
    llm_model: str = Field(default="gpt-4o-mini", alias="LLM_MODEL")
    llm_api_key: str | None = Field(default=None, alias="LLM_API_KEY")
    llm_base_url: str | None = Field(default=None, alias="LLM_BASE_URL")
    llm_temperature: float = Field(default=0.0, alias="LLM_TEMPERATURE")
    llm_max_tokens: int = Field(default=4096, alias="LLM_MAX_TOKENS")
    llm_timeout: float = Field(default=600.0, alias="LLM_TIMEOUT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("chat_prune_target_ratio")
    @classmethod
    def validate_prune_ratio(cls, v: float) -> float:
        """Prune target must be a fraction of the context window."""
        if not 0.0 < v <= 1.0:
            raise ValueError(f"CHAT_PRUNE_TARGET_RATIO must be in (0, 1], got {v}")
        return v

    @field_validator("chat_max_tool_iterations", "mcp_tool_output_max_chars")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Value must be positive, got {v}")
        return v

    @field_validator("chat_mode", mode="before")
    @classmethod
    def normalize_chat_mode(cls, value: str | None) -> str:
        """Normalize chat mode value from environment."""
        if value is None:
            return "client"
        normalized = str(value).strip().lower()
        if normalized in {"client", "server"}:
            return normalized
        raise ValueError("CHAT_MODE must be one of: client, server")

    @property
    def credentials_file(self) -> Path:
        """Get the expanded credential store path."""
        return Path(self.mcp_credentials_path).expanduser()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
