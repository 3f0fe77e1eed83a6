"""Configuration management for the chat backend.

Supports a YAML configuration file with environment variable overrides.
Configuration is loaded once and cached.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseSettings):
    """Model provider configuration."""
    provider: str = Field(default="anthropic", description="LLM provider: anthropic, mock")
    model: str = Field(default="claude-3-5-sonnet-latest", description="Model name")
    api_key: Optional[str] = Field(default=None, description="API key, falls back to ANTHROPIC_API_KEY")
    api_base: Optional[str] = Field(default=None, description="API base URL")
    max_tokens: int = Field(default=2000, gt=0)
    default_prompt_type: str = Field(default="standardAssistant")
    prompts_path: Optional[str] = Field(default=None, description="Override for the packaged prompt table")

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore"
    )


class StorageSettings(BaseSettings):
    """Message store configuration."""
    backend: str = Field(default="memory", description="Store backend: memory, postgres")
    dsn: Optional[str] = Field(default=None, description="PostgreSQL connection string")
    min_pool_size: int = Field(default=1, ge=1)
    max_pool_size: int = Field(default=10, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        env_file=".env",
        extra="ignore"
    )


class MCPSettings(BaseSettings):
    """Tool gateway configuration."""
    timeout: float = Field(default=30.0, gt=0)
    storefront_path: str = Field(default="/api/mcp")
    customer_path: str = Field(default="/customer/api/mcp")

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        extra="ignore"
    )


class OrchestratorSettings(BaseSettings):
    """Chat orchestrator configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Turn loop
    max_turns: int = Field(default=10, gt=0, description="Model calls allowed per request")

    # Customer account lookup through the storefront API
    storefront_api_version: str = Field(default="2025-04")
    storefront_access_token: Optional[str] = Field(default=None)

    # Headers advertised to the storefront widget on streamed responses
    cors_allowed_headers: str = Field(
        default=(
            "X-CSRF-Token, X-Requested-With, Accept, Accept-Version, Content-Length, "
            "Content-MD5, Content-Type, Date, X-Api-Version"
        )
    )

    # User-facing error strings
    missing_message_error: str = Field(default="Message is required")
    unsupported_request_error: str = Field(
        default="This endpoint only supports server-sent events (SSE) requests or history requests."
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    llm: LLMSettings = Field(default_factory=LLMSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    mcp: MCPSettings = Field(default_factory=MCPSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)

    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file, returning an empty mapping if absent."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("CHAT_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
