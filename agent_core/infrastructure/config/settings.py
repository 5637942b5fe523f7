from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """Runtime settings for the agent core"""

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")
    service_name: str = Field(default="agent-core", alias="SERVICE_NAME")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    service_version: str = Field(default="unknown", alias="SERVICE_VERSION")

    # Execution
    default_max_steps: int = Field(default=5, alias="AGENT_DEFAULT_MAX_STEPS")
    memory_persist_debounce_ms: int = Field(default=200, alias="AGENT_MEMORY_PERSIST_DEBOUNCE_MS")
    memory_history_limit: int = Field(default=100, alias="AGENT_MEMORY_HISTORY_LIMIT")
    stream_channel_size: int = Field(default=64, alias="AGENT_STREAM_CHANNEL_SIZE")

    # Langfuse
    tracing_enabled: bool = Field(default=False, alias="LANGFUSE_TRACING_ENABLED")
    langfuse_public_key: Optional[str] = Field(default=None, alias="LANGFUSE_PUBLIC_KEY")
    langfuse_secret_key: Optional[str] = Field(default=None, alias="LANGFUSE_SECRET_KEY")
    langfuse_host: str = Field(default="https://cloud.langfuse.com", alias="LANGFUSE_HOST")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )


@lru_cache
def get_settings() -> AgentSettings:
    """Get cached settings instance"""
    return AgentSettings()
