"""Chat service configuration using Pydantic Settings.

Provides centralized configuration for the chat relay service including:
- Upstream completion settings (base URL, key, model, temperature)
- Conversation store selection and database pool tuning
- Shared HTTP client pool and timeouts
- Relay policies (disconnect handling, commit retries)

Configuration is loaded from environment variables and .env files using
Pydantic Settings. The @lru_cache decorator ensures a single settings
instance is shared across the application.

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class ServiceSettings(BaseSettings):
    """Core service configuration for the chat relay.

    Settings are grouped by category:
    - Upstream: OpenAI-compatible completion endpoint
    - Replies: fallback reply and default thread title
    - Storage: thread store backend and database pool
    - HTTP: shared client pool limits and timeouts
    - Relay: disconnect policy and commit retry budget
    - Server: CORS, logging, bind address

    Example:
        >>> settings = get_settings()
        >>> settings.chat_model
        'gpt-4o-mini'

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore"
    )

    # Upstream completion service
    openai_api_key: Optional[str] = Field(default=None, description="Bearer key for the upstream API")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI-compatible base URL")
    chat_model: str = Field(default="gpt-4o-mini", description="Model used for chat turns")
    chat_temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Sampling temperature for chat turns")
    title_model: str = Field(default="gpt-4o-mini", description="Model used for title generation")

    # Replies
    fallback_reply: str = Field(
        default="Sorry, something went wrong while generating the response.",
        description="Reply used when the upstream call fails or yields nothing"
    )
    default_title: str = Field(default="New Chat", description="Title used when generation fails")

    # Conversation store
    thread_store_backend: Literal["sql", "memory"] = Field(default="sql", description="Thread store backend")
    database_url: str = Field(default="postgresql+asyncpg://localhost/chatdb", description="SQLAlchemy async URL")
    sql_echo: bool = Field(default=False, description="Log SQL statements")
    db_pool_size: int = Field(default=5, description="Persistent connections in the pool")
    db_max_overflow: int = Field(default=10, description="Connections allowed above pool_size")
    db_pool_timeout: int = Field(default=30, description="Seconds to wait for a pooled connection")
    db_pool_recycle: int = Field(default=3600, description="Seconds before a connection is recycled")

    # Shared HTTP client
    http_max_connections: int = Field(default=100)
    http_max_keepalive: int = Field(default=20)
    http_timeout_connect: float = Field(default=5.0)
    http_timeout_read: float = Field(default=120.0)
    http_timeout_write: float = Field(default=30.0)
    http_timeout_pool: float = Field(default=10.0)

    # Relay policies
    relay_continue_on_disconnect: bool = Field(
        default=True,
        description="Keep consuming upstream after the client disconnects"
    )
    commit_max_attempts: int = Field(default=3, ge=1, description="Attempts for the end-of-turn write")
    commit_backoff_base: float = Field(default=0.25, ge=0.0, description="Base delay between commit attempts")

    # Server
    cors_origins: str = Field(default="http://localhost:5173", description="Comma-separated allowed origins")
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)

    def get_cors_origins(self) -> List[str]:
        """Split CORS_ORIGINS into a clean list of origins."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def get_completions_url(self) -> str:
        """Get the upstream chat completions endpoint.

        Returns:
            str: ``{openai_base_url}/chat/completions`` without duplicate slashes
        """
        return f"{self.openai_base_url.rstrip('/')}/chat/completions"


@lru_cache()
def get_settings() -> ServiceSettings:
    """Get cached singleton settings instance.

    Returns:
        ServiceSettings: Cached configuration instance.

    Note:
        To reload settings (e.g., after env changes), call get_settings.cache_clear()
        before calling get_settings() again.

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    return ServiceSettings()
