"""
Configuration Management for Prismo

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All process-level configuration is centralized here.
Per-user AI settings (provider, model, CRAG tuning, data access) are NOT
configuration - they live in the database and are managed by the
SettingsService. This module only holds what the operator sets once per
deployment: database URL, encryption secret, chat limits.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational database configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite+aiosqlite:///./prismo.db",
        description="SQLAlchemy async database URL"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )
    pool_pre_ping: bool = Field(
        default=True,
        description="Check connections before handing them out"
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for transient database errors"
    )

    @field_validator('url')
    @classmethod
    def validate_async_driver(cls, v: str) -> str:
        """The storage layer is fully async, so the URL must name an async driver."""
        if "+" not in v.split("://", 1)[0]:
            raise ValueError(
                "DATABASE_URL must use an async driver, "
                "e.g. sqlite+aiosqlite:// or postgresql+asyncpg://"
            )
        return v


class SecuritySettings(BaseSettings):
    """Secrets used to protect provider API keys at rest."""

    model_config = SettingsConfigDict(
        env_prefix="PRISMO_",
        extra="ignore"
    )

    encryption_secret: Optional[str] = Field(
        default=None,
        description="Master secret for deriving API key encryption keys"
    )
    scrypt_n: int = Field(
        default=16384,
        ge=1024,
        description="scrypt CPU/memory cost parameter (power of two)"
    )

    @field_validator('scrypt_n')
    @classmethod
    def validate_power_of_two(cls, v: int) -> int:
        if v & (v - 1):
            raise ValueError("scrypt_n must be a power of two")
        return v


class ChatSettings(BaseSettings):
    """Limits and tuning for the chat pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        extra="ignore"
    )

    # Request limits
    max_message_length: int = Field(
        default=4000,
        ge=1,
        description="Maximum characters in a user message"
    )
    history_limit: int = Field(
        default=10,
        ge=0,
        le=50,
        description="Previous messages sent to the model as history"
    )
    turn_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Overall deadline for the model call of one turn"
    )
    rate_limit_per_minute: int = Field(
        default=20,
        ge=1,
        description="Chat turns allowed per user per minute"
    )
    title_max_length: int = Field(
        default=50,
        ge=10,
        le=255,
        description="Characters of the first message used as conversation title"
    )

    # Context assembly
    max_context_tokens: int = Field(
        default=8000,
        ge=1000,
        description="Upper bound for the retrieved context block"
    )
    context_token_buffer: int = Field(
        default=500,
        ge=0,
        description="Tokens held back from the context budget"
    )

    # Grading
    min_document_score: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Documents scoring below this are dropped from the context"
    )
    grading_top_k: int = Field(
        default=3,
        ge=1,
        description="Number of best scores averaged into the turn confidence"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    The only group that reads .env; the prefixed groups read the
    process environment.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Root log level"
    )

    # API server
    api_host: str = Field(
        default="127.0.0.1",
        description="Interface uvicorn binds to"
    )
    api_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
    )

    # Streamlit client
    api_base_url: str = Field(
        default="http://localhost:8000/api/ai",
        description="Base URL the Streamlit client calls"
    )

    @property
    def is_production(self) -> bool:
        return self.app_environment.lower() == "production"


class Settings(BaseSettings):
    """
    Root settings container.

    Each group is built on first access, so one broken group does not
    hide the others.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Note: These are loaded lazily to allow partial configuration

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def security(self) -> SecuritySettings:
        return SecuritySettings()

    @property
    def chat(self) -> ChatSettings:
        return ChatSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Process-wide settings, read once.

    Call get_settings.cache_clear() after changing the environment.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Load every group and report which ones fail.

    Returns {group: bool} plus {group}_error with the message of each
    failing group. The client shows it in its sidebar.
    """
    results = {}

    settings = get_settings()

    for name in ("database", "security", "chat", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    # The app runs without a secret, but no API key can be stored
    if results.get("security") and not settings.security.encryption_secret:
        results["security"] = False
        results["security_error"] = "PRISMO_ENCRYPTION_SECRET is not set"

    return results
