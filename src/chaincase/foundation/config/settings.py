"""Environment-based configuration using pydantic-settings.

Provides type-safe, validated defaults for batching, logging and retry
from environment variables.

Example:
    >>> from chaincase.foundation.config import get_settings
    >>> settings = get_settings()
    >>> settings.logging.level
    'INFO'

    # Or with environment variables:
    # CHAINCASE_BATCH_MAX_CONCURRENCY=8
    # CHAINCASE_LOG_LEVEL=DEBUG
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, PositiveFloat, PositiveInt, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BatchSettings(BaseSettings):
    """Batch executor defaults."""

    model_config = SettingsConfigDict(
        env_prefix="CHAINCASE_BATCH_",
        extra="ignore",
    )

    max_concurrency: PositiveInt | None = Field(
        default=None,
        description="Default bound on in-flight batch items (None = unbounded)",
    )


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CHAINCASE_LOG_",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json", "none"] = "console"
    include_timestamps: bool = True
    chunks: bool = Field(default=False, description="LoggingCallbackHandler logs every stream chunk")

    @field_validator("level", mode="before")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v


class RetrySettings(BaseSettings):
    """Defaults for ``Runnable.with_retry``."""

    model_config = SettingsConfigDict(
        env_prefix="CHAINCASE_RETRY_",
        extra="ignore",
    )

    max_attempts: Annotated[int, Field(ge=1, le=10)] = 3
    base_delay: PositiveFloat = Field(default=1.0, description="Base delay in seconds")
    max_delay: PositiveFloat = Field(default=30.0, description="Maximum delay in seconds")
    exponential_base: PositiveFloat = Field(default=2.0, description="Exponential backoff base")
    jitter: bool = True


class ChaincaseSettings(BaseSettings):
    """Root settings for chaincase.

    Loads configuration from environment variables with CHAINCASE_ prefix.

    Example environment variables:
        CHAINCASE_DEBUG=true
        CHAINCASE_BATCH_MAX_CONCURRENCY=4
        CHAINCASE_LOG_FORMAT=json
        CHAINCASE_RETRY_MAX_ATTEMPTS=5
    """

    model_config = SettingsConfigDict(
        env_prefix="CHAINCASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    debug: bool = Field(default=False, description="Attach formatted tracebacks to wrapped invocation errors")

    batch: BatchSettings = Field(default_factory=BatchSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)


@lru_cache(maxsize=1)
def get_settings() -> ChaincaseSettings:
    """Get the global settings instance (cached)."""
    return ChaincaseSettings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing).

    After calling this, the next get_settings() call will
    reload configuration from environment.
    """
    get_settings.cache_clear()
