"""Configuration management using pydantic-settings.

Provides environment-based configuration with type safety and validation.
"""

from .settings import (
    BatchSettings,
    ChaincaseSettings,
    LoggingSettings,
    RetrySettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "BatchSettings",
    "ChaincaseSettings",
    "LoggingSettings",
    "RetrySettings",
    "clear_settings_cache",
    "get_settings",
]
