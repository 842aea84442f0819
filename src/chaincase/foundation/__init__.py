"""Foundation - Core building blocks for runnables.

Contains: core abstractions, errors, configuration, testing fakes.
"""

from __future__ import annotations

from .config import ChaincaseSettings, clear_settings_cache, get_settings
from .core import (
    Runnable,
    RunnableAssign,
    RunnableBinding,
    RunnableConfig,
    RunnableEach,
    RunnableGenerator,
    RunnableLambda,
    RunnablePassthrough,
    coerce_to_runnable,
    ensure_config,
    merge_configs,
    patch_config,
)
from .errors import (
    ChaincaseError,
    CompositionError,
    ErrorCode,
    ErrorContext,
    ErrorTrace,
    FallbacksExhaustedError,
    InvocationCancelledError,
    InvocationError,
    RoutingError,
    classify_exception,
)

__all__ = [
    # Core
    "Runnable", "RunnableBinding", "RunnableLambda", "RunnableGenerator", "RunnablePassthrough",
    "RunnableAssign", "RunnableEach", "coerce_to_runnable",
    "RunnableConfig", "ensure_config", "merge_configs", "patch_config",
    # Errors
    "ErrorCode", "classify_exception", "ErrorContext", "ErrorTrace",
    "ChaincaseError", "InvocationError", "CompositionError", "RoutingError",
    "InvocationCancelledError", "FallbacksExhaustedError",
    # Config
    "ChaincaseSettings", "get_settings", "clear_settings_cache",
]
