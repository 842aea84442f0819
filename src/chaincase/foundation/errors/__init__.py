"""Unified error handling for chaincase.

- ErrorCode: Standard error codes for runnable failures
- ChaincaseError and subclasses: the exception taxonomy of composed units
- ErrorTrace/ErrorContext: Error context stacking and provenance tracking
"""

from .errors import (
    ChaincaseError,
    CompositionError,
    ErrorCode,
    FallbacksExhaustedError,
    InvocationCancelledError,
    InvocationError,
    RoutingError,
    classify_exception,
    original_exception,
    wrap_exception,
)
from .types import (
    ErrorContext,
    ErrorTrace,
    JsonDict,
    JsonValue,
    context,
    trace,
)

__all__ = [
    # Codes
    "ErrorCode", "classify_exception",
    # Exceptions
    "ChaincaseError", "InvocationError", "CompositionError", "RoutingError",
    "InvocationCancelledError", "FallbacksExhaustedError",
    "wrap_exception", "original_exception",
    # Error context
    "ErrorContext", "ErrorTrace", "context", "trace",
    "JsonDict", "JsonValue",
]
