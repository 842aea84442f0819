"""Standardized error handling for runnables.

Provides error codes and the exception taxonomy raised by composed units:

- InvocationError: a leaf unit's underlying call failed
- CompositionError / RoutingError: structural misuse of the composition API
- InvocationCancelledError: the caller's cancel token fired or the deadline passed
- FallbacksExhaustedError: every fallback candidate failed

Every ChaincaseError carries an ErrorTrace. Composites stack context onto it
as the error travels outward, so one error surface identifies the failing
stage, branch, or route.
"""

from __future__ import annotations

import traceback
from enum import StrEnum
from functools import lru_cache
from typing import TYPE_CHECKING, Self

from chaincase.foundation.config import get_settings

from .types import ErrorTrace, JsonValue, trace

if TYPE_CHECKING:
    from collections.abc import Sequence


class ErrorCode(StrEnum):
    """Standard error codes for runnable failures.

    Used for programmatic error handling and retry decisions.
    """
    API_KEY_MISSING = "API_KEY_MISSING"
    API_KEY_INVALID = "API_KEY_INVALID"
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    INVALID_INPUT = "INVALID_INPUT"
    PARSE_ERROR = "PARSE_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    COMPOSITION_ERROR = "COMPOSITION_ERROR"
    ROUTE_NOT_FOUND = "ROUTE_NOT_FOUND"
    FALLBACKS_EXHAUSTED = "FALLBACKS_EXHAUSTED"
    UNKNOWN = "UNKNOWN"


# Flattened pattern -> code mapping, checked in order
_PATTERN_CODES: dict[str, ErrorCode] = {
    "timeout": ErrorCode.TIMEOUT,
    "connection": ErrorCode.NETWORK_ERROR,
    "network": ErrorCode.NETWORK_ERROR,
    "rate": ErrorCode.RATE_LIMITED,
    "limit": ErrorCode.RATE_LIMITED,
    "auth": ErrorCode.API_KEY_INVALID,
    "permission": ErrorCode.PERMISSION_DENIED,
    "forbidden": ErrorCode.PERMISSION_DENIED,
    "parse": ErrorCode.PARSE_ERROR,
    "json": ErrorCode.PARSE_ERROR,
    "decode": ErrorCode.PARSE_ERROR,
    "validation": ErrorCode.INVALID_INPUT,
    "value": ErrorCode.INVALID_INPUT,
    "type": ErrorCode.INVALID_INPUT,
    "key": ErrorCode.NOT_FOUND,
    "notfound": ErrorCode.NOT_FOUND,
}
_PATTERN_KEYS = tuple(_PATTERN_CODES.keys())

_RETRYABLE_CODES: frozenset[ErrorCode] = frozenset({
    ErrorCode.RATE_LIMITED,
    ErrorCode.TIMEOUT,
    ErrorCode.NETWORK_ERROR,
    ErrorCode.EXTERNAL_SERVICE_ERROR,
})


@lru_cache(maxsize=256)
def _classify_cached(exc_key: str) -> ErrorCode:
    haystack = exc_key.lower()
    for pattern in _PATTERN_KEYS:
        if pattern in haystack:
            return _PATTERN_CODES[pattern]
    return ErrorCode.EXTERNAL_SERVICE_ERROR


def classify_exception(exc: BaseException) -> ErrorCode:
    """Map exception to error code via pattern matching on name/message."""
    if isinstance(exc, ChaincaseError):
        return exc.code
    return _classify_cached(f"{type(exc).__name__} {exc}")


class ChaincaseError(Exception):
    """Base exception for every failure surfaced by a runnable.

    Attributes:
        trace: ErrorTrace with message, code, and stacked composition contexts
    """

    default_code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        recoverable: bool = True,
        details: str | None = None,
    ) -> None:
        super().__init__(message)
        self.trace: ErrorTrace = trace(
            message,
            code=(code or self.default_code).value,
            recoverable=recoverable,
            details=details,
        )

    @property
    def message(self) -> str:
        return self.trace.message

    @property
    def code(self) -> ErrorCode:
        return ErrorCode(self.trace.error_code) if self.trace.error_code else self.default_code

    @property
    def recoverable(self) -> bool:
        return self.trace.recoverable

    @property
    def is_retryable(self) -> bool:
        """Whether this error is typically retryable (rate limits, timeouts, network)."""
        return self.code in _RETRYABLE_CODES

    @property
    def contexts(self) -> tuple[str, ...]:
        """Composition path as strings, innermost first."""
        return tuple(self.trace.path)

    def with_context(self, operation: str, **metadata: JsonValue) -> Self:
        """Stack a composition context onto this error and return it."""
        self.trace = self.trace.push(operation, **metadata)
        return self

    def __str__(self) -> str:
        return self.trace.format()


class InvocationError(ChaincaseError):
    """A leaf unit's underlying call failed.

    The original exception is kept as ``original`` and as ``__cause__``.
    """

    default_code = ErrorCode.EXTERNAL_SERVICE_ERROR

    def __init__(self, message: str, *, original: BaseException | None = None, **kwargs: object) -> None:
        super().__init__(message, **kwargs)  # type: ignore[arg-type]
        self.original = original

    @classmethod
    def wrap(cls, exc: BaseException, runnable_name: str, *, include_trace: bool | None = None) -> Self:
        """Wrap a raw exception raised inside ``runnable_name``.

        With ``include_trace`` (default: CHAINCASE_DEBUG) the formatted
        traceback is kept in ``trace.details``.
        """
        if include_trace is None:
            include_trace = get_settings().debug
        err = cls(
            f"{runnable_name} failed: {type(exc).__name__}: {exc}",
            original=exc,
            code=classify_exception(exc),
            details="".join(traceback.format_exception(exc)) if include_trace else None,
        )
        err.__cause__ = exc
        return err.with_context(f"invoke:{runnable_name}")


class CompositionError(ChaincaseError):
    """Structural misuse of the composition API."""

    default_code = ErrorCode.COMPOSITION_ERROR

    def __init__(self, message: str, **kwargs: object) -> None:
        kwargs.setdefault("recoverable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class RoutingError(CompositionError):
    """Router received a key with no registered route."""

    default_code = ErrorCode.ROUTE_NOT_FOUND

    def __init__(self, key: object, available: Sequence[str]) -> None:
        self.key = key
        self.available = tuple(available)
        super().__init__(f"No route for key {key!r}; available routes: {', '.join(self.available) or '(none)'}")


class InvocationCancelledError(ChaincaseError):
    """The invocation was cancelled by its cancel token or deadline.

    Signals "the caller gave up", not "the provider failed".
    """

    default_code = ErrorCode.CANCELLED

    def __init__(self, reason: str = "Invocation cancelled", *, code: ErrorCode | None = None) -> None:
        super().__init__(reason, code=code, recoverable=False)

    @classmethod
    def deadline_exceeded(cls) -> Self:
        return cls("Invocation deadline exceeded", code=ErrorCode.TIMEOUT)


class FallbacksExhaustedError(ChaincaseError):
    """Primary and every fallback failed.

    Attributes:
        errors: Every attempt's exception, in the order the candidates were tried
    """

    default_code = ErrorCode.FALLBACKS_EXHAUSTED

    def __init__(self, errors: Sequence[BaseException], name: str = "fallbacks") -> None:
        self.errors = tuple(errors)
        lines = "\n".join(f"- [{i}] {type(e).__name__}: {_first_line(e)}" for i, e in enumerate(self.errors))
        super().__init__(
            f"All {len(self.errors)} candidates of {name} failed",
            recoverable=any(getattr(e, "recoverable", True) for e in self.errors),
            details=lines,
        )
        if self.errors:
            self.__cause__ = self.errors[-1]

    def __str__(self) -> str:
        return self.trace.format(include_details=True)


def _first_line(exc: BaseException) -> str:
    text = str(exc)
    return text.splitlines()[0] if text else ""


def wrap_exception(exc: BaseException, runnable_name: str) -> ChaincaseError:
    """Return ``exc`` if it already is a ChaincaseError, else wrap it as InvocationError."""
    return exc if isinstance(exc, ChaincaseError) else InvocationError.wrap(exc, runnable_name)


def original_exception(exc: BaseException) -> BaseException:
    """Unwrap an InvocationError to the exception the leaf actually raised."""
    if isinstance(exc, InvocationError) and exc.original is not None:
        return exc.original
    return exc
