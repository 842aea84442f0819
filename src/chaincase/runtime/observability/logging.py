"""Structured logging for runnable execution with context propagation.

- Bound key-value context (runnable name, run ids, tags)
- Human-readable dev output, JSON Lines for production
- LoggingCallbackHandler: logs the run lifecycle of any composition

Quick Start:
    >>> from chaincase.runtime.observability import configure_logging, get_logger
    >>>
    >>> configure_logging(format="console")  # or "json"; defaults from CHAINCASE_LOG_*
    >>> log = get_logger("my-service")
    >>> log.info("processing request", user_id=123)

    >>> # Log every run of a chain
    >>> await chain.ainvoke(question, {"callbacks": [LoggingCallbackHandler()]})
"""

from __future__ import annotations

import logging
import sys
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, TextIO, runtime_checkable

from chaincase.foundation.errors import ChaincaseError, JsonDict, JsonValue

from .callbacks import CallbackHandler, RunInfo

if TYPE_CHECKING:
    from types import TracebackType

# Context var for bound context (persists across async calls)
_log_context: ContextVar[JsonDict] = ContextVar("log_context", default={})


# ─────────────────────────────────────────────────────────────────────────────
# Logger
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True)
class BoundLogger:
    """Structured logger with bound context. Immutable - bind() returns a new logger with merged context.

    Example:
        >>> log = BoundLogger(context={"service": "api"})
        >>> log.info("request received", path="/users")
        # => 10:30:45.123 [info] request received path="/users" service="api"
    """

    context: JsonDict = field(default_factory=dict)
    _renderer: LogRenderer | None = None
    _level: int = logging.DEBUG

    def bind(self, **kw: JsonValue) -> BoundLogger:
        """Create new logger with additional bound context."""
        return BoundLogger(context={**self.context, **kw}, _renderer=self._renderer, _level=self._level)

    def bind_run(self, run: RunInfo, **kw: JsonValue) -> BoundLogger:
        """Bind run identity (name, run_id, parent_run_id)."""
        ctx: JsonDict = {"runnable": run.name, "run_id": str(run.run_id)}
        if run.parent_run_id is not None:
            ctx["parent_run_id"] = str(run.parent_run_id)
        return self.bind(**ctx, **kw)

    def unbind(self, *keys: str) -> BoundLogger:
        """Create new logger without specified keys."""
        return BoundLogger(context={k: v for k, v in self.context.items() if k not in keys},
                           _renderer=self._renderer, _level=self._level)

    def _log(self, level: int, event: str, **kw: JsonValue) -> None:
        if level < self._level:
            return
        # Merge contexts: scoped -> bound -> call-site
        merged = {**_log_context.get(), **self.context, **kw}
        (self._renderer or _get_renderer()).render(LogEntry(time.time(), _level_name(level), event, merged))

    def debug(self, event: str, **kw: JsonValue) -> None: self._log(logging.DEBUG, event, **kw)
    def info(self, event: str, **kw: JsonValue) -> None: self._log(logging.INFO, event, **kw)
    def warning(self, event: str, **kw: JsonValue) -> None: self._log(logging.WARNING, event, **kw)
    def error(self, event: str, **kw: JsonValue) -> None: self._log(logging.ERROR, event, **kw)


@dataclass(slots=True)
class LogEntry:
    """Immutable log entry with all context."""

    timestamp: float
    level: str
    event: str
    context: JsonDict

    @property
    def ts_iso(self) -> str:
        return datetime.fromtimestamp(self.timestamp, tz=UTC).isoformat()

    @property
    def ts_human(self) -> str:
        """HH:MM:SS.mmm"""
        return datetime.fromtimestamp(self.timestamp, tz=UTC).strftime("%H:%M:%S.%f")[:-3]


# ─────────────────────────────────────────────────────────────────────────────
# Renderers
# ─────────────────────────────────────────────────────────────────────────────


@runtime_checkable
class LogRenderer(Protocol):
    """Protocol for log output renderers."""

    def render(self, entry: LogEntry) -> None: ...


@dataclass(slots=True)
class ConsoleRenderer:
    """Human-readable colored console output. Format: timestamp [level] event key=value ...

    A ``details`` entry (failure listings, debug tracebacks) is printed below the line.
    """

    output: TextIO = field(default_factory=lambda: sys.stderr)
    colors: bool | None = None  # None = auto-detect
    show_timestamp: bool = True

    def __post_init__(self) -> None:
        if self.colors is None:
            self.colors = getattr(self.output, "isatty", lambda: False)()

    def render(self, entry: LogEntry) -> None:
        c = _COLORS if self.colors else _NO_COLORS
        parts = ([f"{c['dim']}{entry.ts_human}{c['reset']}"] if self.show_timestamp else [])
        parts += [f"{_LEVEL_COLORS.get(entry.level, c['dim']) if self.colors else ''}[{entry.level}]{c['reset']}",
                  f"{c['bold']}{entry.event}{c['reset']}"]
        parts += [f"{c['cyan']}{k}{c['reset']}={_format_value(v, c)}"
                  for k, v in sorted(entry.context.items()) if k != "details"]
        print(" ".join(parts), file=self.output)
        if "details" in entry.context:
            print(f"{c['red']}{entry.context['details']}{c['reset']}", file=self.output)


@dataclass(slots=True)
class JsonRenderer:
    """JSON Lines output for log aggregation."""

    output: TextIO = field(default_factory=lambda: sys.stdout)
    include_timestamp: bool = True

    def render(self, entry: LogEntry) -> None:
        import orjson
        head: JsonDict = {"timestamp": entry.ts_iso} if self.include_timestamp else {}
        print(orjson.dumps({**head, "level": entry.level, "event": entry.event, **entry.context},
                           option=orjson.OPT_NON_STR_KEYS, default=str).decode(), file=self.output)


@dataclass(slots=True)
class NoOpRenderer:
    """Silent renderer for testing."""

    def render(self, entry: LogEntry) -> None:
        pass


# ─────────────────────────────────────────────────────────────────────────────
# Global Configuration
# ─────────────────────────────────────────────────────────────────────────────


_renderer: ContextVar[LogRenderer | None] = ContextVar("log_renderer", default=None)
_default_level: ContextVar[int | None] = ContextVar("log_level", default=None)


def configure_logging(
    format: str | None = None,  # noqa: A002 - shadows builtin but matches stdlib
    level: str | None = None,
    *,
    output: TextIO | None = None,
    colors: bool | None = None,
) -> LogRenderer:
    """Configure global structured logging. Format: "console" (human), "json" (machine), "none".

    Unset arguments fall back to ``CHAINCASE_LOG_FORMAT`` / ``CHAINCASE_LOG_LEVEL``.
    """
    from chaincase.foundation.config import get_settings
    settings = get_settings().logging
    format, level = format or settings.format, level or settings.level
    _default_level.set(getattr(logging, level.upper(), logging.INFO))
    match format:
        case "console":
            renderer: LogRenderer = ConsoleRenderer(output=output or sys.stderr, colors=colors,
                                                    show_timestamp=settings.include_timestamps)
        case "json": renderer = JsonRenderer(output=output or sys.stdout, include_timestamp=settings.include_timestamps)
        case "none": renderer = NoOpRenderer()
        case _: raise ValueError(f"Unknown format: {format}. Use 'console', 'json', or 'none'")
    _renderer.set(renderer)
    return renderer


def get_logger(name: str | None = None, **initial_context: JsonValue) -> BoundLogger:
    """Get a structured logger with optional initial context. Name is added to context as 'logger'."""
    ctx = {**initial_context, **({"logger": name} if name else {})}
    return BoundLogger(context=ctx, _level=_resolve_level())


def _resolve_level() -> int:
    if (level := _default_level.get()) is not None:
        return level
    from chaincase.foundation.config import get_settings
    return getattr(logging, get_settings().logging.level, logging.INFO)


def _get_renderer() -> LogRenderer:
    """Get configured renderer or create default."""
    if (renderer := _renderer.get()) is None:
        _renderer.set(renderer := ConsoleRenderer())
    return renderer


class log_context:
    """Context manager for scoped logging context.

    Example:
        >>> with log_context(request_id="abc123"):
        ...     log.info("processing")  # includes request_id
        >>> log.info("done")  # no longer includes it
    """

    __slots__ = ("_ctx", "_token")

    def __init__(self, **kw: JsonValue) -> None:
        self._ctx: JsonDict = dict(kw)
        self._token: object | None = None

    def __enter__(self) -> log_context:
        self._token = _log_context.set({**_log_context.get(), **self._ctx})
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _log_context.reset(self._token)  # type: ignore[arg-type]


# ─────────────────────────────────────────────────────────────────────────────
# Run lifecycle handler
# ─────────────────────────────────────────────────────────────────────────────


class LoggingCallbackHandler(CallbackHandler):
    """Logs run start/end/error through a BoundLogger.

    Chunks are logged at debug level only when ``log_chunks`` is set
    (default: CHAINCASE_LOG_CHUNKS).

    Example:
        >>> handler = LoggingCallbackHandler(get_logger("qa"))
        >>> chain.invoke("question", {"callbacks": [handler]})
        # => 10:30:45.120 [debug] run started runnable="RunnableSequence" ...
        # => 10:30:45.410 [info] run completed duration_ms=290.1 runnable="RunnableSequence" ...
    """

    def __init__(self, log: BoundLogger | None = None, *, log_chunks: bool | None = None) -> None:
        from chaincase.foundation.config import get_settings
        self.log = log or get_logger("chaincase.runs")
        self.log_chunks = get_settings().logging.chunks if log_chunks is None else log_chunks

    def on_start(self, run: RunInfo) -> None:
        self.log.bind_run(run).debug("run started", tags=list(run.tags))

    def on_end(self, run: RunInfo) -> None:
        self.log.bind_run(run).info("run completed", duration_ms=run.duration_ms)

    def on_error(self, run: RunInfo) -> None:
        err = run.error
        kw: JsonDict = {"duration_ms": run.duration_ms, "error": _first_line(err)}
        if isinstance(err, ChaincaseError):
            kw["error_code"] = err.code.value
            kw["contexts"] = list(err.contexts)
            if err.trace.details:
                kw["details"] = err.trace.details
        self.log.bind_run(run).error("run failed", **kw)

    def on_stream_chunk(self, run: RunInfo, chunk: object) -> None:
        if self.log_chunks:
            self.log.bind_run(run).debug("chunk", chunk=repr(chunk))


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


_COLORS = {
    "reset": "\033[0m",
    "bold": "\033[1m",
    "dim": "\033[2m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "cyan": "\033[36m",
    "white": "\033[37m",
}

_NO_COLORS = {k: "" for k in _COLORS}

_LEVEL_COLORS = {
    "debug": _COLORS["dim"],
    "info": _COLORS["green"],
    "warning": _COLORS["yellow"],
    "error": _COLORS["red"],
}


def _level_name(level: int) -> str:
    return logging.getLevelName(level).lower()


def _first_line(exc: BaseException | None) -> str:
    if exc is None:
        return ""
    text = str(exc)
    return f"{type(exc).__name__}: {text.splitlines()[0] if text else ''}"


def _format_value(v: object, c: dict[str, str]) -> str:
    """Format a value for console output."""
    if isinstance(v, str):
        return f'{c["yellow"]}"{v}"{c["reset"]}'
    if isinstance(v, bool):
        return f'{c["blue"]}{str(v).lower()}{c["reset"]}'
    if isinstance(v, (int, float)):
        return f'{c["blue"]}{v}{c["reset"]}'
    if isinstance(v, dict):
        return f'{c["dim"]}{{{len(v)} items}}{c["reset"]}'
    if isinstance(v, (list, tuple)):
        return f'{c["dim"]}[{len(v)} items]{c["reset"]}'
    return f'{c["white"]}{v!r}{c["reset"]}'
