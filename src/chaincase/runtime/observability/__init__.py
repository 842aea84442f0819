"""Observability for runnables: run lifecycle callbacks and structured logging."""

from .callbacks import CallbackHandler, CallbackManager, RunCollector, RunInfo
from .logging import (
    BoundLogger,
    ConsoleRenderer,
    JsonRenderer,
    LogEntry,
    LoggingCallbackHandler,
    LogRenderer,
    NoOpRenderer,
    configure_logging,
    get_logger,
    log_context,
)

__all__ = [
    # Callbacks
    "CallbackHandler", "CallbackManager", "RunInfo", "RunCollector",
    # Logging
    "BoundLogger", "LogEntry", "LogRenderer", "ConsoleRenderer", "JsonRenderer", "NoOpRenderer",
    "configure_logging", "get_logger", "log_context", "LoggingCallbackHandler",
]
