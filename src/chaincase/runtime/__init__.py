"""Runtime - Composition, execution flow, and monitoring.

Contains: pipeline, agents, batch, retry, concurrency, observability.
"""

from __future__ import annotations

__all__ = [
    # Pipeline
    "RunnableSequence", "RunnableParallel", "RunnableMap", "sequence", "parallel",
    # Agents
    "RouterInput", "RouterRunnable", "router",
    "RunnableWithFallbacks", "fallback",
    # Batch
    "BatchConfig", "BatchItem", "BatchResult", "batch_execute", "batch_execute_detailed", "batch_execute_sync",
    # Retry
    "Backoff", "ExponentialBackoff", "LinearBackoff", "ConstantBackoff",
    "RetryPolicy", "NO_RETRY", "RunnableRetry", "execute_with_retry",
    # Concurrency
    "CancelToken", "guard", "checkpoint", "sleep", "deadline_after", "raise_if_cancelled",
    "run_sync", "iter_sync",
    # Observability
    "CallbackHandler", "CallbackManager", "RunInfo", "RunCollector",
    "BoundLogger", "LogEntry", "LogRenderer", "ConsoleRenderer", "JsonRenderer", "NoOpRenderer",
    "configure_logging", "get_logger", "log_context", "LoggingCallbackHandler",
]

_SUBMODULE_ATTRS: dict[str, frozenset[str]] = {
    "pipeline": frozenset({"RunnableSequence", "RunnableParallel", "RunnableMap", "sequence", "parallel"}),
    "agents": frozenset({"RouterInput", "RouterRunnable", "router", "RunnableWithFallbacks", "fallback"}),
    "batch": frozenset({
        "BatchConfig", "BatchItem", "BatchResult", "batch_execute", "batch_execute_detailed", "batch_execute_sync",
    }),
    "retry": frozenset({
        "Backoff", "ExponentialBackoff", "LinearBackoff", "ConstantBackoff",
        "RetryPolicy", "NO_RETRY", "RunnableRetry", "execute_with_retry",
    }),
    "concurrency": frozenset({
        "CancelToken", "guard", "checkpoint", "sleep", "deadline_after", "raise_if_cancelled",
        "run_sync", "iter_sync",
    }),
    "observability": frozenset({
        "CallbackHandler", "CallbackManager", "RunInfo", "RunCollector",
        "BoundLogger", "LogEntry", "LogRenderer", "ConsoleRenderer", "JsonRenderer", "NoOpRenderer",
        "configure_logging", "get_logger", "log_context", "LoggingCallbackHandler",
    }),
}


def __getattr__(name: str):
    """Lazy imports to avoid circular dependencies."""
    import importlib
    for submodule, attrs in _SUBMODULE_ATTRS.items():
        if name in attrs:
            return getattr(importlib.import_module(f"{__name__}.{submodule}"), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
