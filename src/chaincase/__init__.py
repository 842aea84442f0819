"""Chaincase - Composable, streaming-first runnables for LLM pipelines.

Every unit of work is a Runnable with one uniform surface (invoke, batch,
stream, transform) in async and sync flavors. Units compose into sequences,
parallel maps, routers and fallback chains that are runnables themselves.

Quick Start:
    >>> from chaincase import RunnableLambda
    >>>
    >>> double = RunnableLambda(lambda x: x * 2)
    >>> chain = double | (lambda x: x + 1)
    >>> chain.invoke(3)
    7
    >>> chain.batch([1, 2, 3])
    [3, 5, 7]

Parallel maps and routing:
    >>> from chaincase import RunnablePassthrough, router
    >>>
    >>> fan_out = {"original": RunnablePassthrough(), "doubled": double} | format_answer
    >>> by_subject = router(math=math_chain, english=english_chain)
    >>> by_subject.invoke({"key": "math", "input": "2 + 2"})

Resilience:
    >>> model = primary_model.with_retry(max_attempts=3).with_fallbacks([backup_model])

Streaming:
    >>> async for chunk in (prompt | model | parser).astream({"topic": "owls"}):
    ...     print(chunk, end="")

Cancellation and observability:
    >>> from chaincase import CancelToken, RunCollector
    >>>
    >>> token, collector = CancelToken(), RunCollector()
    >>> chain.invoke(3, {"cancel_token": token, "callbacks": [collector], "tags": ["demo"]})
"""

from __future__ import annotations

__version__ = "0.1.0"

# Core
from .foundation.core import (
    Runnable,
    RunnableAssign,
    RunnableBinding,
    RunnableEach,
    RunnableGenerator,
    RunnableLambda,
    RunnableLike,
    RunnablePassthrough,
    coerce_to_runnable,
)

# Config
from .foundation.core import (
    RunnableConfig,
    ensure_config,
    get_config_list,
    merge_configs,
    patch_config,
    with_timeout,
)
from .foundation.config import ChaincaseSettings, clear_settings_cache, get_settings

# Errors
from .foundation.errors import (
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

# Pipeline composition
from .runtime.pipeline import (
    RunnableMap,
    RunnableParallel,
    RunnableSequence,
    parallel,
    sequence,
)

# Dispatch
from .runtime.agents import (
    RouterInput,
    RouterRunnable,
    RunnableWithFallbacks,
    fallback,
    router,
)

# Retry policies
from .runtime.retry import (
    NO_RETRY,
    Backoff,
    ConstantBackoff,
    ExponentialBackoff,
    LinearBackoff,
    RetryPolicy,
    RunnableRetry,
)

# Batch
from .runtime.batch import BatchConfig, BatchResult, batch_execute, batch_execute_detailed

# Concurrency
from .runtime.concurrency import CancelToken, checkpoint

# Observability
from .runtime.observability import (
    CallbackHandler,
    LoggingCallbackHandler,
    RunCollector,
    RunInfo,
    configure_logging,
    get_logger,
)

__all__ = [
    # Version
    "__version__",
    # Core
    "Runnable",
    "RunnableBinding",
    "RunnableLike",
    "RunnableLambda",
    "RunnableGenerator",
    "RunnablePassthrough",
    "RunnableAssign",
    "RunnableEach",
    "coerce_to_runnable",
    # Config
    "RunnableConfig",
    "ensure_config",
    "merge_configs",
    "patch_config",
    "get_config_list",
    "with_timeout",
    "ChaincaseSettings",
    "get_settings",
    "clear_settings_cache",
    # Errors
    "ErrorCode",
    "ErrorContext",
    "ErrorTrace",
    "ChaincaseError",
    "InvocationError",
    "CompositionError",
    "RoutingError",
    "InvocationCancelledError",
    "FallbacksExhaustedError",
    "classify_exception",
    # Pipeline composition
    "RunnableSequence",
    "RunnableParallel",
    "RunnableMap",
    "sequence",
    "parallel",
    # Dispatch
    "RouterInput",
    "RouterRunnable",
    "router",
    "RunnableWithFallbacks",
    "fallback",
    # Retry policies
    "Backoff",
    "ExponentialBackoff",
    "LinearBackoff",
    "ConstantBackoff",
    "RetryPolicy",
    "RunnableRetry",
    "NO_RETRY",
    # Batch
    "BatchConfig",
    "BatchResult",
    "batch_execute",
    "batch_execute_detailed",
    # Concurrency
    "CancelToken",
    "checkpoint",
    # Observability
    "CallbackHandler",
    "RunInfo",
    "RunCollector",
    "LoggingCallbackHandler",
    "configure_logging",
    "get_logger",
]
