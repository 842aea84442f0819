"""Fallback primitive for graceful degradation chains.

Tries runnables in order until one succeeds. Useful for:
- Provider redundancy (primary → backup)
- Graceful degradation (expensive → cheap)
- Error-specific fallback (rate limit → alternate)

Every candidate gets the same original input and config and is tried at most
once. When all fail, FallbacksExhaustedError carries every attempt's error.

Example:
    >>> resilient = fallback(primary_model, backup_model, cached_answer)
    >>> # or
    >>> resilient = primary_model.with_fallbacks([backup_model, cached_answer])
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from typing import Any

from chaincase.foundation.core import Runnable, RunnableConfig, RunnableLike, coerce_to_runnable, patch_config
from chaincase.foundation.core.base import STREAM_END, BatchConfigArg, Input, Output, aclose_iterator, next_chunk
from chaincase.foundation.core.config import get_config_list
from chaincase.foundation.errors import (
    ChaincaseError,
    CompositionError,
    FallbacksExhaustedError,
    InvocationCancelledError,
    original_exception,
)
from chaincase.runtime.concurrency import checkpoint

logger = logging.getLogger("chaincase.fallback")


class RunnableWithFallbacks(Runnable[Input, Output]):
    """Primary runnable plus ordered fallbacks.

    A failure moves on to the next candidate only if it (or, for a wrapped
    leaf failure, the original exception) is an instance of
    ``exceptions_to_handle``. Cancellation is never handled.

    Example:
        >>> chain = RunnableWithFallbacks(
        ...     primary,
        ...     [backup, local],
        ...     exceptions_to_handle=(TimeoutError, ConnectionError),
        ... )
    """

    __slots__ = ("_runnable", "_fallbacks", "_exceptions_to_handle")

    def __init__(
        self,
        runnable: RunnableLike,
        fallbacks: Sequence[RunnableLike],
        *,
        exceptions_to_handle: tuple[type[BaseException], ...] = (Exception,),
        name: str | None = None,
    ) -> None:
        super().__init__(name=name)
        if not fallbacks:
            raise CompositionError("RunnableWithFallbacks requires at least one fallback")
        if not exceptions_to_handle or not all(isinstance(t, type) and issubclass(t, BaseException) for t in exceptions_to_handle):
            raise CompositionError("exceptions_to_handle must be a non-empty tuple of exception types")
        self._runnable = coerce_to_runnable(runnable)
        self._fallbacks = tuple(coerce_to_runnable(f) for f in fallbacks)
        self._exceptions_to_handle = tuple(exceptions_to_handle)

    @property
    def runnable(self) -> Runnable[Input, Output]:
        return self._runnable

    @property
    def fallbacks(self) -> tuple[Runnable[Input, Output], ...]:
        return self._fallbacks

    @property
    def runnables(self) -> tuple[Runnable[Input, Output], ...]:
        """Primary first, then the fallbacks in order."""
        return (self._runnable, *self._fallbacks)

    def get_name(self) -> str:
        return self._name or f"{self._runnable.get_name()}WithFallbacks"

    def __repr__(self) -> str:
        return f"RunnableWithFallbacks({' → '.join(r.get_name() for r in self.runnables)})"

    def _should_handle(self, err: ChaincaseError) -> bool:
        if isinstance(err, InvocationCancelledError):
            return False
        handled = self._exceptions_to_handle
        return isinstance(err, handled) or isinstance(original_exception(err), handled)

    def _candidate_config(self, config: RunnableConfig, index: int) -> RunnableConfig:
        return patch_config(config, tags=(f"fallback:{index}",))

    def _record(self, errors: list[ChaincaseError], err: ChaincaseError, index: int) -> None:
        errors.append(err)
        logger.warning(
            "%s: candidate %d/%d (%s) failed: %s",
            self.get_name(), index + 1, len(self._fallbacks) + 1, self.runnables[index].get_name(), err.message,
        )

    def _exhausted(self, errors: list[ChaincaseError]) -> FallbacksExhaustedError:
        return FallbacksExhaustedError(errors, self.get_name()).with_context(f"fallbacks:{self.get_name()}")

    # ─────────────────────────────────────────────────────────────────
    # Invoke / batch
    # ─────────────────────────────────────────────────────────────────

    async def _ainvoke(self, input: Input, config: RunnableConfig, **kwargs: Any) -> Output:
        errors: list[ChaincaseError] = []
        for i, candidate in enumerate(self.runnables):
            if i:
                await checkpoint(config)
            try:
                return await candidate.ainvoke(input, self._candidate_config(config, i))
            except ChaincaseError as e:
                if not self._should_handle(e):
                    raise e.with_context(f"fallbacks:{self.get_name()}", attempt=i)
                self._record(errors, e, i)
        raise self._exhausted(errors) from errors[-1]

    async def abatch(
        self,
        inputs: Iterable[Input],
        config: BatchConfigArg = None,
        *,
        max_concurrency: int | None = None,
        return_exceptions: bool = False,
        **kwargs: Any,
    ) -> list[Any]:
        """Batch the primary, then retry only the failed slots on each fallback in turn.

        Without ``return_exceptions`` the call raises only if some item
        exhausted every candidate (or hit an unhandled error); the
        lowest-index such item is raised.
        """
        items = list(inputs)
        if not items:
            return []
        configs = get_config_list(config, len(items))
        runs = [await self._start_run(item, cfg) for item, cfg in zip(items, configs)]
        limit = max_concurrency or configs[0].max_concurrency
        attempts: dict[int, list[ChaincaseError]] = {k: [] for k in range(len(items))}
        results: dict[int, Any] = {}
        failed: dict[int, ChaincaseError] = {}
        pending = list(range(len(items)))

        for i, candidate in enumerate(self.runnables):
            if not pending:
                break
            outputs = await candidate.abatch(
                [items[k] for k in pending],
                [self._candidate_config(runs[k][3], i) for k in pending],
                max_concurrency=limit,
                return_exceptions=True,
            )
            retry: list[int] = []
            for k, out in zip(pending, outputs):
                if not isinstance(out, Exception):
                    results[k] = out
                    continue
                err = self._as_error(out)
                if self._should_handle(err):
                    self._record(attempts[k], err, i)
                    retry.append(k)
                else:
                    failed[k] = err.with_context(f"fallbacks:{self.get_name()}", attempt=i)
            pending = retry

        for k in pending:
            failed[k] = self._exhausted(attempts[k])

        for k, (callbacks, run, _, _) in enumerate(runs):
            if k in failed:
                await callbacks.error(run, failed[k])
            else:
                await callbacks.end(run, results[k])

        if failed and not return_exceptions:
            raise failed[min(failed)]
        return [failed[k] if k in failed else results[k] for k in range(len(items))]

    # ─────────────────────────────────────────────────────────────────
    # Streaming
    # ─────────────────────────────────────────────────────────────────

    async def _astream(self, input: Input, config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Output]:
        """The first candidate to produce its first chunk wins.

        A failure before the first chunk moves on to the next candidate; a
        failure after it propagates, since output was already delivered.
        """
        errors: list[ChaincaseError] = []
        for i, candidate in enumerate(self.runnables):
            if i:
                await checkpoint(config)
            stream = candidate.astream(input, self._candidate_config(config, i))
            try:
                first = await next_chunk(stream)
            except ChaincaseError as e:
                await aclose_iterator(stream)
                if not self._should_handle(e):
                    raise e.with_context(f"fallbacks:{self.get_name()}", attempt=i)
                self._record(errors, e, i)
                continue
            try:
                if first is STREAM_END:
                    return
                yield first
                async for chunk in stream:
                    yield chunk
            finally:
                await aclose_iterator(stream)
            return
        raise self._exhausted(errors) from errors[-1]


def fallback(
    primary: RunnableLike,
    *fallbacks: RunnableLike,
    exceptions_to_handle: tuple[type[BaseException], ...] = (Exception,),
    name: str | None = None,
) -> RunnableWithFallbacks[Any, Any]:
    """Create a fallback chain.

    Args:
        primary: Runnable tried first
        *fallbacks: Runnables tried in order when the previous one fails
        exceptions_to_handle: Failures that move on to the next candidate
        name: Name for errors and run tracking

    Example:
        >>> answer = fallback(gpt_chain, claude_chain, lambda q: "Service unavailable")
    """
    return RunnableWithFallbacks(primary, fallbacks, exceptions_to_handle=exceptions_to_handle, name=name)
