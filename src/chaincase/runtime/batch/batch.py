"""Batch execution engine for runnables.

Runs N async work items with:
- Configurable concurrency limit (default unbounded)
- One result slot per input index, regardless of completion order
- Fail-fast (default) or capture-every-outcome (``return_exceptions``)

Fail-fast raises the first failure observed; items already in flight keep
running and their outcomes are discarded. Only the cancel token aborts work.

Example:
    >>> async def run(i, x):
    ...     return await model.ainvoke(x)
    >>> await batch_execute(run, prompts, BatchConfig(max_concurrency=5))
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Annotated, Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from chaincase.foundation.config import get_settings
from chaincase.runtime.concurrency import run_sync

T = TypeVar("T")
R = TypeVar("R")

WorkFn = Callable[[int, T], Awaitable[R]]

logger = logging.getLogger("chaincase.batch")


@dataclass(frozen=True, slots=True)
class BatchItem(Generic[R]):
    """Single item result from batch execution."""
    index: int
    value: R | None
    error: BaseException | None
    elapsed_ms: float

    @property
    def is_ok(self) -> bool: return self.error is None

    @property
    def is_err(self) -> bool: return self.error is not None


@dataclass(slots=True)
class BatchResult(Generic[R]):
    """Aggregated results from batch execution. Provides access to successes, failures, and metrics."""
    items: list[BatchItem[R]]
    total_ms: float
    concurrency: int

    @property
    def successes(self) -> list[BatchItem[R]]: return [i for i in self.items if i.is_ok]

    @property
    def failures(self) -> list[BatchItem[R]]: return [i for i in self.items if i.is_err]

    @property
    def success_rate(self) -> float: return len(self.successes) / len(self.items) if self.items else 0.0

    @property
    def all_ok(self) -> bool: return all(i.is_ok for i in self.items)

    def values(self) -> list[R | None]: return [i.value for i in self.items if i.is_ok]

    def errors(self) -> list[BaseException]: return [e for i in self.items if (e := i.error) is not None]

    def outcomes(self) -> list[R | BaseException | None]:
        """One entry per input: the value, or the exception in its slot."""
        return [i.error if i.is_err else i.value for i in self.items]

    def raise_first(self) -> None:
        """Raise the lowest-index failure, if any."""
        if failures := self.failures:
            raise failures[0].error  # type: ignore[misc]

    def __len__(self) -> int: return len(self.items)

    def __iter__(self) -> Iterator[BatchItem[R]]: return iter(self.items)


class BatchConfig(BaseModel):
    """Configuration for batch execution.

    Example:
        >>> config = BatchConfig(max_concurrency=10, return_exceptions=True)
        >>> results = await batch_execute(run, inputs, config)
    """

    model_config = ConfigDict(
        frozen=True, extra="forbid", validate_default=True,
        json_schema_extra={"title": "Batch Configuration", "examples": [{"max_concurrency": 10, "return_exceptions": False}]},
    )

    max_concurrency: Annotated[int | None, Field(ge=1)] = None
    return_exceptions: bool = False
    on_item_complete: Callable[[BatchItem[Any]], None] | None = Field(default=None, exclude=True)

    def __hash__(self) -> int: return hash((self.max_concurrency, self.return_exceptions))


DEFAULT_BATCH_CONFIG = BatchConfig()


def _limit(cfg: BatchConfig, n: int) -> int:
    """Effective in-flight bound: call config, then CHAINCASE_BATCH_MAX_CONCURRENCY, else all items."""
    limit = cfg.max_concurrency or get_settings().batch.max_concurrency
    return min(limit, n) if limit else n


async def batch_execute(
    func: WorkFn[T, R],
    items: Iterable[T],
    config: BatchConfig | None = None,
) -> list[R | BaseException]:
    """Run ``func(index, item)`` for every item, at most ``max_concurrency`` at a time.

    Returns results in input order. With ``return_exceptions`` each failed
    slot holds its exception and the call never raises for item failures;
    otherwise the first failure observed is raised.
    """
    items = list(items)
    if not items:
        return []

    cfg = config or DEFAULT_BATCH_CONFIG
    sem = asyncio.Semaphore(_limit(cfg, len(items)))

    async def run_one(idx: int, item: T) -> R:
        async with sem:
            t0 = time.perf_counter()
            try:
                value = await func(idx, item)
            except Exception as e:
                if cfg.on_item_complete:
                    cfg.on_item_complete(BatchItem(idx, None, e, (time.perf_counter() - t0) * 1000))
                raise
            if cfg.on_item_complete:
                cfg.on_item_complete(BatchItem(idx, value, None, (time.perf_counter() - t0) * 1000))
            return value

    tasks = [asyncio.ensure_future(run_one(i, x)) for i, x in enumerate(items)]
    if cfg.return_exceptions:
        return await _gather_settled(tasks)
    return await _gather_fail_fast(tasks)


async def _gather_settled(tasks: list[asyncio.Future[R]]) -> list[R | BaseException]:
    try:
        results = await asyncio.gather(*tasks, return_exceptions=True)
    except asyncio.CancelledError:
        for t in tasks:
            t.cancel()
        raise
    for r in results:
        if isinstance(r, BaseException) and not isinstance(r, Exception):
            raise r
    return list(results)


async def _gather_fail_fast(tasks: list[asyncio.Future[R]]) -> list[R | BaseException]:
    index = {t: i for i, t in enumerate(tasks)}
    pending: set[asyncio.Future[R]] = set(tasks)
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
            failed = sorted((t for t in done if t.cancelled() or t.exception() is not None), key=index.__getitem__)
            if failed:
                if pending:
                    logger.debug("Batch item %d failed; %d item(s) still in flight", index[failed[0]], len(pending))
                for t in pending:
                    t.add_done_callback(_discard)
                failed[0].result()  # raises
    except asyncio.CancelledError:
        for t in tasks:
            t.cancel()
        raise
    return [t.result() for t in tasks]


def _discard(task: asyncio.Future[Any]) -> None:
    """Consume the outcome of a detached task so it is never reported as unretrieved."""
    if not task.cancelled():
        task.exception()


async def batch_execute_detailed(
    func: WorkFn[T, R],
    items: Sequence[T],
    config: BatchConfig | None = None,
) -> BatchResult[R]:
    """Like batch_execute with ``return_exceptions``, plus per-item timing.

    Example:
        >>> result = await batch_execute_detailed(run, inputs, BatchConfig(max_concurrency=5))
        >>> print(f"Success rate: {result.success_rate:.0%}")
    """
    cfg = config or DEFAULT_BATCH_CONFIG
    slots: list[BatchItem[R] | None] = [None] * len(items)
    start = time.perf_counter()

    def record(item: BatchItem[R]) -> None:
        slots[item.index] = item
        if cfg.on_item_complete:
            cfg.on_item_complete(item)

    detailed = cfg.model_copy(update={"return_exceptions": True, "on_item_complete": record})
    await batch_execute(func, items, detailed)
    return BatchResult(
        [s for s in slots if s is not None],
        (time.perf_counter() - start) * 1000,
        _limit(cfg, len(items)) if items else 0,
    )


def batch_execute_sync(
    func: WorkFn[T, R],
    items: Iterable[T],
    config: BatchConfig | None = None,
) -> list[R | BaseException]:
    """Synchronous batch execution. Wraps async batch_execute for sync contexts."""
    return run_sync(batch_execute(func, items, config))
