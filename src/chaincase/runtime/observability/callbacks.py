"""Run lifecycle callbacks.

Every public invocation of a runnable opens a *run*: a RunInfo record with
its own run_id, linked to the enclosing run through parent_run_id. Handlers
attached through ``RunnableConfig.callbacks`` observe the lifecycle:

    on_start(run)                run opened, inputs known
    on_stream_chunk(run, chunk)  a streamed chunk passed through the unit
    on_end(run)                  run finished, outputs set
    on_error(run)                run failed, error set

Hooks may be plain functions or coroutines. A handler that raises is logged
and skipped; it never changes the outcome of the invocation.

Example:
    >>> collector = RunCollector()
    >>> await chain.ainvoke("hi", {"callbacks": [collector]})
    >>> [r.name for r in collector.runs]
    ['RunnableSequence', 'prompt', 'model']
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field

if TYPE_CHECKING:
    from chaincase.foundation.core.config import RunnableConfig

logger = logging.getLogger("chaincase.callbacks")


class RunInfo(BaseModel):
    """One invocation of one runnable."""

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=False)

    run_id: UUID
    parent_run_id: UUID | None = None
    name: str
    tags: tuple[str, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)
    inputs: Any = None
    outputs: Any = None
    error: BaseException | None = Field(default=None, repr=False)
    start_time: float = Field(default_factory=time.time)
    end_time: float | None = None

    @computed_field
    @property
    def duration_ms(self) -> float | None:
        if self.end_time is None:
            return None
        return round((self.end_time - self.start_time) * 1000, 3)

    @property
    def succeeded(self) -> bool:
        return self.end_time is not None and self.error is None


class CallbackHandler:
    """Base class for run observers. Override the hooks you need."""

    def on_start(self, run: RunInfo) -> Any:
        return None

    def on_end(self, run: RunInfo) -> Any:
        return None

    def on_error(self, run: RunInfo) -> Any:
        return None

    def on_stream_chunk(self, run: RunInfo, chunk: Any) -> Any:
        return None


class CallbackManager:
    """Dispatches run lifecycle events to the handlers of one config."""

    __slots__ = ("handlers",)

    def __init__(self, handlers: Sequence[CallbackHandler] = ()) -> None:
        self.handlers = tuple(handlers)

    @classmethod
    def from_config(cls, config: RunnableConfig) -> CallbackManager:
        return cls(config.callbacks)

    async def start(self, name: str, inputs: Any, config: RunnableConfig) -> RunInfo:
        """Open a run for ``name`` under ``config`` and notify handlers."""
        run = RunInfo(
            run_id=config.run_id or uuid4(),
            parent_run_id=config.parent_run_id,
            name=config.run_name or name,
            tags=config.tags,
            metadata=dict(config.metadata),
            inputs=inputs,
        )
        await self._dispatch("on_start", run)
        return run

    async def end(self, run: RunInfo, outputs: Any) -> None:
        run.outputs, run.end_time = outputs, time.time()
        await self._dispatch("on_end", run)

    async def error(self, run: RunInfo, error: BaseException) -> None:
        run.error, run.end_time = error, time.time()
        await self._dispatch("on_error", run)

    async def chunk(self, run: RunInfo, chunk: Any) -> None:
        await self._dispatch("on_stream_chunk", run, chunk)

    async def _dispatch(self, hook: str, *args: Any) -> None:
        for handler in self.handlers:
            try:
                result = getattr(handler, hook)(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Callback %s.%s failed", type(handler).__name__, hook)


class RunCollector(CallbackHandler):
    """Records every run and streamed chunk it observes. Useful in tests."""

    def __init__(self) -> None:
        self.runs: list[RunInfo] = []
        self.chunks: list[tuple[UUID, Any]] = []

    def on_start(self, run: RunInfo) -> None:
        self.runs.append(run)

    def on_stream_chunk(self, run: RunInfo, chunk: Any) -> None:
        self.chunks.append((run.run_id, chunk))

    @property
    def names(self) -> list[str]:
        return [r.name for r in self.runs]

    def find(self, name: str) -> list[RunInfo]:
        return [r for r in self.runs if r.name == name]

    def children_of(self, run: RunInfo) -> list[RunInfo]:
        return [r for r in self.runs if r.parent_run_id == run.run_id]

    def chunks_for(self, run: RunInfo) -> list[Any]:
        return [c for rid, c in self.chunks if rid == run.run_id]

    def clear(self) -> None:
        self.runs.clear()
        self.chunks.clear()
