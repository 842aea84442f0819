"""Runnable composition via sequential and parallel pipelines.

Pipelines are runnables themselves, enabling recursive composition.

Sequential: prompt | model | parser          (RunnableSequence)
Parallel:   {"joke": joke_chain, "poem": poem_chain}  (RunnableParallel)

Streaming through a sequence resolves every step up to the last
non-transforming one with ``ainvoke``, streams that step, and pipes its chunks
through the trailing steps that can transform streams (parsers, passthroughs,
generators). Without such trailing steps only the final step streams.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from typing import Any, get_origin

from chaincase.foundation.core import Runnable, RunnableConfig, RunnableLike, coerce_to_runnable, patch_config
from chaincase.foundation.core.base import STREAM_END, BatchConfigArg, aclose_iterator, next_chunk
from chaincase.foundation.core.config import get_config_list
from chaincase.foundation.errors import ChaincaseError, CompositionError
from chaincase.runtime.batch import BatchConfig, batch_execute
from chaincase.runtime.concurrency import checkpoint

logger = logging.getLogger("chaincase.pipeline")


# ═════════════════════════════════════════════════════════════════════════════
# Sequence
# ═════════════════════════════════════════════════════════════════════════════


class RunnableSequence(Runnable[Any, Any]):
    """Runs steps in order, feeding each output into the next step.

    Nested sequences are flattened, so ``a | b | c`` has exactly three steps.
    A one-step sequence behaves exactly like its step.

    Example:
        >>> chain = RunnableSequence(double, increment)
        >>> await chain.ainvoke(3)
        7
    """

    __slots__ = ("_steps",)

    def __init__(self, *steps: RunnableLike, name: str | None = None) -> None:
        super().__init__(name=name)
        flat: list[Runnable[Any, Any]] = []
        for step in steps:
            runnable = coerce_to_runnable(step)
            flat.extend(runnable.steps if isinstance(runnable, RunnableSequence) else (runnable,))
        if not flat:
            raise CompositionError("RunnableSequence requires at least one step")
        _check_adjacent_types(flat)
        self._steps: tuple[Runnable[Any, Any], ...] = tuple(flat)

    @property
    def steps(self) -> tuple[Runnable[Any, Any], ...]:
        return self._steps

    @property
    def first(self) -> Runnable[Any, Any]:
        return self._steps[0]

    @property
    def middle(self) -> tuple[Runnable[Any, Any], ...]:
        return self._steps[1:-1]

    @property
    def last(self) -> Runnable[Any, Any]:
        return self._steps[-1]

    def __len__(self) -> int:
        return len(self._steps)

    def __repr__(self) -> str:
        return " | ".join(repr(s) for s in self._steps)

    def _step_config(self, config: RunnableConfig, index: int) -> RunnableConfig:
        return patch_config(config, tags=(f"seq:step:{index + 1}",))

    def _annotate(self, err: ChaincaseError, index: int) -> ChaincaseError:
        return err.with_context(f"sequence:{self.get_name()}", step=index + 1, runnable=self._steps[index].get_name())

    # ─────────────────────────────────────────────────────────────────
    # Invoke / batch
    # ─────────────────────────────────────────────────────────────────

    async def _ainvoke(self, input: Any, config: RunnableConfig, **kwargs: Any) -> Any:
        value = input
        for i, step in enumerate(self._steps):
            if i:
                await checkpoint(config)
            try:
                value = await step.ainvoke(value, self._step_config(config, i))
            except ChaincaseError as e:
                raise self._annotate(e, i)
        return value

    async def abatch(
        self,
        inputs: Iterable[Any],
        config: BatchConfigArg = None,
        *,
        max_concurrency: int | None = None,
        return_exceptions: bool = False,
        **kwargs: Any,
    ) -> list[Any]:
        """Layer by layer: every item through step 1 (one ``abatch`` call), then step 2, ...

        Items that fail drop out of later layers. Without ``return_exceptions``
        the batch stops after the first layer with a failure and raises the
        lowest-index failure.
        """
        items = list(inputs)
        if not items:
            return []
        configs = get_config_list(config, len(items))
        runs = [await self._start_run(item, cfg) for item, cfg in zip(items, configs)]
        limit = max_concurrency or configs[0].max_concurrency
        values: list[Any] = list(items)
        errors: dict[int, ChaincaseError] = {}
        completed = True

        for i, step in enumerate(self._steps):
            active = [k for k in range(len(items)) if k not in errors]
            if not active:
                break
            outputs = await step.abatch(
                [values[k] for k in active],
                [self._step_config(runs[k][3], i) for k in active],
                max_concurrency=limit,
                return_exceptions=True,
            )
            for k, out in zip(active, outputs):
                if isinstance(out, Exception):
                    errors[k] = self._annotate(self._as_error(out), i)
                else:
                    values[k] = out
            if errors and not return_exceptions:
                completed = i == len(self._steps) - 1
                break

        raised = errors[min(errors)] if errors else None
        for k, (callbacks, run, _, _) in enumerate(runs):
            if k in errors:
                await callbacks.error(run, errors[k])
            elif completed:
                await callbacks.end(run, values[k])
            else:
                # Stopped early: the run fails with the error the batch raises
                await callbacks.error(run, raised)

        if raised is not None and not return_exceptions:
            if len(errors) > 1:
                logger.debug("Sequence batch had %d failures; raising item %d", len(errors), min(errors))
            raise raised
        return [errors[k] if k in errors else values[k] for k in range(len(items))]

    # ─────────────────────────────────────────────────────────────────
    # Streaming
    # ─────────────────────────────────────────────────────────────────

    def _supports_transform(self) -> bool:
        return all(step._supports_transform() for step in self._steps)

    def _stream_start(self) -> int:
        """Index of the step that streams; every step after it transforms streams."""
        start = len(self._steps) - 1
        while start > 0 and self._steps[start]._supports_transform():
            start -= 1
        return start

    async def _astream(self, input: Any, config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Any]:
        start = self._stream_start()
        value = input
        for i in range(start):
            if i:
                await checkpoint(config)
            try:
                value = await self._steps[i].ainvoke(value, self._step_config(config, i))
            except ChaincaseError as e:
                raise self._annotate(e, i)
        stream = self._pipe_through(self._steps[start].astream(value, self._step_config(config, start)), start + 1, config)
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await aclose_iterator(stream)

    async def _atransform(self, chunks: AsyncIterator[Any], config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Any]:
        stream = self._pipe_through(chunks, 0, config)
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await aclose_iterator(stream)

    async def _pipe_through(self, stream: AsyncIterator[Any], start: int, config: RunnableConfig) -> AsyncIterator[Any]:
        layers = [stream]
        for j in range(start, len(self._steps)):
            layers.append(self._steps[j].atransform(layers[-1], self._step_config(config, j)))
        try:
            async for chunk in layers[-1]:
                yield chunk
        except ChaincaseError as e:
            raise e.with_context(f"sequence:{self.get_name()}", stage="stream")
        finally:
            # Outermost first; a layer that never started does not close its source
            for layer in reversed(layers):
                await aclose_iterator(layer)


def _check_adjacent_types(steps: list[Runnable[Any, Any]]) -> None:
    """Reject adjacent steps whose declared plain-class types cannot connect."""
    for prev, nxt in zip(steps, steps[1:]):
        out_t, in_t = prev.output_type, nxt.input_type
        if not (_plain_class(out_t) and _plain_class(in_t)):
            continue
        if not issubclass(out_t, in_t):  # type: ignore[arg-type]
            raise CompositionError(
                f"{prev.get_name()} outputs {out_t.__name__} but {nxt.get_name()} expects {in_t.__name__}"  # type: ignore[union-attr]
            )


def _plain_class(t: object) -> bool:
    return isinstance(t, type) and get_origin(t) is None


def sequence(*steps: RunnableLike, name: str | None = None) -> RunnableSequence:
    """Create a sequential pipeline.

    Example:
        >>> chain = sequence(prompt, model, parser, name="qa")
    """
    return RunnableSequence(*steps, name=name)


# ═════════════════════════════════════════════════════════════════════════════
# Parallel map
# ═════════════════════════════════════════════════════════════════════════════


class RunnableParallel(Runnable[Any, dict[str, Any]]):
    """Runs named branches concurrently on the same input.

    The output maps each branch name to its output, in construction order.
    If a branch fails, the call raises that failure (with the branch name in
    its context) as soon as it is observed; sibling branches are not
    cancelled.

    Example:
        >>> both = RunnableParallel({"a": double}, b=increment)
        >>> await both.ainvoke(3)
        {'a': 6, 'b': 4}
    """

    __slots__ = ("_steps",)

    def __init__(self, steps: Mapping[str, RunnableLike] | None = None, /, **kwargs: RunnableLike) -> None:
        super().__init__()
        branches: dict[str, Runnable[Any, Any]] = {}
        for key, value in [*(steps or {}).items(), *kwargs.items()]:
            if not isinstance(key, str):
                raise CompositionError(f"Branch names must be strings, got {type(key).__name__}")
            if key in branches:
                raise CompositionError(f"Duplicate branch name {key!r}")
            branches[key] = coerce_to_runnable(value)
        if not branches:
            raise CompositionError("RunnableParallel requires at least one branch")
        self._steps = branches

    @property
    def steps(self) -> dict[str, Runnable[Any, Any]]:
        return dict(self._steps)

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(self._steps)

    def __repr__(self) -> str:
        return "{" + ", ".join(f"{k}: {v!r}" for k, v in self._steps.items()) + "}"

    def _branch_config(self, config: RunnableConfig, key: str) -> RunnableConfig:
        return patch_config(config, tags=(f"map:key:{key}",))

    def _annotate(self, err: ChaincaseError, key: str) -> ChaincaseError:
        return err.with_context(f"map:{self.get_name()}", branch=key)

    async def _ainvoke(self, input: Any, config: RunnableConfig, **kwargs: Any) -> dict[str, Any]:
        keys = list(self._steps)

        async def run(_: int, key: str) -> Any:
            try:
                return await self._steps[key].ainvoke(input, self._branch_config(config, key))
            except ChaincaseError as e:
                raise self._annotate(e, key)

        # Branches of one call are bounded by the call config only, not the batch-wide default
        values = await batch_execute(run, keys, BatchConfig(max_concurrency=config.max_concurrency or len(keys)))
        return dict(zip(keys, values))

    async def _astream(self, input: Any, config: RunnableConfig, **kwargs: Any) -> AsyncIterator[dict[str, Any]]:
        """Yield ``{branch: chunk}`` as chunks arrive from any branch."""
        iterators = {key: step.astream(input, self._branch_config(config, key)) for key, step in self._steps.items()}
        pending: dict[asyncio.Future[Any], str] = {
            asyncio.ensure_future(next_chunk(it)): key for key, it in iterators.items()
        }
        order = {key: i for i, key in enumerate(self._steps)}
        try:
            while pending:
                done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: order[pending[t]]):
                    key = pending.pop(task)
                    try:
                        chunk = task.result()
                    except ChaincaseError as e:
                        raise self._annotate(e, key)
                    if chunk is STREAM_END:
                        continue
                    yield {key: chunk}
                    pending[asyncio.ensure_future(next_chunk(iterators[key]))] = key
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for it in iterators.values():
                await aclose_iterator(it)


RunnableMap = RunnableParallel


def parallel(steps: Mapping[str, RunnableLike] | None = None, /, **branches: RunnableLike) -> RunnableParallel:
    """Create a parallel map.

    Example:
        >>> fan_out = parallel(summary=summarize, keywords=extract_keywords)
    """
    return RunnableParallel(steps, **branches)
