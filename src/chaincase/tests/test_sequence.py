"""Tests for sequential composition.

Validates:
- Flattening and operator coercion
- Ordered step execution and early exit on failure
- Layered batching
- Streaming with transform fusion of trailing steps
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest

from chaincase import (
    CompositionError,
    InvocationError,
    Runnable,
    RunnableConfig,
    RunnableGenerator,
    RunnableLambda,
    RunnableParallel,
    RunnablePassthrough,
    RunnableSequence,
    RunCollector,
    sequence,
)
from chaincase.foundation.testing import FakeRunnable, FakeStreamingRunnable


# ─────────────────────────────────────────────────────────────────────────────
# Test Fixtures: Steps
# ─────────────────────────────────────────────────────────────────────────────


def double(x: int) -> int:
    return x * 2


def increment(x: int) -> int:
    return x + 1


def square(x: int) -> int:
    return x * x


def fail_on_four(x: int) -> int:
    if x == 4:
        raise ValueError("four is not allowed")
    return x


def boom(x: object) -> object:
    raise ValueError("bad input")


async def bracket(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    async for chunk in chunks:
        yield f"<{chunk}>"


class ToText(Runnable[int, str]):
    input_type = int
    output_type = str

    async def _ainvoke(self, input: int, config: RunnableConfig, **kwargs: Any) -> str:
        return str(input)


class Shout(Runnable[str, str]):
    input_type = str
    output_type = str

    async def _ainvoke(self, input: str, config: RunnableConfig, **kwargs: Any) -> str:
        return input.upper()


class Halve(Runnable[int, float]):
    input_type = int
    output_type = float

    async def _ainvoke(self, input: int, config: RunnableConfig, **kwargs: Any) -> float:
        return input / 2


# ─────────────────────────────────────────────────────────────────────────────
# Construction
# ─────────────────────────────────────────────────────────────────────────────


class TestConstruction:
    """Flattening, coercion and type checks."""

    def test_nested_sequences_flatten(self) -> None:
        chain = (RunnableLambda(double) | increment) | square
        assert isinstance(chain, RunnableSequence)
        assert len(chain) == 3
        assert [s.get_name() for s in chain.steps] == ["double", "increment", "square"]

    def test_sequence_of_sequences_flattens(self) -> None:
        inner = sequence(double, increment)
        outer = RunnableSequence(inner, inner)
        assert len(outer) == 4
        assert not any(isinstance(s, RunnableSequence) for s in outer.steps)

    def test_first_middle_last(self) -> None:
        chain = sequence(double, increment, square)
        assert chain.first.get_name() == "double"
        assert [s.get_name() for s in chain.middle] == ["increment"]
        assert chain.last.get_name() == "square"

    def test_empty_sequence_rejected(self) -> None:
        with pytest.raises(CompositionError):
            RunnableSequence()

    def test_mapping_coerced_to_parallel(self) -> None:
        chain = {"a": double, "b": increment} | RunnableLambda(lambda d: d["a"] + d["b"])
        assert isinstance(chain.first, RunnableParallel)
        assert chain.invoke(3) == 10

    def test_callable_on_left_coerced(self) -> None:
        chain = increment | RunnableLambda(double)
        assert chain.invoke(3) == 8

    def test_incompatible_declared_types_rejected(self) -> None:
        with pytest.raises(CompositionError, match="outputs str but Halve expects int"):
            ToText() | Halve()

    def test_compatible_declared_types_accepted(self) -> None:
        chain = ToText() | Shout()
        assert chain.invoke(12) == "12"

    def test_repr_joins_steps(self) -> None:
        assert repr(sequence(double, increment)) == "RunnableLambda(double) | RunnableLambda(increment)"


# ─────────────────────────────────────────────────────────────────────────────
# Invoke
# ─────────────────────────────────────────────────────────────────────────────


class TestInvoke:
    """Ordered execution."""

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self) -> None:
        chain = RunnableLambda(double) | increment
        assert await chain.ainvoke(3) == 7

    def test_sync_invoke(self) -> None:
        assert (RunnableLambda(double) | increment).invoke(3) == 7

    @pytest.mark.asyncio
    async def test_single_step_behaves_like_step(self) -> None:
        assert await RunnableSequence(double).ainvoke(4) == 8

    @pytest.mark.asyncio
    async def test_failure_skips_later_steps(self) -> None:
        tail = FakeRunnable(name="tail")
        chain = sequence(double, boom, tail, name="calc")

        with pytest.raises(InvocationError) as exc_info:
            await chain.ainvoke(1)

        tail.assert_not_called()
        err = exc_info.value
        assert isinstance(err.original, ValueError)
        assert isinstance(err.__cause__, ValueError)
        assert err.contexts[0] == "invoke:boom"
        assert err.contexts[1] == "sequence:calc (step=2, runnable=boom)"

    @pytest.mark.asyncio
    async def test_steps_get_step_tags(self) -> None:
        first, second = FakeRunnable(name="first"), FakeRunnable(name="second")
        await sequence(first, second).ainvoke("x", {"tags": ["job"]})

        assert first.last_call is not None and second.last_call is not None
        assert "seq:step:1" in first.last_call.config.tags
        assert "seq:step:2" in second.last_call.config.tags
        assert "job" in second.last_call.config.tags

    @pytest.mark.asyncio
    async def test_run_tree(self) -> None:
        collector = RunCollector()
        chain = sequence(double, increment, name="calc")

        assert await chain.ainvoke(3, {"callbacks": [collector]}) == 7

        assert collector.names == ["calc", "double", "increment"]
        root = collector.find("calc")[0]
        children = collector.children_of(root)
        assert [c.name for c in children] == ["double", "increment"]
        assert root.outputs == 7
        assert root.succeeded


# ─────────────────────────────────────────────────────────────────────────────
# Batch
# ─────────────────────────────────────────────────────────────────────────────


class TestBatch:
    """Layer-by-layer batching."""

    @pytest.mark.asyncio
    async def test_batch_keeps_order(self) -> None:
        chain = RunnableLambda(double) | increment
        assert await chain.abatch([1, 2, 3]) == [3, 5, 7]

    @pytest.mark.asyncio
    async def test_batch_return_exceptions(self) -> None:
        chain = sequence(double, fail_on_four, increment)
        results = await chain.abatch([1, 2, 3], return_exceptions=True)

        assert results[0] == 3
        assert isinstance(results[1], InvocationError)
        assert results[2] == 7
        assert "sequence:RunnableSequence (step=2, runnable=fail_on_four)" in results[1].contexts

    @pytest.mark.asyncio
    async def test_batch_fail_fast_stops_after_failing_layer(self) -> None:
        tail = FakeRunnable(name="tail")
        chain = sequence(double, fail_on_four, tail)

        with pytest.raises(InvocationError):
            await chain.abatch([1, 2, 3])

        tail.assert_not_called()

    @pytest.mark.asyncio
    async def test_batch_closes_every_run(self) -> None:
        collector = RunCollector()
        chain = sequence(double, fail_on_four, name="calc")
        await chain.abatch([1, 2], {"callbacks": [collector]}, return_exceptions=True)

        roots = collector.find("calc")
        assert len(roots) == 2
        assert roots[0].succeeded and roots[0].outputs == 2
        assert isinstance(roots[1].error, InvocationError)

    @pytest.mark.asyncio
    async def test_fail_fast_batch_closes_every_run(self) -> None:
        collector = RunCollector()
        chain = sequence(double, fail_on_four, increment, name="calc")

        with pytest.raises(InvocationError) as exc_info:
            await chain.abatch([1, 2, 3], {"callbacks": [collector]})

        roots = collector.find("calc")
        assert len(roots) == 3
        assert all(run.end_time is not None for run in roots)
        assert all(run.error is exc_info.value for run in roots)

    @pytest.mark.asyncio
    async def test_batch_empty(self) -> None:
        assert await sequence(double).abatch([]) == []


# ─────────────────────────────────────────────────────────────────────────────
# Streaming
# ─────────────────────────────────────────────────────────────────────────────


class TestStreaming:
    """Streaming the last streaming step and piping through transforms."""

    @pytest.mark.asyncio
    async def test_non_streaming_chain_yields_invoke_result_once(self) -> None:
        chain = RunnableLambda(double) | increment
        chunks = [c async for c in chain.astream(3)]
        assert chunks == [await chain.ainvoke(3)]

    @pytest.mark.asyncio
    async def test_last_step_streams(self) -> None:
        model = FakeStreamingRunnable(["a", "b", "c"])
        chain = RunnableLambda(str.strip) | model

        assert [c async for c in chain.astream(" q ")] == ["a", "b", "c"]
        model.assert_called_with("q")

    @pytest.mark.asyncio
    async def test_trailing_generator_transforms_each_chunk(self) -> None:
        chain = FakeStreamingRunnable(["a", "b", "c"]) | RunnableGenerator(bracket)
        assert [c async for c in chain.astream("q")] == ["<a>", "<b>", "<c>"]

    @pytest.mark.asyncio
    async def test_invoke_feeds_generator_the_whole_output(self) -> None:
        chain = FakeStreamingRunnable(["a", "b", "c"]) | RunnableGenerator(bracket)
        assert await chain.ainvoke("q") == "<abc>"

    @pytest.mark.asyncio
    async def test_trailing_passthrough_keeps_chunks(self) -> None:
        chain = FakeStreamingRunnable(["a", "b"]) | RunnablePassthrough()
        assert [c async for c in chain.astream("q")] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_non_transforming_last_step_buffers(self) -> None:
        chain = FakeStreamingRunnable(["a", "b"]) | RunnableLambda(str.upper)
        assert [c async for c in chain.astream("q")] == ["AB"]

    @pytest.mark.asyncio
    async def test_all_transforming_chain_streams_input(self) -> None:
        chain = RunnablePassthrough() | RunnableGenerator(bracket)
        chunks = [c async for c in chain.atransform(_chunks("x", "y"))]
        assert chunks == ["<x>", "<y>"]

    @pytest.mark.asyncio
    async def test_mid_stream_failure_keeps_delivered_chunks(self) -> None:
        model = FakeStreamingRunnable(["a", "b"], fail_after=1)
        chain = RunnablePassthrough() | model
        received: list[str] = []

        with pytest.raises(InvocationError) as exc_info:
            async for chunk in chain.astream("q"):
                received.append(chunk)

        assert received == ["a"]
        assert "sequence:RunnableSequence (stage=stream)" in exc_info.value.contexts
        assert model.closed == 1

    @pytest.mark.asyncio
    async def test_abandoned_stream_is_closed(self) -> None:
        model = FakeStreamingRunnable(["a", "b", "c"])
        stream = (RunnablePassthrough() | model).astream("q")
        async for _ in stream:
            break
        await stream.aclose()
        assert model.closed == 1

    @pytest.mark.asyncio
    async def test_abandoned_stream_closes_source_behind_leading_step(self) -> None:
        model = FakeStreamingRunnable(["a", "b", "c"])
        stream = (RunnableLambda(str.strip) | model).astream(" q ")
        async for _ in stream:
            break
        await stream.aclose()
        assert model.closed == 1

    @pytest.mark.asyncio
    async def test_abandoned_stream_finalizes_trailing_generator(self) -> None:
        log: list[str] = []

        async def logged(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
            try:
                async for chunk in chunks:
                    yield chunk
            finally:
                log.append("finalized")

        model = FakeStreamingRunnable(["a", "b", "c"])
        stream = (model | RunnableGenerator(logged)).astream("q")
        async for _ in stream:
            break
        await stream.aclose()
        assert log == ["finalized"]
        assert model.closed == 1

    @pytest.mark.asyncio
    async def test_abandoned_stream_ends_runs_with_partial_output(self) -> None:
        collector = RunCollector()
        model = FakeStreamingRunnable(["a", "b", "c"], name="model")
        stream = sequence(str.strip, model, name="chat").astream(" q ", {"callbacks": [collector]})
        received: list[str] = []
        async for chunk in stream:
            received.append(chunk)
            if len(received) == 2:
                break
        await stream.aclose()

        assert received == ["a", "b"]
        [root] = collector.find("chat")
        [inner] = collector.find("model")
        for run in (root, inner):
            assert run.succeeded
            assert run.outputs == "ab"

    def test_sync_stream(self) -> None:
        chain = FakeStreamingRunnable(["a", "b"]) | RunnableGenerator(bracket)
        assert list(chain.stream("q")) == ["<a>", "<b>"]


async def _chunks(*values: str) -> AsyncIterator[str]:
    for value in values:
        yield value
