"""Tests for fallback chains.

Validates:
- First success wins, later candidates untouched
- Exhaustion collects every attempt's error in order
- Handled-exception filtering and cancellation passthrough
- Batch retries only failed slots; streaming commits at the first chunk
"""

from __future__ import annotations

import pytest

from chaincase import (
    CompositionError,
    ErrorCode,
    FallbacksExhaustedError,
    InvocationCancelledError,
    InvocationError,
    RunnableWithFallbacks,
    fallback,
)
from chaincase.foundation.errors import original_exception
from chaincase.foundation.testing import FakeRunnable, FakeStreamingRunnable


def even_only(x: int) -> str:
    if x % 2:
        raise ValueError(f"odd: {x}")
    return f"primary:{x}"


# ─────────────────────────────────────────────────────────────────────────────
# Invoke
# ─────────────────────────────────────────────────────────────────────────────


class TestInvoke:

    @pytest.mark.asyncio
    async def test_fallback_used_when_primary_fails(self) -> None:
        primary = FakeRunnable(raises=ConnectionError("primary down"), name="primary")
        backup = FakeRunnable("backup answer", name="backup")

        result = await primary.with_fallbacks([backup]).ainvoke("question")

        assert result == "backup answer"
        assert primary.call_count == 1
        backup.assert_called_with("question")

    @pytest.mark.asyncio
    async def test_primary_success_skips_fallbacks(self) -> None:
        primary, backup = FakeRunnable("primary answer"), FakeRunnable("backup answer")
        assert await fallback(primary, backup).ainvoke("q") == "primary answer"
        backup.assert_not_called()

    def test_sync_invoke(self) -> None:
        chain = fallback(FakeRunnable(raises=TimeoutError("slow")), lambda q: f"cached:{q}")
        assert chain.invoke("q") == "cached:q"

    @pytest.mark.asyncio
    async def test_exhaustion_collects_errors_in_order(self) -> None:
        first = ConnectionError("first down")
        second = TimeoutError("second slow")
        third = RuntimeError("third broken")
        chain = fallback(
            FakeRunnable(raises=first),
            FakeRunnable(raises=second),
            FakeRunnable(raises=third),
            name="answerer",
        )

        with pytest.raises(FallbacksExhaustedError) as exc_info:
            await chain.ainvoke("q")

        err = exc_info.value
        assert len(err.errors) == 3
        assert [original_exception(e) for e in err.errors] == [first, second, third]
        assert err.code == ErrorCode.FALLBACKS_EXHAUSTED
        assert err.message == "All 3 candidates of answerer failed"
        assert err.__cause__ is err.errors[-1]
        assert "fallbacks:answerer" in err.contexts
        assert "first down" in str(err)

    @pytest.mark.asyncio
    async def test_unhandled_exception_propagates(self) -> None:
        backup = FakeRunnable("backup")
        chain = FakeRunnable(raises=ValueError("bad")).with_fallbacks(
            [backup], exceptions_to_handle=(ConnectionError,),
        )

        with pytest.raises(InvocationError) as exc_info:
            await chain.ainvoke("q")

        assert isinstance(exc_info.value.original, ValueError)
        backup.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancellation_never_handled(self) -> None:
        backup = FakeRunnable("backup")
        chain = fallback(FakeRunnable(raises=InvocationCancelledError("caller left")), backup)

        with pytest.raises(InvocationCancelledError):
            await chain.ainvoke("q")
        backup.assert_not_called()

    @pytest.mark.asyncio
    async def test_candidates_tagged_by_position(self) -> None:
        primary = FakeRunnable(raises=ConnectionError("down"))
        backup = FakeRunnable("ok")
        await fallback(primary, backup).ainvoke("q")

        assert primary.last_call is not None and backup.last_call is not None
        assert "fallback:0" in primary.last_call.config.tags
        assert "fallback:1" in backup.last_call.config.tags

    def test_requires_fallbacks(self) -> None:
        with pytest.raises(CompositionError):
            RunnableWithFallbacks(FakeRunnable(), [])

    def test_rejects_non_exception_types(self) -> None:
        with pytest.raises(CompositionError):
            RunnableWithFallbacks(FakeRunnable(), [FakeRunnable()], exceptions_to_handle=(int,))  # type: ignore[arg-type]

    def test_names(self) -> None:
        assert fallback(FakeRunnable(name="gpt"), FakeRunnable()).get_name() == "gptWithFallbacks"
        assert fallback(FakeRunnable(), FakeRunnable(), name="resilient").get_name() == "resilient"


# ─────────────────────────────────────────────────────────────────────────────
# Batch
# ─────────────────────────────────────────────────────────────────────────────


class TestBatch:

    @pytest.mark.asyncio
    async def test_only_failed_slots_retried(self) -> None:
        backup = FakeRunnable(side_effect=lambda x: f"backup:{x}")
        chain = fallback(even_only, backup)

        results = await chain.abatch([1, 2, 3, 4])

        assert results == ["backup:1", "primary:2", "backup:3", "primary:4"]
        assert sorted(backup.inputs) == [1, 3]

    @pytest.mark.asyncio
    async def test_exhausted_slot_with_return_exceptions(self) -> None:
        chain = fallback(even_only, FakeRunnable(raises=RuntimeError("backup down")))
        results = await chain.abatch([1, 2], return_exceptions=True)

        assert isinstance(results[0], FallbacksExhaustedError)
        assert len(results[0].errors) == 2
        assert results[1] == "primary:2"

    @pytest.mark.asyncio
    async def test_exhausted_slot_raises_without_return_exceptions(self) -> None:
        chain = fallback(even_only, FakeRunnable(raises=RuntimeError("backup down")))
        with pytest.raises(FallbacksExhaustedError):
            await chain.abatch([2, 3])


# ─────────────────────────────────────────────────────────────────────────────
# Streaming
# ─────────────────────────────────────────────────────────────────────────────


class TestStreaming:

    @pytest.mark.asyncio
    async def test_failure_before_first_chunk_falls_back(self) -> None:
        primary = FakeStreamingRunnable(["p"], fail_after=0)
        backup = FakeStreamingRunnable(["x", "y"])
        chain = fallback(primary, backup)

        assert [c async for c in chain.astream("q")] == ["x", "y"]

    @pytest.mark.asyncio
    async def test_failure_after_first_chunk_propagates(self) -> None:
        primary = FakeStreamingRunnable(["p1", "p2"], fail_after=1)
        backup = FakeStreamingRunnable(["x"])
        received: list[str] = []

        with pytest.raises(InvocationError):
            async for chunk in fallback(primary, backup).astream("q"):
                received.append(chunk)

        assert received == ["p1"]
        backup.assert_not_called()

    @pytest.mark.asyncio
    async def test_stream_exhaustion(self) -> None:
        chain = fallback(
            FakeStreamingRunnable(["a"], fail_after=0),
            FakeStreamingRunnable(["b"], fail_after=0),
        )
        with pytest.raises(FallbacksExhaustedError) as exc_info:
            async for _ in chain.astream("q"):
                pass
        assert len(exc_info.value.errors) == 2
