"""Fake runnables for testing compositions.

Provides FakeRunnable and FakeStreamingRunnable for:
- Replacing model/tool calls with controlled responses
- Simulating failures, flaky providers and slow calls
- Recording invocations (input, config, kwargs) for verification
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from chaincase.foundation.core import Runnable, RunnableConfig


@dataclass(slots=True)
class Invocation:
    """Record of a single fake invocation."""
    input: Any
    config: RunnableConfig
    kwargs: dict[str, Any] = field(default_factory=dict)
    output: Any = None
    exception: BaseException | None = None


class _Recorder:
    """Invocation bookkeeping and assertions shared by the fakes."""

    invocations: list[Invocation]

    @property
    def call_count(self) -> int:
        return len(self.invocations)

    @property
    def called(self) -> bool:
        return self.call_count > 0

    @property
    def last_call(self) -> Invocation | None:
        return self.invocations[-1] if self.invocations else None

    @property
    def inputs(self) -> list[Any]:
        return [inv.input for inv in self.invocations]

    def assert_called(self) -> None:
        if not self.called:
            raise AssertionError("Expected runnable to be called")

    def assert_not_called(self) -> None:
        if self.called:
            raise AssertionError(f"Runnable called {self.call_count} times")

    def assert_called_with(self, input: Any, **kwargs: Any) -> None:
        if (last := self.last_call) is None:
            raise AssertionError("Expected runnable to be called")
        if last.input != input:
            raise AssertionError(f"input: expected {input!r}, got {last.input!r}")
        for key, expected in kwargs.items():
            if key not in last.kwargs:
                raise AssertionError(f"Keyword '{key}' not in call")
            if last.kwargs[key] != expected:
                raise AssertionError(f"'{key}': expected {expected!r}, got {last.kwargs[key]!r}")

    def reset(self) -> None:
        self.invocations.clear()


class FakeRunnable(_Recorder, Runnable[Any, Any]):
    """Runnable with scripted behavior and invocation recording.

    Resolution order per call: ``raises`` (for the first ``fail_times`` calls,
    or always when ``fail_times`` is None), then ``side_effect(input)``, then
    ``return_value``, else the input itself.

    Example:
        >>> flaky = FakeRunnable("ok", raises=ConnectionError("reset"), fail_times=2)
        >>> await flaky.with_retry(backoff=ConstantBackoff(0)).ainvoke("q")
        'ok'
        >>> flaky.call_count
        3
    """

    def __init__(
        self,
        return_value: Any = None,
        *,
        raises: type[BaseException] | BaseException | None = None,
        side_effect: Callable[[Any], Any] | None = None,
        fail_times: int | None = None,
        delay: float = 0.0,
        name: str | None = None,
    ) -> None:
        super().__init__(name=name)
        self.return_value = return_value
        self.raises = raises
        self.side_effect = side_effect
        self.fail_times = fail_times
        self.delay = delay
        self.invocations: list[Invocation] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def _should_fail(self) -> bool:
        if self.raises is None:
            return False
        return self.fail_times is None or self.call_count <= self.fail_times

    async def _ainvoke(self, input: Any, config: RunnableConfig, **kwargs: Any) -> Any:
        record = Invocation(input=input, config=config, kwargs=dict(kwargs))
        self.invocations.append(record)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self._should_fail():
                raise self.raises() if isinstance(self.raises, type) else self.raises  # type: ignore[misc]
            if self.side_effect is not None:
                output = self.side_effect(input)
                if inspect.isawaitable(output):
                    output = await output
            elif self.return_value is not None:
                output = self.return_value
            else:
                output = input
        except Exception as e:
            record.exception = e
            raise
        finally:
            self.in_flight -= 1
        record.output = output
        return output


class FakeStreamingRunnable(_Recorder, Runnable[Any, Any]):
    """Runnable that streams scripted chunks.

    ``chunks`` is a fixed sequence or a function of the input. With
    ``fail_after`` set, ``error`` is raised after that many chunks. ``closed``
    counts streams that were finalized, whether exhausted or abandoned.

    Example:
        >>> model = FakeStreamingRunnable(["Hel", "lo"])
        >>> [c async for c in model.astream("hi")]
        ['Hel', 'lo']
        >>> await model.ainvoke("hi")
        'Hello'
    """

    def __init__(
        self,
        chunks: Sequence[Any] | Callable[[Any], Iterable[Any]],
        *,
        delay: float = 0.0,
        fail_after: int | None = None,
        error: BaseException | None = None,
        name: str | None = None,
    ) -> None:
        super().__init__(name=name)
        self.chunks = chunks
        self.delay = delay
        self.fail_after = fail_after
        self.error = error or RuntimeError("stream interrupted")
        self.invocations: list[Invocation] = []
        self.closed = 0

    async def _astream(self, input: Any, config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Any]:
        record = Invocation(input=input, config=config, kwargs=dict(kwargs))
        self.invocations.append(record)
        chunks = list(self.chunks(input) if callable(self.chunks) else self.chunks)
        try:
            for i, chunk in enumerate(chunks):
                if self.fail_after is not None and i >= self.fail_after:
                    record.exception = self.error
                    raise self.error
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield chunk
            if self.fail_after is not None and self.fail_after >= len(chunks):
                record.exception = self.error
                raise self.error
        finally:
            self.closed += 1
