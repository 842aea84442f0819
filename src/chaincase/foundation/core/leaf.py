"""Leaf runnables built from plain Python callables.

- RunnableLambda: sync or async function of one input
- RunnableGenerator: async generator that transforms a chunk stream
- RunnablePassthrough / RunnableAssign: identity, and identity plus computed keys
- RunnableEach: apply a runnable to every element of a list
"""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import Any

from chaincase.foundation.errors import CompositionError

from .base import Input, Output, Runnable, RunnableLike, aclose_iterator
from .config import RunnableConfig, patch_config


def _call_options(func: Callable[..., Any]) -> tuple[bool, bool]:
    """(accepts ``config``, accepts ``**kwargs``) for ``func``."""
    try:
        params = inspect.signature(func).parameters.values()
    except (TypeError, ValueError):
        return False, False
    var_kw = any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params)
    return var_kw or any(p.name == "config" for p in params), var_kw


class RunnableLambda(Runnable[Input, Output]):
    """Runnable wrapping a function of one argument.

    The function may be sync or async. It receives ``config=`` if its
    signature accepts it, and call kwargs if it takes ``**kwargs``. If it
    returns a Runnable, that runnable is invoked with the same input.

    Example:
        >>> double = RunnableLambda(lambda x: x * 2)
        >>> await double.ainvoke(3)
        6
    """

    __slots__ = ("_func", "_afunc", "_accepts_config", "_accepts_kwargs")

    def __init__(
        self,
        func: Callable[[Input], Output] | Callable[[Input], Awaitable[Output]],
        afunc: Callable[[Input], Awaitable[Output]] | None = None,
        *,
        name: str | None = None,
    ) -> None:
        if not callable(func):
            raise CompositionError(f"RunnableLambda expects a callable, got {type(func).__name__}")
        super().__init__(name=name)
        if afunc is None and inspect.iscoroutinefunction(func):
            afunc = func
        self._func = func
        self._afunc = afunc
        self._accepts_config, self._accepts_kwargs = _call_options(afunc or func)

    def get_name(self) -> str:
        if self._name:
            return self._name
        fn_name = getattr(self._afunc or self._func, "__name__", "")
        return fn_name if fn_name and fn_name != "<lambda>" else "RunnableLambda"

    def __repr__(self) -> str:
        return f"RunnableLambda({self.get_name()})"

    async def _ainvoke(self, input: Input, config: RunnableConfig, **kwargs: Any) -> Output:
        call_kw: dict[str, Any] = dict(kwargs) if self._accepts_kwargs else {}
        if self._accepts_config:
            call_kw["config"] = config
        output = await self._afunc(input, **call_kw) if self._afunc else self._func(input, **call_kw)
        if inspect.isawaitable(output):
            output = await output
        if isinstance(output, Runnable):
            return await output.ainvoke(input, patch_config(config, tags=("lambda:dispatch",)))
        return output


class RunnableGenerator(Runnable[Input, Output]):
    """Runnable wrapping an async generator over input chunks.

    Streams natively: inside a sequence, chunks flow through it without the
    whole input being buffered. ``ainvoke`` concatenates its output chunks.

    Example:
        >>> async def shout(chunks):
        ...     async for chunk in chunks:
        ...         yield chunk.upper()
        >>> [c async for c in RunnableGenerator(shout).astream("hi")]
        ['HI']
    """

    __slots__ = ("_transform", "_accepts_config")

    def __init__(self, transform: Callable[..., AsyncIterator[Output]], *, name: str | None = None) -> None:
        if not inspect.isasyncgenfunction(transform):
            raise CompositionError("RunnableGenerator expects an async generator function")
        super().__init__(name=name)
        self._transform = transform
        self._accepts_config = _call_options(transform)[0]

    def get_name(self) -> str:
        return self._name or getattr(self._transform, "__name__", "RunnableGenerator")

    async def _atransform(self, chunks: AsyncIterator[Input], config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Output]:
        gen = self._transform(chunks, config=config) if self._accepts_config else self._transform(chunks)
        try:
            async for chunk in gen:
                yield chunk
        finally:
            await aclose_iterator(gen)


class RunnablePassthrough(Runnable[Input, Input]):
    """Returns its input unchanged; streams chunks through untouched.

    Example:
        >>> chain = {"question": RunnablePassthrough(), "context": retriever} | prompt
    """

    __slots__ = ()

    async def _ainvoke(self, input: Input, config: RunnableConfig, **kwargs: Any) -> Input:
        return input

    async def _atransform(self, chunks: AsyncIterator[Input], config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Input]:
        async for chunk in chunks:
            yield chunk

    @staticmethod
    def assign(**branches: RunnableLike) -> RunnableAssign:
        """Pass a mapping input through with extra keys computed by ``branches``.

        Example:
            >>> RunnablePassthrough.assign(total=lambda d: d["a"] + d["b"]).invoke({"a": 1, "b": 2})
            {'a': 1, 'b': 2, 'total': 3}
        """
        from chaincase.runtime.pipeline.pipe import RunnableParallel
        return RunnableAssign(RunnableParallel(branches))


class RunnableAssign(Runnable[Mapping[str, Any], dict[str, Any]]):
    """Merges the output of a parallel map into a mapping input."""

    __slots__ = ("_mapper",)

    def __init__(self, mapper: Runnable[Mapping[str, Any], dict[str, Any]], *, name: str | None = None) -> None:
        super().__init__(name=name)
        self._mapper = mapper

    @property
    def mapper(self) -> Runnable[Mapping[str, Any], dict[str, Any]]:
        return self._mapper

    async def _ainvoke(self, input: Mapping[str, Any], config: RunnableConfig, **kwargs: Any) -> dict[str, Any]:
        if not isinstance(input, Mapping):
            raise CompositionError(f"{self.get_name()} expects a mapping input, got {type(input).__name__}")
        return {**input, **await self._mapper.ainvoke(input, config)}


class RunnableEach(Runnable[list[Input], list[Output]]):
    """Applies a runnable to every element of a list input, via its ``abatch``."""

    __slots__ = ("_bound",)

    def __init__(self, bound: Runnable[Input, Output], *, name: str | None = None) -> None:
        super().__init__(name=name)
        self._bound = bound

    @property
    def bound(self) -> Runnable[Input, Output]:
        return self._bound

    def get_name(self) -> str:
        return self._name or f"RunnableEach<{self._bound.get_name()}>"

    async def _ainvoke(self, input: list[Input], config: RunnableConfig, **kwargs: Any) -> list[Output]:
        return await self._bound.abatch(input, config, **kwargs)  # type: ignore[return-value]
