"""Core runnable abstraction: Runnable, RunnableBinding, and coercion.

A Runnable is a stateless, composable unit of work that maps an input to an
output. Every unit exposes the same surface:

    ainvoke / invoke        one input  -> one output
    abatch / batch          N inputs   -> N outputs (ordered, concurrency-limited)
    astream / stream        one input  -> lazy chunks
    atransform / transform  input chunks -> output chunks

and the same composition operators (``|``/``pipe``, ``bind``,
``with_config``, ``with_fallbacks``, ``with_retry``, ``map``).

Subclasses implement the private hooks:

    _ainvoke(input, config, **kwargs)     required unless _astream/_atransform is given
    _astream(input, config, **kwargs)     native incremental output
    _atransform(chunks, config, **kwargs) stream-to-stream (enables fusion in sequences)

The public methods wrap every hook with run lifecycle callbacks, cancellation
checks, and error wrapping, so a unit never has to handle them itself.

Example:
    >>> class Upper(Runnable[str, str]):
    ...     async def _ainvoke(self, input: str, config: RunnableConfig, **kwargs: Any) -> str:
    ...         return input.upper()
    >>>
    >>> chain = Upper() | (lambda s: s + "!")
    >>> chain.invoke("hello")
    'HELLO!'
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Iterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from chaincase.foundation.errors import ChaincaseError, CompositionError, wrap_exception
from chaincase.runtime.batch import BatchConfig, batch_execute
from chaincase.runtime.concurrency import guard, iter_sync, raise_if_cancelled, run_sync
from chaincase.runtime.observability.callbacks import CallbackManager, RunInfo

from .config import RunnableConfig, child_config, ensure_config, get_config_list, merge_configs

if TYPE_CHECKING:
    from chaincase.foundation.core.leaf import RunnableEach
    from chaincase.runtime.agents.fallback import RunnableWithFallbacks
    from chaincase.runtime.pipeline.pipe import RunnableSequence
    from chaincase.runtime.retry.policy import RetryPolicy, RunnableRetry

Input = TypeVar("Input")
Output = TypeVar("Output")

ConfigArg = RunnableConfig | Mapping[str, Any] | None
BatchConfigArg = ConfigArg | Sequence[RunnableConfig | Mapping[str, Any]]

_NOTHING: Any = object()
STREAM_END: Any = object()


class Runnable(Generic[Input, Output]):
    """Base class for all invocable units.

    Instances are immutable: configuration is set in ``__init__`` and never
    mutated, so one instance can serve any number of concurrent invocations.

    Class variables ``input_type`` / ``output_type`` optionally declare the
    unit's shapes; RunnableSequence checks adjacent plain classes at
    construction time.
    """

    __slots__ = ("_name",)

    input_type: ClassVar[type | None] = None
    output_type: ClassVar[type | None] = None

    def __init__(self, *, name: str | None = None) -> None:
        self._name = name

    # ─────────────────────────────────────────────────────────────────
    # Identity
    # ─────────────────────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self.get_name()

    def get_name(self) -> str:
        return getattr(self, "_name", None) or type(self).__name__

    def __repr__(self) -> str:
        name = getattr(self, "_name", None)
        return f"{type(self).__name__}(name={name!r})" if name else f"{type(self).__name__}()"

    # ─────────────────────────────────────────────────────────────────
    # Hooks (override in subclasses)
    # ─────────────────────────────────────────────────────────────────

    async def _ainvoke(self, input: Input, config: RunnableConfig, **kwargs: Any) -> Output:
        """Produce the full output. Default: collect the unit's own stream."""
        if self._has_native_stream() or self._supports_transform():
            return await collect_chunks(self._stream_body(input, config, **kwargs))
        raise NotImplementedError(f"{type(self).__name__} must implement _ainvoke, _astream or _atransform")

    def _astream(self, input: Input, config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Output]:
        raise NotImplementedError

    def _atransform(self, chunks: AsyncIterator[Input], config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Output]:
        raise NotImplementedError

    def _has_native_stream(self) -> bool:
        return type(self)._astream is not Runnable._astream

    def _supports_transform(self) -> bool:
        """Whether chunks can flow through this unit without buffering the whole input."""
        return type(self)._atransform is not Runnable._atransform

    # ─────────────────────────────────────────────────────────────────
    # Async API
    # ─────────────────────────────────────────────────────────────────

    async def ainvoke(self, input: Input, config: ConfigArg = None, **kwargs: Any) -> Output:
        """Run the unit on one input and return its output.

        Raises:
            InvocationError: The unit's own computation failed (original in ``__cause__``)
            InvocationCancelledError: Cancel token fired or deadline passed
            ChaincaseError: Any other failure, with composition context attached
        """
        return await self._call_with_config(self._ainvoke, input, config, **kwargs)

    async def abatch(
        self,
        inputs: Iterable[Input],
        config: BatchConfigArg = None,
        *,
        max_concurrency: int | None = None,
        return_exceptions: bool = False,
        **kwargs: Any,
    ) -> list[Output | BaseException]:
        """Invoke every input concurrently; results keep input order.

        Args:
            inputs: Items to process
            config: One config for all items, or a list with one per item
            max_concurrency: Bound on in-flight items (falls back to config, then settings)
            return_exceptions: Store failures in their slots instead of raising the first one
        """
        items = list(inputs)
        if not items:
            return []
        configs = get_config_list(config, len(items))

        async def run(index: int, item: Input) -> Output:
            return await self.ainvoke(item, configs[index], **kwargs)

        return await batch_execute(run, items, BatchConfig(
            max_concurrency=max_concurrency or configs[0].max_concurrency,
            return_exceptions=return_exceptions,
        ))

    def astream(self, input: Input, config: ConfigArg = None, **kwargs: Any) -> AsyncIterator[Output]:
        """Stream output chunks. Units without native streaming yield their invoke result once."""
        return self._stream_with_config(self._stream_body, input, config, **kwargs)

    def atransform(self, chunks: AsyncIterator[Input], config: ConfigArg = None, **kwargs: Any) -> AsyncIterator[Output]:
        """Stream output chunks from a stream of input chunks."""
        return self._stream_with_config(self._transform_body, chunks, config, run_input=None, **kwargs)

    def _stream_body(self, input: Input, config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Output]:
        if self._supports_transform():
            return self._atransform(aiter_of(input), config, **kwargs)
        if self._has_native_stream():
            return self._astream(input, config, **kwargs)
        return self._invoke_once(input, config, **kwargs)

    async def _invoke_once(self, input: Input, config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Output]:
        yield await self._ainvoke(input, config, **kwargs)

    async def _transform_body(self, chunks: AsyncIterator[Input], config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Output]:
        if self._supports_transform():
            stream = self._atransform(chunks, config, **kwargs)
        else:
            stream = self._stream_body(await collect_chunks(chunks), config, **kwargs)
        try:
            async for out in stream:
                yield out
        finally:
            await aclose_iterator(stream)

    # ─────────────────────────────────────────────────────────────────
    # Sync facade
    # ─────────────────────────────────────────────────────────────────

    def invoke(self, input: Input, config: ConfigArg = None, **kwargs: Any) -> Output:
        return run_sync(self.ainvoke(input, config, **kwargs))

    def batch(
        self,
        inputs: Iterable[Input],
        config: BatchConfigArg = None,
        *,
        max_concurrency: int | None = None,
        return_exceptions: bool = False,
        **kwargs: Any,
    ) -> list[Output | BaseException]:
        return run_sync(self.abatch(
            inputs, config, max_concurrency=max_concurrency, return_exceptions=return_exceptions, **kwargs,
        ))

    def stream(self, input: Input, config: ConfigArg = None, **kwargs: Any) -> Iterator[Output]:
        """Lazy synchronous stream. Must not be called from a running event loop."""
        return iter_sync(self.astream(input, config, **kwargs))

    def transform(self, chunks: Iterable[Input], config: ConfigArg = None, **kwargs: Any) -> Iterator[Output]:
        return iter_sync(self.atransform(aiter_from(chunks), config, **kwargs))

    # ─────────────────────────────────────────────────────────────────
    # Composition
    # ─────────────────────────────────────────────────────────────────

    def pipe(self, *others: Any, name: str | None = None) -> RunnableSequence[Input, Any]:
        """Compose ``self`` followed by ``others`` into one flat sequence."""
        from chaincase.runtime.pipeline.pipe import RunnableSequence
        return RunnableSequence(self, *others, name=name)

    def __or__(self, other: Any) -> RunnableSequence[Input, Any]:
        return self.pipe(other)

    def __ror__(self, other: Any) -> RunnableSequence[Any, Output]:
        from chaincase.runtime.pipeline.pipe import RunnableSequence
        return RunnableSequence(coerce_to_runnable(other), self)

    def bind(self, **kwargs: Any) -> RunnableBinding[Input, Output]:
        """Return a unit that passes ``kwargs`` to every call (e.g. ``model.bind(stop=["\\n"])``)."""
        return RunnableBinding(self, kwargs=kwargs)

    def with_config(self, config: ConfigArg = None, **fields: Any) -> RunnableBinding[Input, Output]:
        """Return a unit whose every call merges ``config`` under the call-time config."""
        return RunnableBinding(self, config=merge_configs(config, fields))

    def with_fallbacks(
        self,
        fallbacks: Sequence[Runnable[Input, Output] | Callable[..., Any]],
        *,
        exceptions_to_handle: tuple[type[BaseException], ...] = (Exception,),
    ) -> RunnableWithFallbacks[Input, Output]:
        from chaincase.runtime.agents.fallback import RunnableWithFallbacks
        return RunnableWithFallbacks(self, fallbacks, exceptions_to_handle=exceptions_to_handle)

    def with_retry(self, policy: RetryPolicy | None = None, **fields: Any) -> RunnableRetry[Input, Output]:
        """Retry failed invocations with backoff (defaults from CHAINCASE_RETRY_*)."""
        from chaincase.runtime.retry.policy import RunnableRetry
        return RunnableRetry(self, policy, **fields)

    def map(self) -> RunnableEach[Input, Output]:
        """Return a unit that applies ``self`` to every element of a list input."""
        from chaincase.foundation.core.leaf import RunnableEach
        return RunnableEach(self)

    # ─────────────────────────────────────────────────────────────────
    # Run lifecycle
    # ─────────────────────────────────────────────────────────────────

    async def _start_run(self, input: Any, config: ConfigArg) -> tuple[CallbackManager, RunInfo, RunnableConfig, RunnableConfig]:
        """Open a run. Returns (callbacks, run, config, child config)."""
        cfg = ensure_config(config)
        raise_if_cancelled(cfg.cancel_token, cfg.deadline)
        callbacks = CallbackManager.from_config(cfg)
        run = await callbacks.start(self.get_name(), input, cfg)
        return callbacks, run, cfg, child_config(cfg, run.run_id)

    def _as_error(self, exc: Exception) -> ChaincaseError:
        return wrap_exception(exc, self.get_name())

    async def _call_with_config(
        self,
        body: Callable[..., Awaitable[Output]],
        input: Input,
        config: ConfigArg,
        **kwargs: Any,
    ) -> Output:
        callbacks, run, cfg, child = await self._start_run(input, config)
        try:
            output = await guard(body(input, child, **kwargs), cfg.cancel_token, cfg.deadline)
        except asyncio.CancelledError as e:
            await callbacks.error(run, e)
            raise
        except Exception as e:
            err = self._as_error(e)
            await callbacks.error(run, err)
            if err is e:
                raise
            raise err from e
        await callbacks.end(run, output)
        return output

    async def _stream_with_config(
        self,
        body: Callable[..., AsyncIterator[Output]],
        input: Any,
        config: ConfigArg,
        *,
        run_input: Any = _NOTHING,
        **kwargs: Any,
    ) -> AsyncIterator[Output]:
        callbacks, run, cfg, child = await self._start_run(input if run_input is _NOTHING else run_input, config)
        iterator = body(input, child, **kwargs)
        final: Any = _NOTHING
        try:
            while (chunk := await guard(next_chunk(iterator), cfg.cancel_token, cfg.deadline)) is not STREAM_END:
                final = chunk if final is _NOTHING else add_chunks(final, chunk)
                await callbacks.chunk(run, chunk)
                yield chunk
        except GeneratorExit:
            # Consumer stopped early: the run ends with what was streamed so far
            await aclose_iterator(iterator)
            await callbacks.end(run, None if final is _NOTHING else final)
            raise
        except asyncio.CancelledError as e:
            await aclose_iterator(iterator)
            await callbacks.error(run, e)
            raise
        except Exception as e:
            err = self._as_error(e)
            await aclose_iterator(iterator)
            await callbacks.error(run, err)
            if err is e:
                raise
            raise err from e
        finally:
            await aclose_iterator(iterator)
        await callbacks.end(run, None if final is _NOTHING else final)


class RunnableBinding(Runnable[Input, Output]):
    """A unit with kwargs and/or config pre-applied to every call.

    Call-time kwargs and config take precedence over the bound ones. The
    binding is transparent: it opens no run of its own.
    """

    __slots__ = ("_bound", "_kwargs", "_config")

    def __init__(
        self,
        bound: Runnable[Input, Output],
        *,
        kwargs: Mapping[str, Any] | None = None,
        config: ConfigArg = None,
        name: str | None = None,
    ) -> None:
        super().__init__(name=name)
        # Collapse binding-of-binding into one layer
        if isinstance(bound, RunnableBinding):
            kwargs = {**bound._kwargs, **(kwargs or {})}
            config = merge_configs(bound._config, config)
            bound = bound._bound
        self._bound = bound
        self._kwargs: dict[str, Any] = dict(kwargs or {})
        self._config = ensure_config(config)

    @property
    def bound(self) -> Runnable[Input, Output]:
        return self._bound

    @property
    def kwargs(self) -> dict[str, Any]:
        return dict(self._kwargs)

    @property
    def config(self) -> RunnableConfig:
        return self._config

    def get_name(self) -> str:
        return self._name or self._bound.get_name()

    def __repr__(self) -> str:
        return f"RunnableBinding(bound={self._bound!r}, kwargs={self._kwargs!r})"

    def _merged(self, config: ConfigArg) -> RunnableConfig:
        return merge_configs(self._config, config)

    def _supports_transform(self) -> bool:
        return self._bound._supports_transform()

    def _has_native_stream(self) -> bool:
        return self._bound._has_native_stream()

    async def ainvoke(self, input: Input, config: ConfigArg = None, **kwargs: Any) -> Output:
        return await self._bound.ainvoke(input, self._merged(config), **{**self._kwargs, **kwargs})

    async def abatch(
        self,
        inputs: Iterable[Input],
        config: BatchConfigArg = None,
        *,
        max_concurrency: int | None = None,
        return_exceptions: bool = False,
        **kwargs: Any,
    ) -> list[Output | BaseException]:
        items = list(inputs)
        configs = [self._merged(c) for c in get_config_list(config, len(items))]
        return await self._bound.abatch(
            items, configs, max_concurrency=max_concurrency, return_exceptions=return_exceptions,
            **{**self._kwargs, **kwargs},
        )

    def astream(self, input: Input, config: ConfigArg = None, **kwargs: Any) -> AsyncIterator[Output]:
        return self._bound.astream(input, self._merged(config), **{**self._kwargs, **kwargs})

    def atransform(self, chunks: AsyncIterator[Input], config: ConfigArg = None, **kwargs: Any) -> AsyncIterator[Output]:
        return self._bound.atransform(chunks, self._merged(config), **{**self._kwargs, **kwargs})


# ─────────────────────────────────────────────────────────────────────────────
# Coercion
# ─────────────────────────────────────────────────────────────────────────────


RunnableLike = Runnable[Any, Any] | Callable[..., Any] | Mapping[str, Any]


def coerce_to_runnable(thing: RunnableLike) -> Runnable[Any, Any]:
    """Turn a runnable-like object into a Runnable.

    - Runnable: returned as is
    - Mapping: RunnableParallel over its (coerced) values
    - async generator function: RunnableGenerator
    - other callable: RunnableLambda

    Raises:
        CompositionError: ``thing`` is none of the above
    """
    if isinstance(thing, Runnable):
        return thing
    if isinstance(thing, Mapping):
        from chaincase.runtime.pipeline.pipe import RunnableParallel
        return RunnableParallel(thing)
    from chaincase.foundation.core.leaf import RunnableGenerator, RunnableLambda
    if inspect.isasyncgenfunction(thing):
        return RunnableGenerator(thing)
    if callable(thing):
        return RunnableLambda(thing)
    raise CompositionError(f"Expected a Runnable, callable or mapping, got {type(thing).__name__}")


# ─────────────────────────────────────────────────────────────────────────────
# Chunk helpers
# ─────────────────────────────────────────────────────────────────────────────


def add_chunks(left: Any, right: Any) -> Any:
    """Concatenate two stream chunks.

    Mappings merge key by key (values concatenated recursively); other values
    use ``+``; values that do not support ``+`` keep the later chunk.
    """
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        merged = dict(left)
        for key, value in right.items():
            merged[key] = add_chunks(merged[key], value) if key in merged else value
        return merged
    try:
        return left + right
    except TypeError:
        return right


async def collect_chunks(chunks: AsyncIterator[Any]) -> Any:
    """Drain an async iterator into one value with add_chunks (None if empty)."""
    final: Any = _NOTHING
    try:
        async for chunk in chunks:
            final = chunk if final is _NOTHING else add_chunks(final, chunk)
    finally:
        await aclose_iterator(chunks)
    return None if final is _NOTHING else final


async def aiter_of(value: Any) -> AsyncIterator[Any]:
    yield value


async def aiter_from(values: Iterable[Any]) -> AsyncIterator[Any]:
    for value in values:
        yield value


async def next_chunk(iterator: AsyncIterator[Any]) -> Any:
    """Next item of ``iterator``, or STREAM_END once it is exhausted."""
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return STREAM_END


async def aclose_iterator(iterator: AsyncIterator[Any]) -> None:
    if (aclose := getattr(iterator, "aclose", None)) is not None:
        await aclose()
