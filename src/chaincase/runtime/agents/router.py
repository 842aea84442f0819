"""Router primitive for keyed runnable dispatch.

Routes each input to one of several named runnables by exact key match.
There is no default route: an unknown key is a RoutingError.

Example:
    >>> chain = router(math=math_chain, english=english_chain)
    >>> await chain.ainvoke({"key": "math", "input": "2 + 2"})
    '4'
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from chaincase.foundation.core import Runnable, RunnableConfig, RunnableLike, coerce_to_runnable, patch_config
from chaincase.foundation.core.base import aclose_iterator
from chaincase.foundation.errors import ChaincaseError, CompositionError, RoutingError


class RouterInput(BaseModel):
    """Input for RouterRunnable: which route, and what to send it."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    key: str
    input: Any = None


class RouterRunnable(Runnable[RouterInput | Mapping[str, Any], Any]):
    """Dispatches ``{"key": ..., "input": ...}`` to the runnable registered under ``key``.

    The selected runnable's output is returned unmodified. Batching routes
    every item independently, so one batch can reach several routes.
    """

    __slots__ = ("_runnables",)

    def __init__(self, runnables: Mapping[str, RunnableLike], *, name: str | None = None) -> None:
        super().__init__(name=name)
        if not runnables:
            raise CompositionError("RouterRunnable requires at least one route")
        self._runnables = {str(key): coerce_to_runnable(r) for key, r in runnables.items()}

    @property
    def runnables(self) -> dict[str, Runnable[Any, Any]]:
        return dict(self._runnables)

    @property
    def routes(self) -> tuple[str, ...]:
        return tuple(self._runnables)

    def __repr__(self) -> str:
        return f"RouterRunnable(routes={list(self._runnables)!r})"

    def _select(self, input: RouterInput | Mapping[str, Any]) -> tuple[str, Runnable[Any, Any], Any]:
        """Validate input and return (key, runnable, inner input)."""
        if isinstance(input, RouterInput):
            parsed = input
        elif isinstance(input, Mapping):
            try:
                parsed = RouterInput.model_validate(dict(input))
            except ValidationError as e:
                raise CompositionError(
                    f"{self.get_name()} expects {{'key': str, 'input': ...}}", details=str(e),
                ) from e
        else:
            raise CompositionError(f"{self.get_name()} expects a RouterInput or mapping, got {type(input).__name__}")
        if (runnable := self._runnables.get(parsed.key)) is None:
            raise RoutingError(parsed.key, list(self._runnables))
        return parsed.key, runnable, parsed.input

    def _annotate(self, err: ChaincaseError, key: str) -> ChaincaseError:
        return err.with_context(f"router:{self.get_name()}", route=key)

    async def _ainvoke(self, input: RouterInput | Mapping[str, Any], config: RunnableConfig, **kwargs: Any) -> Any:
        key, runnable, inner = self._select(input)
        try:
            return await runnable.ainvoke(inner, patch_config(config, tags=(f"route:{key}",)))
        except ChaincaseError as e:
            raise self._annotate(e, key)

    async def _astream(self, input: RouterInput | Mapping[str, Any], config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Any]:
        key, runnable, inner = self._select(input)
        stream = runnable.astream(inner, patch_config(config, tags=(f"route:{key}",)))
        try:
            async for chunk in stream:
                yield chunk
        except ChaincaseError as e:
            raise self._annotate(e, key)
        finally:
            await aclose_iterator(stream)


def router(routes: Mapping[str, RunnableLike] | None = None, /, *, name: str | None = None, **kwargs: RunnableLike) -> RouterRunnable:
    """Create a keyed router.

    Example:
        >>> chain = router(math=math_chain, english=english_chain, name="subject")
    """
    return RouterRunnable({**(routes or {}), **kwargs}, name=name)
