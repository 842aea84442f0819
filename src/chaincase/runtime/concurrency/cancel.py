"""Cooperative cancellation for runnable invocations.

A CancelToken travels inside RunnableConfig and is handed unchanged to every
child invocation. Runnables check it at each suspension point; when it fires,
the pending awaitable is cancelled and the invocation fails with
InvocationCancelledError instead of hanging.

A deadline (monotonic seconds, see ``time.monotonic``) works the same way.

Example:
    >>> token = CancelToken()
    >>> config = RunnableConfig(cancel_token=token)
    >>> task = asyncio.create_task(chain.ainvoke("question", config))
    >>> token.cancel("user closed the tab")
    >>> await task  # raises InvocationCancelledError
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

from chaincase.foundation.errors import InvocationCancelledError

if TYPE_CHECKING:
    from chaincase.foundation.core.config import RunnableConfig

T = TypeVar("T")


class CancelToken:
    """Thread-safe, loop-agnostic cancellation signal.

    Firing the token runs every registered callback once. Callbacks added
    after the token fired run immediately.
    """

    __slots__ = ("_cancelled", "_reason", "_callbacks", "_lock")

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Invocation cancelled") -> bool:
        """Fire the token. Returns False if it had already fired."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._reason = reason
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` to run on cancel. Returns a function that unregisters it."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return lambda: self._remove(callback)
        callback()
        return _noop

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise InvocationCancelledError(self._reason or "Invocation cancelled")

    def _remove(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def __repr__(self) -> str:
        state = f"cancelled reason={self._reason!r}" if self._cancelled else "active"
        return f"CancelToken({state})"


def _noop() -> None:
    return None


def deadline_after(seconds: float) -> float:
    """Monotonic deadline ``seconds`` from now."""
    return time.monotonic() + seconds


def raise_if_cancelled(token: CancelToken | None, deadline: float | None = None) -> None:
    """Raise InvocationCancelledError if the token fired or the deadline passed."""
    if token is not None:
        token.raise_if_cancelled()
    if deadline is not None and time.monotonic() >= deadline:
        raise InvocationCancelledError.deadline_exceeded()


async def checkpoint(config: RunnableConfig | None = None) -> None:
    """Cooperative cancellation point.

    Yields control to the event loop, then raises if the config's token
    fired or its deadline passed.
    """
    await asyncio.sleep(0)
    if config is not None:
        raise_if_cancelled(config.cancel_token, config.deadline)


async def guard(
    awaitable: Awaitable[T],
    token: CancelToken | None = None,
    deadline: float | None = None,
) -> T:
    """Await ``awaitable`` unless the token fires or the deadline passes first.

    With neither a token nor a deadline this is a plain ``await``. Otherwise
    the awaitable runs as its own task, which is cancelled when the token
    fires or the deadline passes; the caller then gets
    InvocationCancelledError. Cancellation of the caller itself propagates
    unchanged.
    """
    if token is None and deadline is None:
        return await awaitable

    try:
        raise_if_cancelled(token, deadline)
    except InvocationCancelledError:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise

    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(awaitable)
    fired = False

    def _on_cancel() -> None:
        nonlocal fired
        fired = True
        loop.call_soon_threadsafe(task.cancel)

    remove = token.add_callback(_on_cancel) if token is not None else _noop
    timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise InvocationCancelledError.deadline_exceeded()
        if task.cancelled() and fired:
            raise InvocationCancelledError(token.reason if token and token.reason else "Invocation cancelled")
        return task.result()
    except asyncio.CancelledError:
        # The awaited work must have stopped before the caller unwinds
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise
    finally:
        remove()


async def sleep(seconds: float, config: RunnableConfig | None = None) -> None:
    """Cancel-aware ``asyncio.sleep``."""
    if config is None:
        await asyncio.sleep(seconds)
        return
    await guard(asyncio.sleep(seconds), config.cancel_token, config.deadline)
