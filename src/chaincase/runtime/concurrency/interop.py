"""Sync/async interoperability utilities.

Runnables are async-first. The synchronous facade (``invoke``, ``batch``,
``stream``) goes through these helpers:
    - run_sync: Run a coroutine to completion from sync code
    - iter_sync: Drive an async iterator from sync code, one item at a time

run_sync handles the tricky case of being called while an event loop is
already running (Jupyter, nested frameworks) by running the coroutine on a
private loop in a worker thread.

Example:
    >>> result = run_sync(chain.ainvoke("question"))
    >>> for chunk in iter_sync(chain.astream("question")):
    ...     print(chunk, end="")
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Coroutine, Iterator
from typing import TypeVar

T = TypeVar("T")


# ─────────────────────────────────────────────────────────────────────────────
# Coroutines
# ─────────────────────────────────────────────────────────────────────────────

def run_sync(coro: Coroutine[object, object, T]) -> T:
    """Run async coroutine from synchronous context.

    1. No running loop → ``asyncio.run()``
    2. Called from within an event loop → private loop in a worker thread
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    return _run_in_thread_loop(coro)


def _run_in_thread_loop(coro: Coroutine[object, object, T]) -> T:
    """Run coroutine in a new thread with its own event loop."""
    result: T | None = None
    error: BaseException | None = None
    done = threading.Event()

    def runner() -> None:
        nonlocal result, error
        try:
            result = asyncio.run(coro)
        except BaseException as e:
            error = e
        finally:
            done.set()

    thread = threading.Thread(target=runner, daemon=True, name="chaincase-run-sync")
    thread.start()
    done.wait()

    if error is not None:
        raise error
    return result  # type: ignore[return-value]


# ─────────────────────────────────────────────────────────────────────────────
# Async iterators
# ─────────────────────────────────────────────────────────────────────────────

def iter_sync(aiter: AsyncIterator[T]) -> Iterator[T]:
    """Iterate an async iterator from synchronous code.

    Each item is pulled by running the iterator's ``__anext__`` on a private
    event loop, so chunks reach the caller as they are produced. Abandoning
    the iteration early closes the async generator on the same loop.

    Raises:
        RuntimeError: If called while an event loop is running in this thread
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        pass
    else:
        raise RuntimeError("iter_sync() cannot be called from a running event loop; use the async API instead")

    loop = asyncio.new_event_loop()
    try:
        while True:
            try:
                item = loop.run_until_complete(aiter.__anext__())
            except StopAsyncIteration:
                return
            yield item
    finally:
        aclose = getattr(aiter, "aclose", None)
        if aclose is not None:
            loop.run_until_complete(aclose())
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
