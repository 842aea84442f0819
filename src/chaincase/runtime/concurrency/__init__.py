"""Concurrency primitives for runnables.

- CancelToken / guard / checkpoint: cooperative cancellation and deadlines
- run_sync / iter_sync: the synchronous facade over the async API
"""

from .cancel import CancelToken, checkpoint, deadline_after, guard, raise_if_cancelled, sleep
from .interop import iter_sync, run_sync

__all__ = [
    # Cancellation
    "CancelToken", "guard", "checkpoint", "sleep", "deadline_after", "raise_if_cancelled",
    # Interop
    "run_sync", "iter_sync",
]
