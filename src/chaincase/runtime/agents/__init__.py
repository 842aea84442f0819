"""Dispatch primitives for runnables.

- RouterRunnable / router(): exact-key dispatch to one of several runnables
- RunnableWithFallbacks / fallback(): ordered alternates on failure
"""

from .fallback import RunnableWithFallbacks, fallback
from .router import RouterInput, RouterRunnable, router

__all__ = [
    # Router
    "RouterInput", "RouterRunnable", "router",
    # Fallback
    "RunnableWithFallbacks", "fallback",
]
