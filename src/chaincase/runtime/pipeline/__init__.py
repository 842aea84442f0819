"""Pipeline composition for runnables.

Sequential: RunnableSequence / sequence() / ``a | b | c``
Parallel:   RunnableParallel (alias RunnableMap) / parallel() / ``{"a": x, "b": y}``
"""

from .pipe import RunnableMap, RunnableParallel, RunnableSequence, parallel, sequence

__all__ = [
    "RunnableSequence", "sequence",
    "RunnableParallel", "RunnableMap", "parallel",
]
