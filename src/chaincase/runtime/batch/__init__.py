"""Batch execution for runnables.

Provides concurrency-limited batch execution with ordered result slots and
fail-fast or capture-all failure handling.

Usage:
    from chaincase.runtime.batch import BatchConfig, batch_execute

    async def run(index, item):
        return await model.ainvoke(item)

    # Ordered results, first failure raised
    results = await batch_execute(run, prompts, BatchConfig(max_concurrency=10))

    # Per-item outcomes with timing
    detailed = await batch_execute_detailed(run, prompts)
    for item in detailed:
        if item.is_ok:
            print(f"[{item.index}] {item.value} ({item.elapsed_ms:.0f}ms)")
        else:
            print(f"[{item.index}] Failed: {item.error}")
"""

from .batch import (
    BatchConfig,
    BatchItem,
    BatchResult,
    batch_execute,
    batch_execute_detailed,
    batch_execute_sync,
)

__all__ = [
    "BatchConfig",
    "BatchItem",
    "BatchResult",
    "batch_execute",
    "batch_execute_detailed",
    "batch_execute_sync",
]
