"""Core runnable abstractions and invocation config."""

from .base import (
    Runnable,
    RunnableBinding,
    RunnableLike,
    add_chunks,
    coerce_to_runnable,
    collect_chunks,
)
from .config import (
    RunnableConfig,
    child_config,
    ensure_config,
    get_config_list,
    merge_configs,
    patch_config,
    with_timeout,
)
from .leaf import RunnableAssign, RunnableEach, RunnableGenerator, RunnableLambda, RunnablePassthrough

__all__ = [
    # Base
    "Runnable", "RunnableBinding", "RunnableLike", "coerce_to_runnable", "add_chunks", "collect_chunks",
    # Leaves
    "RunnableLambda", "RunnableGenerator", "RunnablePassthrough", "RunnableAssign", "RunnableEach",
    # Config
    "RunnableConfig", "ensure_config", "merge_configs", "patch_config", "child_config",
    "get_config_list", "with_timeout",
]
