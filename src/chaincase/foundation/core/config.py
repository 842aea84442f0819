"""Per-invocation configuration.

RunnableConfig is the ambient context handed to every invocation and
propagated, with small per-level adjustments, to every child invocation:
tags, metadata, callbacks, concurrency limit, run identity, cancellation
and deadline.

Configs are immutable. Composites derive child configs with patch_config();
bound configs combine with call-time configs through merge_configs().

Example:
    >>> cfg = RunnableConfig(tags=("qa",), max_concurrency=4)
    >>> child = patch_config(cfg, tags=("seq:step:1",))
    >>> child.tags
    ('qa', 'seq:step:1')
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError, field_validator

from chaincase.foundation.errors import CompositionError
from chaincase.runtime.concurrency.cancel import CancelToken, deadline_after
from chaincase.runtime.observability.callbacks import CallbackHandler


class RunnableConfig(BaseModel):
    """Invocation context shared down a composition tree.

    Attributes:
        tags: Labels attached to every run opened under this config
        metadata: Free-form key/value data for callbacks
        callbacks: Run lifecycle handlers
        max_concurrency: Upper bound on in-flight items for batch and parallel map
        run_id: Id for the run this config opens (first item only in a batch)
        parent_run_id: Run id of the enclosing invocation
        run_name: Display name for the run this config opens
        cancel_token: Cooperative cancellation signal
        deadline: Monotonic time (``time.monotonic()``) after which work is cancelled
        configurable: Runtime values for configurable units
    """

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    tags: tuple[str, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)
    callbacks: tuple[CallbackHandler, ...] = ()
    max_concurrency: PositiveInt | None = None
    run_id: UUID | None = None
    parent_run_id: UUID | None = None
    run_name: str | None = None
    cancel_token: CancelToken | None = None
    deadline: float | None = None
    configurable: dict[str, Any] = Field(default_factory=dict)

    @field_validator("tags", mode="before")
    @classmethod
    def _dedupe_tags(cls, v: object) -> object:
        if isinstance(v, str):
            return (v,)
        if isinstance(v, (list, tuple)):
            return tuple(dict.fromkeys(v))
        return v

    @field_validator("callbacks", mode="before")
    @classmethod
    def _callbacks_tuple(cls, v: object) -> object:
        if isinstance(v, CallbackHandler):
            return (v,)
        return tuple(v) if isinstance(v, list) else v

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled


_EMPTY = RunnableConfig()


def ensure_config(config: RunnableConfig | Mapping[str, Any] | None = None) -> RunnableConfig:
    """Normalize ``None``, a mapping, or a RunnableConfig to a RunnableConfig.

    Raises:
        CompositionError: Mapping has unknown keys or invalid values
    """
    if config is None:
        return _EMPTY
    if isinstance(config, RunnableConfig):
        return config
    if isinstance(config, Mapping):
        try:
            return RunnableConfig.model_validate(dict(config))
        except ValidationError as e:
            raise CompositionError(f"Invalid runnable config: {e.error_count()} error(s)", details=str(e)) from e
    raise CompositionError(f"Expected RunnableConfig or mapping, got {type(config).__name__}")


def merge_configs(*configs: RunnableConfig | Mapping[str, Any] | None) -> RunnableConfig:
    """Combine configs left to right.

    Later scalar fields win when set. Tags are unioned in order, metadata and
    configurable are merged (later keys win), callbacks are concatenated
    without duplicates.
    """
    tags: dict[str, None] = {}
    metadata: dict[str, Any] = {}
    configurable: dict[str, Any] = {}
    callbacks: list[CallbackHandler] = []
    scalars: dict[str, Any] = {}
    for raw in configs:
        if raw is None:
            continue
        cfg = ensure_config(raw)
        tags.update(dict.fromkeys(cfg.tags))
        metadata.update(cfg.metadata)
        configurable.update(cfg.configurable)
        callbacks.extend(h for h in cfg.callbacks if not any(h is seen for seen in callbacks))
        for name in _SCALARS:
            if (value := getattr(cfg, name)) is not None:
                scalars[name] = value
    return RunnableConfig.model_construct(
        tags=tuple(tags),
        metadata=metadata,
        callbacks=tuple(callbacks),
        configurable=configurable,
        **{name: scalars.get(name) for name in _SCALARS},
    )


_SCALARS = ("max_concurrency", "run_id", "parent_run_id", "run_name", "cancel_token", "deadline")


def patch_config(
    config: RunnableConfig | Mapping[str, Any] | None,
    *,
    tags: Sequence[str] = (),
    metadata: Mapping[str, Any] | None = None,
    **updates: Any,
) -> RunnableConfig:
    """Derive a child config. ``tags`` and ``metadata`` are added; other fields are replaced.

    Example:
        >>> patch_config(cfg, tags=("map:key:a",), parent_run_id=run.run_id, run_id=None)
    """
    cfg = ensure_config(config)
    update: dict[str, Any] = dict(updates)
    if tags:
        update["tags"] = tuple(dict.fromkeys((*cfg.tags, *tags)))
    if metadata:
        update["metadata"] = {**cfg.metadata, **metadata}
    return cfg.model_copy(update=update) if update else cfg


def child_config(config: RunnableConfig, parent_run_id: UUID | None, *tags: str) -> RunnableConfig:
    """Config for a child invocation: parent link set, run identity cleared, tags added."""
    return patch_config(config, tags=tags, parent_run_id=parent_run_id, run_id=None, run_name=None)


def get_config_list(
    config: RunnableConfig | Mapping[str, Any] | Sequence[RunnableConfig | Mapping[str, Any]] | None,
    length: int,
) -> list[RunnableConfig]:
    """Expand ``config`` into one config per batch item.

    A single config is shared by all items, except that an explicit run_id
    only applies to the first item. A list must match ``length``.

    Raises:
        CompositionError: List length does not match the batch
    """
    if isinstance(config, (list, tuple)):
        if len(config) != length:
            raise CompositionError(f"Config list length {len(config)} does not match batch size {length}")
        return [ensure_config(c) for c in config]
    cfg = ensure_config(config)  # type: ignore[arg-type]
    if cfg.run_id is None or length <= 1:
        return [cfg] * length
    rest = cfg.model_copy(update={"run_id": None})
    return [cfg, *([rest] * (length - 1))]


def with_timeout(config: RunnableConfig | Mapping[str, Any] | None, seconds: float) -> RunnableConfig:
    """Return ``config`` with a deadline ``seconds`` from now (earliest deadline wins)."""
    cfg = ensure_config(config)
    deadline = deadline_after(seconds)
    if cfg.deadline is not None:
        deadline = min(deadline, cfg.deadline)
    return cfg.model_copy(update={"deadline": deadline})
