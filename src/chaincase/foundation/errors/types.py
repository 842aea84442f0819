"""Composition provenance for runnable failures.

An error raised deep inside a composition tree picks up one ErrorContext per
composite it passes through on the way out (innermost first):

    invoke:search                      leaf boundary
    map:retrieval (branch=docs)        parallel branch
    sequence:qa (step=2, runnable=retrieval)

The ErrorTrace holding that stack is a frozen pydantic model, so a failure
can be dumped to JSON for logs without losing the path.
"""

from __future__ import annotations

from typing import Annotated, Any, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_serializer

JsonPrimitive = Union[str, int, float, bool, None]
JsonValue = Union[JsonPrimitive, list[Any], dict[str, Any]]
JsonDict = dict[str, Any]

_NO_METADATA: JsonDict = {}


class ErrorContext(BaseModel):
    """One composition frame: ``<kind>:<unit>`` plus frame metadata (step, branch, route, attempt)."""

    model_config = ConfigDict(
        frozen=True, extra="forbid", revalidate_instances="never",
        json_schema_extra={"examples": [{"operation": "sequence:qa", "metadata": {"step": 2, "runnable": "retrieval"}}]},
    )

    operation: Annotated[str, Field(min_length=1)]
    metadata: JsonDict = Field(default_factory=dict, repr=False)

    @property
    def kind(self) -> str:
        """Composite kind: invoke, sequence, map, router, fallbacks, retry."""
        return self.operation.partition(":")[0]

    @property
    def unit(self) -> str:
        """Name of the runnable that added this frame."""
        return self.operation.partition(":")[2]

    def __str__(self) -> str:
        if not self.metadata:
            return self.operation
        return f"{self.operation} ({', '.join(f'{k}={v}' for k, v in self.metadata.items())})"

    def __hash__(self) -> int:
        return hash((self.operation, tuple((k, str(v)) for k, v in self.metadata.items())))


class ErrorTrace(BaseModel):
    """Message, code and composition path of a failure."""

    model_config = ConfigDict(frozen=True, extra="forbid", revalidate_instances="never")

    message: Annotated[str, Field(min_length=1)]
    error_code: str | None = None
    recoverable: bool = True
    contexts: tuple[ErrorContext, ...] = ()
    details: str | None = Field(default=None, repr=False)

    @field_serializer("contexts")
    def _dump_contexts(self, v: tuple[ErrorContext, ...]) -> list[JsonDict]:
        return [{"operation": c.operation, **c.metadata} for c in v]

    @computed_field
    @property
    def path(self) -> list[str]:
        """Frames as strings, innermost first."""
        return [str(c) for c in self.contexts]

    def frames(self, kind: str) -> list[ErrorContext]:
        """Frames added by composites of one kind, e.g. ``frames("map")``."""
        return [c for c in self.contexts if c.kind == kind]

    def push(self, operation: str, **metadata: JsonValue) -> ErrorTrace:
        """New trace with one more (outer) frame."""
        return self.model_copy(update={"contexts": (*self.contexts, context(operation, **metadata))})

    def format(self, *, include_details: bool = False) -> str:
        """Human-readable form used as the exception's ``str``."""
        text = f"{self.message} [{self.error_code}]" if self.error_code else self.message
        if self.contexts:
            text += "\nContext trace:\n" + "\n".join(f"  - {c}" for c in self.contexts)
        if include_details and self.details:
            text += f"\nDetails:\n{self.details}"
        return text

    __str__ = format

    def __hash__(self) -> int:
        return hash((self.message, self.error_code, self.contexts))


def context(operation: str, **metadata: JsonValue) -> ErrorContext:
    """Build a frame without validation (hot path on every failing composite)."""
    return ErrorContext.model_construct(operation=operation, metadata=metadata or _NO_METADATA)


def trace(message: str, *, code: str | None = None, recoverable: bool = True, details: str | None = None) -> ErrorTrace:
    """Build an empty-path trace without validation."""
    return ErrorTrace.model_construct(
        message=message, error_code=code, recoverable=recoverable, contexts=(), details=details,
    )
