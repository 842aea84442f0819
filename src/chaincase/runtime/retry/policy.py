"""Retry policy and the retrying decorator unit.

Retries are never implicit: a unit retries only when wrapped with
``with_retry()`` / RunnableRetry. Fallback candidates are still tried once
each; wrap a candidate to retry it.

Example:
    >>> model = flaky_model.with_retry(max_attempts=4, backoff=ConstantBackoff(0.5))
    >>> chain = prompt | model | parser
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_serializer, field_validator

from chaincase.foundation.config import get_settings
from chaincase.foundation.core import Runnable, RunnableConfig, RunnableLike, coerce_to_runnable, patch_config
from chaincase.foundation.core.base import STREAM_END, Input, Output, aclose_iterator, next_chunk
from chaincase.foundation.errors import ChaincaseError, ErrorCode, InvocationCancelledError, original_exception
from chaincase.runtime.concurrency import sleep

from .backoff import Backoff, ExponentialBackoff

logger = logging.getLogger("chaincase.retry")


class RetryPolicy(BaseModel):
    """When and how to retry a failed invocation.

    Attributes:
        max_attempts: Total attempts including the first (1 = no retries)
        backoff: Delay strategy between attempts
        retry_on: Exception types that are retried (matched against the
            error and, for wrapped leaf failures, the original exception)
        retryable_codes: If set, only errors with these codes are retried
        on_retry: Called with (attempt, error, delay) before each retry

    Example:
        >>> policy = RetryPolicy(
        ...     max_attempts=3,
        ...     backoff=ExponentialBackoff(base=0.5, max_delay=10.0),
        ...     retryable_codes={"RATE_LIMITED", "TIMEOUT"},
        ... )
    """

    model_config = ConfigDict(
        frozen=True,
        arbitrary_types_allowed=True,
        validate_default=True,
        extra="forbid",
        revalidate_instances="never",
        json_schema_extra={
            "title": "Retry Policy",
            "examples": [{"max_attempts": 3, "retryable_codes": ["RATE_LIMITED", "TIMEOUT"]}],
        },
    )

    max_attempts: Annotated[int, Field(ge=1, le=10)] = 3
    backoff: Backoff = Field(default_factory=ExponentialBackoff, repr=False)
    retry_on: tuple[type[BaseException], ...] = (Exception,)
    retryable_codes: frozenset[ErrorCode] | None = None
    on_retry: Callable[[int, ChaincaseError, float], None] | None = Field(default=None, exclude=True, repr=False)

    @field_validator("retryable_codes", mode="before")
    @classmethod
    def _normalize_codes(cls, v: object) -> object:
        """Accept strings and convert to ErrorCode enum."""
        if v is None or (isinstance(v, frozenset) and all(isinstance(c, ErrorCode) for c in v)):
            return v
        return frozenset(ErrorCode(c) if isinstance(c, str) else c for c in v)  # type: ignore[union-attr]

    @field_serializer("retryable_codes")
    def _serialize_codes(self, v: frozenset[ErrorCode] | None) -> list[str] | None:
        return None if v is None else sorted(c.value for c in v)

    @computed_field
    @property
    def is_disabled(self) -> bool:
        return self.max_attempts == 1 or self.retryable_codes == frozenset()

    @classmethod
    def from_settings(cls, **overrides: Any) -> RetryPolicy:
        """Policy with defaults from CHAINCASE_RETRY_* settings."""
        settings = get_settings().retry
        fields: dict[str, Any] = {
            "max_attempts": settings.max_attempts,
            "backoff": ExponentialBackoff.from_settings(settings),
        }
        return cls(**{**fields, **overrides})

    def replace(self, **updates: Any) -> RetryPolicy:
        """Validated copy with ``updates`` applied."""
        return type(self)(**{**{name: getattr(self, name) for name in type(self).model_fields}, **updates})

    def should_retry(self, error: ChaincaseError, attempt: int) -> bool:
        """Whether to retry after ``error`` on 0-indexed ``attempt``. Cancellation is never retried."""
        if attempt + 1 >= self.max_attempts or isinstance(error, InvocationCancelledError):
            return False
        if not (isinstance(error, self.retry_on) or isinstance(original_exception(error), self.retry_on)):
            return False
        return self.retryable_codes is None or error.code in self.retryable_codes

    def get_delay(self, attempt: int) -> float:
        return self.backoff.delay(attempt)

    def __hash__(self) -> int:
        return hash((self.max_attempts, self.retry_on, self.retryable_codes))


NO_RETRY = RetryPolicy(max_attempts=1)


async def execute_with_retry(
    operation: Callable[[int], Awaitable[Output]],
    policy: RetryPolicy,
    name: str,
    config: RunnableConfig | None = None,
) -> Output:
    """Run ``operation(attempt)`` until it succeeds or the policy gives up.

    Sleeps between attempts with the cancel-aware sleep, so a fired cancel
    token or a passed deadline ends the wait with InvocationCancelledError.
    """
    attempt = 0
    while True:
        try:
            return await operation(attempt)
        except ChaincaseError as e:
            if not policy.should_retry(e, attempt):
                if attempt:
                    e.with_context(f"retry:{name}", attempts=attempt + 1)
                raise
            delay = policy.get_delay(attempt)
            logger.info("[%s] Retry %d/%d after %.2fs (code: %s)", name, attempt + 1, policy.max_attempts - 1, delay, e.code)
            if policy.on_retry:
                policy.on_retry(attempt, e, delay)
            await sleep(delay, config)
            attempt += 1


class RunnableRetry(Runnable[Input, Output]):
    """Wraps a runnable and retries failed invocations per a RetryPolicy.

    Streaming retries only until the first chunk has been delivered.
    """

    __slots__ = ("_bound", "_policy")

    def __init__(self, bound: RunnableLike, policy: RetryPolicy | None = None, *, name: str | None = None, **fields: Any) -> None:
        super().__init__(name=name)
        self._bound = coerce_to_runnable(bound)
        base = policy or RetryPolicy.from_settings()
        self._policy = base.replace(**fields) if fields else base

    @property
    def bound(self) -> Runnable[Input, Output]:
        return self._bound

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def get_name(self) -> str:
        return self._name or f"{self._bound.get_name()}WithRetry"

    def __repr__(self) -> str:
        return f"RunnableRetry({self._bound!r}, max_attempts={self._policy.max_attempts})"

    def _attempt_config(self, config: RunnableConfig, attempt: int) -> RunnableConfig:
        return patch_config(config, tags=(f"retry:attempt:{attempt + 1}",))

    async def _ainvoke(self, input: Input, config: RunnableConfig, **kwargs: Any) -> Output:
        async def attempt(n: int) -> Output:
            return await self._bound.ainvoke(input, self._attempt_config(config, n), **kwargs)

        return await execute_with_retry(attempt, self._policy, self.get_name(), config)

    async def _astream(self, input: Input, config: RunnableConfig, **kwargs: Any) -> AsyncIterator[Output]:
        async def open_stream(n: int) -> tuple[AsyncIterator[Output], Any]:
            stream = self._bound.astream(input, self._attempt_config(config, n), **kwargs)
            try:
                return stream, await next_chunk(stream)
            except BaseException:
                await aclose_iterator(stream)
                raise

        stream, first = await execute_with_retry(open_stream, self._policy, self.get_name(), config)
        try:
            if first is STREAM_END:
                return
            yield first
            async for chunk in stream:
                yield chunk
        finally:
            await aclose_iterator(stream)
