"""Backoff strategies for retry policies.

Delay calculation between retry attempts:
- ExponentialBackoff: Exponential growth with optional jitter
- LinearBackoff: Linear growth with cap
- ConstantBackoff: Fixed delay
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from chaincase.foundation.config import RetrySettings


@runtime_checkable
class Backoff(Protocol):
    """Computes the delay before the next retry.

    Attempt numbers are 0-indexed (delay before the first retry = attempt 0).
    """

    def delay(self, attempt: int) -> float: ...


@dataclass(frozen=True, slots=True)
class ExponentialBackoff:
    """Delay = min(base * multiplier ** attempt, max_delay), scaled by 0.5-1.5x when jittered.

    Attributes:
        base: Initial delay in seconds
        max_delay: Cap in seconds
        multiplier: Growth factor per attempt
        jitter: Randomize delays to avoid synchronized retries
    """

    base: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> ExponentialBackoff:
        return cls(
            base=settings.base_delay,
            max_delay=settings.max_delay,
            multiplier=settings.exponential_base,
            jitter=settings.jitter,
        )

    def delay(self, attempt: int) -> float:
        d = min(self.base * (self.multiplier ** attempt), self.max_delay)
        return d * (0.5 + random.random()) if self.jitter else d


@dataclass(frozen=True, slots=True)
class LinearBackoff:
    """Delay = min(base + increment * attempt, max_delay)."""

    base: float = 1.0
    increment: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        return min(self.base + (self.increment * attempt), self.max_delay)


@dataclass(frozen=True, slots=True)
class ConstantBackoff:
    """Fixed delay between retries (0 retries immediately)."""

    delay_seconds: float = 1.0

    def delay(self, attempt: int) -> float:
        return self.delay_seconds
