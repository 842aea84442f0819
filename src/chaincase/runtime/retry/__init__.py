"""Retry with backoff for runnables.

Usage:
    from chaincase.runtime.retry import RetryPolicy, ExponentialBackoff

    model = flaky_model.with_retry(
        RetryPolicy(max_attempts=4, backoff=ExponentialBackoff(base=0.5)),
    )

Defaults come from CHAINCASE_RETRY_* settings.
"""

from .backoff import Backoff, ConstantBackoff, ExponentialBackoff, LinearBackoff
from .policy import NO_RETRY, RetryPolicy, RunnableRetry, execute_with_retry

__all__ = [
    # Backoff strategies
    "Backoff", "ExponentialBackoff", "LinearBackoff", "ConstantBackoff",
    # Policy
    "RetryPolicy", "NO_RETRY", "RunnableRetry", "execute_with_retry",
]
