"""Timeout and retry policy for the engine's suspension points.

External extraction calls and persistent-store calls both go through
run_with_policy: each attempt is bounded by a timeout, and transient failures
are retried with exponential backoff and jitter.

Based on tenacity's async support:
https://tenacity.readthedocs.io/en/latest/#async-and-retry
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and bounded retry settings for one kind of call."""

    max_attempts: int = 3
    timeout: float = 30.0
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    backoff_jitter: float = 1.0


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Attempt {retry_state.attempt_number} failed with {exc!r}; retrying "
        f"in {retry_state.upcoming_sleep:.2f}s"
    )


async def run_with_policy(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_transient: Callable[[BaseException], bool],
    on_timeout: Callable[[], Exception],
) -> T:
    """Run an async call under a timeout, retrying transient failures.

    Args:
        call: Zero-argument coroutine factory, invoked once per attempt
        policy: Timeout and retry settings
        is_transient: Predicate selecting exceptions worth retrying
        on_timeout: Builds the exception raised when an attempt times out

    Returns:
        Result of the first successful attempt

    Raises:
        The last exception once attempts are exhausted, or immediately for
        non-transient failures
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential_jitter(
            multiplier=policy.backoff_initial,
            max=policy.backoff_max,
            jitter=policy.backoff_jitter,
        ),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            try:
                result = await asyncio.wait_for(call(), timeout=policy.timeout)
            except TimeoutError as e:
                raise on_timeout() from e
    return result
