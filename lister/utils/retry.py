"""Retry with exponential backoff for marketplace transactions."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from lister.errors import ExhaustedRetries, ListerError

log = logging.getLogger("lister.retry")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ListerError):
        return exc.retryable
    return isinstance(exc, Exception)


async def with_retry(
    action: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 3.0,
    operation: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run `action` until it succeeds or `max_attempts` attempts have failed.

    The wait before attempt k (k >= 2) is initial_delay * 2 ** (k - 2), so
    the first retry waits initial_delay. Every failure is logged before the
    wait. Errors flagged non-retryable are re-raised immediately.

    Raises ExhaustedRetries carrying the last error once the attempts run out.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    def _log_wait(state: RetryCallState) -> None:
        wait = state.next_action.sleep if state.next_action else 0
        log.info("Waiting %.1fs before retrying %s...", wait, operation)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=initial_delay, exp_base=2),
        retry=retry_if_exception(_is_retryable),
        before_sleep=_log_wait,
        sleep=sleep,
    )
    try:
        async for attempt in retrying:
            with attempt:
                try:
                    return await action()
                except Exception as e:
                    log.warning(
                        "Attempt %d/%d failed for %s: %s",
                        attempt.retry_state.attempt_number, max_attempts, operation, e,
                    )
                    raise
    except RetryError as e:
        last = e.last_attempt
        raise ExhaustedRetries(operation, last.attempt_number, last.exception()) from last.exception()
