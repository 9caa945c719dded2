"""
Backoff executor — bounded exponential retry around any async operation.

Delay before retry ``n`` is ``base_delay * 2 ** (n - 1)``; no jitter. After
``attempts`` failures the last error is re-raised to the caller.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential

logger = structlog.get_logger()

T = TypeVar("T")


def backoff_delays(attempts: int = 5, base_delay: float = 0.5) -> list[float]:
    """Delays slept between the ``attempts`` tries (one fewer than attempts)."""
    return [base_delay * (2 ** (i - 1)) for i in range(1, attempts)]


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "backoff_retry",
        attempt=retry_state.attempt_number,
        wait_s=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(error),
    )


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 5,
    base_delay: float = 0.5,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or ``attempts`` tries have failed."""
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_delay, exp_base=2, min=0),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
