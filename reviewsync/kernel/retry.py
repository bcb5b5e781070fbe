"""
Bounded retry combinator.

One policy object drives every retry loop in the service (provider pages,
token refresh, location listing) so attempts and delays stay consistent.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """`max_attempts` counts the first call: 4 attempts means 3 retries."""

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay_for(self, retry_number: int) -> float:
        # retry_number=1 -> base, 2 -> 2*base, 3 -> 4*base
        return min(self.max_delay, self.base_delay * (2 ** (max(1, retry_number) - 1)))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retry_on_result: Callable[[T], bool] | None = None,
    retry_on_exception: Callable[[BaseException], bool] | None = None,
    delay_hint: Callable[[T], float | None] | None = None,
    on_retry: Callable[[int, float, T | None, BaseException | None], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """
    Run `operation` until it returns a non-retryable result or attempts run out.

    When attempts are exhausted on a retryable *result*, that result is returned
    so the caller can map it to a domain error. Retryable *exceptions* are
    re-raised on the last attempt; non-retryable exceptions propagate at once.
    """
    max_attempts = max(1, int(policy.max_attempts))
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await operation()
        except Exception as exc:
            if retry_on_exception is None or not retry_on_exception(exc) or attempt >= max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retrying after exception",
                label=label,
                attempt=attempt,
                delay=delay,
                error=str(exc),
            )
            if on_retry is not None:
                on_retry(attempt, delay, None, exc)
            await sleep(delay)
            continue

        if retry_on_result is None or not retry_on_result(result) or attempt >= max_attempts:
            return result

        delay = policy.delay_for(attempt)
        if delay_hint is not None:
            hinted = delay_hint(result)
            if hinted is not None:
                delay = min(policy.max_delay, max(0.0, hinted))
        logger.warning(
            "Retrying after retryable result",
            label=label,
            attempt=attempt,
            delay=delay,
        )
        if on_retry is not None:
            on_retry(attempt, delay, result, None)
        await sleep(delay)
