"""
HTTP helpers for provider calls.

Provides bounded retry/backoff for rate limits, server errors and network
failures on top of the shared retry combinator.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable

import httpx
import structlog

from reviewsync.kernel.retry import RetryPolicy, retry_async
from reviewsync.monitoring.metrics import provider_http_retries_total

logger = structlog.get_logger()


RETRY_STATUSES = {429, 500, 502, 503, 504}


def is_retryable_network_error(exc: BaseException) -> bool:
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError))


def _retry_after_seconds(response: httpx.Response) -> float | None:
    retry_after = response.headers.get("Retry-After")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        return None


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    policy: RetryPolicy,
    retry_statuses: Iterable[int] | None = None,
    operation: str = "request",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs,
) -> httpx.Response:
    """
    Make an HTTP request, retrying retryable statuses and network errors.

    After the last attempt the final response is returned as-is (even when its
    status is retryable) so callers decide how to classify it.
    """
    statuses = set(retry_statuses or RETRY_STATUSES)

    def _record(attempt: int, delay: float, response: httpx.Response | None, exc: BaseException | None) -> None:
        if response is not None:
            reason, status_code = "status", str(response.status_code)
            logger.warning(
                "Retrying provider request due to status",
                status_code=response.status_code,
                url=url,
                attempt=attempt,
                delay=delay,
            )
        else:
            reason, status_code = "network", "0"
            logger.warning(
                "Retrying provider request due to network error",
                url=url,
                attempt=attempt,
                delay=delay,
                error=str(exc),
            )
        provider_http_retries_total.labels(
            operation=operation,
            reason=reason,
            status_code=status_code,
        ).inc()

    async def _call() -> httpx.Response:
        return await client.request(method, url, **kwargs)

    return await retry_async(
        _call,
        policy=policy,
        retry_on_result=lambda response: response.status_code in statuses,
        retry_on_exception=is_retryable_network_error,
        delay_hint=_retry_after_seconds,
        on_retry=_record,
        sleep=sleep,
        label=operation,
    )
