"""Retry and backoff policy for log-range queries."""
from __future__ import annotations

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential


def scan_retrying(attempts: int, backoff_base: float, backoff_max: float) -> AsyncRetrying:
    """Retry policy for one log-range query.

    Any exception is retried: providers report range limits, rate limits
    and timeouts with inconsistent error types. The last error is re-raised
    so the caller can fall back to smaller ranges.

    Usage:
        async for attempt in scan_retrying(3, 0.2, 5.0):
            with attempt:
                events = await source.get_logs(...)
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=backoff_base, max=backoff_max),
        reraise=True,
    )
