"""Async batch utilities for parallel RPC operations."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence, TypeVar

log = logging.getLogger("utils.async_batch")

T = TypeVar('T')
R = TypeVar('R')


async def batch_gather(
    items: Sequence[T],
    async_fn: Callable[[T], Awaitable[R]],
    max_concurrent: int = 5,
    continue_on_error: bool = True,
) -> list[R | None]:
    """Execute async function on items with concurrency limit.

    Args:
        items: Items to process
        async_fn: Async function to call on each item
        max_concurrent: Max concurrent operations
        continue_on_error: If True, errors are logged and return None;
            if False, propagate

    Returns:
        List of results in input order (None for failed items if continue_on_error=True)
    """
    semaphore = asyncio.Semaphore(max_concurrent)

    async def bounded_call(item: T) -> R | None:
        async with semaphore:
            try:
                return await async_fn(item)
            except Exception as e:
                if not continue_on_error:
                    raise
                log.warning("Batch item %r failed: %s", item, e)
                return None

    return await asyncio.gather(*[bounded_call(item) for item in items])


async def gather_in_batches(
    items: Sequence[T],
    async_fn: Callable[[T], Awaitable[R]],
    batch_size: int = 5,
) -> list[R]:
    """Run `async_fn` over items in consecutive batches of `batch_size`.

    Each batch is awaited in full before the next one starts. Exceptions
    are not caught: `async_fn` is expected to report its own failures in
    its return value so one item never cancels its siblings.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    results: list[R] = []
    for start in range(0, len(items), batch_size):
        batch = items[start:start + batch_size]
        results.extend(await asyncio.gather(*[async_fn(item) for item in batch]))
    return results

