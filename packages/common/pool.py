from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Sequence, TypeVar, Union

T = TypeVar("T")
R = TypeVar("R")


async def run_all(
    limit: int,
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
) -> List[Union[R, BaseException]]:
    """
    Run worker(item) for every item with at most `limit` in flight.

    results[i] always belongs to items[i]. A worker that raises leaves its
    exception at its index; the others keep running.
    """
    if limit < 1:
        raise ValueError(f"limit must be >= 1 (got {limit})")
    if not items:
        return []

    sem = asyncio.Semaphore(limit)

    async def _one(item: T) -> R:
        async with sem:
            return await worker(item)

    return await asyncio.gather(*(_one(it) for it in items), return_exceptions=True)
