"""Bounded fan-out helpers shared by the model-calling stages."""
import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

from kessan.config import get_settings

T = TypeVar("T")
R = TypeVar("R")


async def bounded_gather(
    func: Callable[[T], Awaitable[R]],
    items: Iterable[T],
    limit: Optional[int] = None,
) -> List[R]:
    """
    Run ``func`` over ``items`` with at most ``limit`` calls in flight.

    Results come back in input order. Exceptions propagate like
    ``asyncio.gather``; callers that need per-item isolation catch inside
    ``func``.
    """
    if limit is None:
        limit = get_settings().parallel_limit
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(item: T) -> R:
        async with semaphore:
            return await func(item)

    return await asyncio.gather(*[_run(item) for item in items])


def chunked(items: List[T], size: int) -> List[List[T]]:
    """Split ``items`` into consecutive slices of at most ``size``."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    return [items[i:i + size] for i in range(0, len(items), size)]
