"""Bounded fan-out for per-item work."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, TypeVar, Union

T = TypeVar("T")
R = TypeVar("R")


class ConcurrencyScheduler:
    """
    Runs coroutines with at most ``limit`` of them in flight at once.

    Parameters
    ----------
    limit : int
        Maximum number of concurrently running tasks. Must be at least 1.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.in_flight = 0
        self.peak_in_flight = 0

    async def submit(self, fn: Callable[..., Awaitable[R]], *args: Any) -> R:
        """Wait for a free slot, then run ``fn(*args)`` to completion."""
        async with self._semaphore:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                return await fn(*args)
            finally:
                self.in_flight -= 1

    async def map(
        self,
        fn: Callable[[T], Awaitable[R]],
        items: Iterable[T],
    ) -> List[Union[R, BaseException]]:
        """
        Run ``fn`` over every item and return results in input order.

        A failing item yields its exception in place of a result; every
        task is awaited before this returns.
        """
        tasks = [asyncio.ensure_future(self.submit(fn, item)) for item in items]
        if not tasks:
            return []
        return await asyncio.gather(*tasks, return_exceptions=True)
