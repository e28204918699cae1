"""Bounded-concurrency fan-out shared by every pipeline fan-out point."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from src.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class ConcurrencyLimiter:
    """Runs coroutines with at most ``max_concurrency`` in flight.

    Args:
        max_concurrency: Upper bound on concurrently running tasks.
        name: Label used in log messages.
    """

    def __init__(self, max_concurrency: int, name: str = "limiter") -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self.name = name
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._in_flight = 0
        self.peak = 0

    async def run(self, func: Callable[[], Awaitable[R]]) -> R:
        """Run one coroutine factory once a slot is free."""
        async with self._semaphore:
            self._in_flight += 1
            self.peak = max(self.peak, self._in_flight)
            try:
                return await func()
            finally:
                self._in_flight -= 1

    async def map(
        self, func: Callable[[T], Awaitable[R]], items: Iterable[T]
    ) -> list[R | BaseException]:
        """Apply ``func`` to every item under the concurrency bound.

        Exceptions are returned in place of results so one failing item
        never cancels the others.

        Returns:
            Results (or raised exceptions) in the order of ``items``.
        """
        items = list(items)
        logger.debug(
            "%s: fanning out %d tasks (max %d concurrent)",
            self.name,
            len(items),
            self.max_concurrency,
        )
        return await asyncio.gather(
            *(self.run(lambda item=item: func(item)) for item in items),
            return_exceptions=True,
        )
