"""Bounded worker pool for fan-out delivery."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from src.timetable.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class WorkerPool:
    """Runs batches of coroutines with at most ``size`` in flight.

    ``close()`` lets running batches finish, declines new ones and waits for
    every outstanding task.
    """

    def __init__(self, size: int = 20) -> None:
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self.size = size
        self._semaphore: asyncio.Semaphore | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def map(
        self, func: Callable[[T], Awaitable[R]], items: Iterable[T]
    ) -> list[R | BaseException]:
        """Run ``func`` for every item and return results in item order.

        Exceptions are returned in place of results, never raised, so one
        failing item cannot abort the batch.

        Raises:
            RuntimeError: If the pool is closed.
        """
        if self._closed:
            raise RuntimeError("Worker pool is closed")
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.size)

        tasks = [asyncio.create_task(self._run(func, item)) for item in items]
        self._tasks.update(tasks)
        try:
            return await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._tasks.difference_update(tasks)

    async def _run(self, func: Callable[[T], Awaitable[R]], item: T) -> R:
        assert self._semaphore is not None
        async with self._semaphore:
            return await func(item)

    async def close(self) -> None:
        self._closed = True
        if self._tasks:
            log.info("worker_pool_draining", outstanding=len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)
