"""Work item channel and concurrency gate used by the dispatch loop."""

import asyncio
from typing import Awaitable, Callable

WorkItem = Callable[[], Awaitable[None]]


class WorkItemChannel:
    """Unbounded FIFO of work closures."""

    def __init__(self):
        self._queue: "asyncio.Queue[WorkItem]" = asyncio.Queue()

    def put(self, item: WorkItem) -> None:
        self._queue.put_nowait(item)

    async def get(self) -> WorkItem:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()


class ConcurrencyGate:
    """Counting semaphore bounding how many jobs run at once."""

    def __init__(self, max_concurrent_jobs: int = 1):
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        self.capacity = max_concurrent_jobs
        self._semaphore = asyncio.Semaphore(max_concurrent_jobs)
        self._in_use = 0

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self.capacity - self._in_use

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self._in_use += 1

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("ConcurrencyGate released more times than acquired")
        self._in_use -= 1
        self._semaphore.release()

    async def __aenter__(self) -> "ConcurrencyGate":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()
