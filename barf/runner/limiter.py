"""Concurrency limiter for parallel run_loop calls within one process."""

import asyncio
from collections import deque
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


class Limiter:
    """Counting admission gate with first-in-first-out waiters.

    Usage:
        limiter = Limiter(2)
        result = await limiter(lambda: run_loop(...))
    """

    def __init__(self, concurrency: int):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.concurrency = concurrency
        self.running = 0
        self._waiters: deque[asyncio.Future] = deque()

    async def _acquire(self) -> None:
        if self.running < self.concurrency and not self._waiters:
            self.running += 1
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            # The releasing task hands its slot over, running is not decremented
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                self._release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self.running -= 1

    async def __call__(self, fn: Callable[[], Awaitable[T]]) -> T:
        await self._acquire()
        try:
            return await fn()
        finally:
            self._release()


def create_limiter(concurrency: int) -> Limiter:
    return Limiter(concurrency)
