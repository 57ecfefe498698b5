"""Global admission control for outstanding DNS queries."""
import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import Deque


class ConcurrencyGovernor:
    """Counting semaphore with an explicit FIFO wait queue.

    A released slot is handed directly to the oldest waiter, so admission
    order matches arrival order and late arrivals cannot overtake the queue.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self._running = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def running(self) -> int:
        return self._running

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if self._running < self.limit and not self.waiting:
            self._running += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation; pass it on.
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Slot ownership moves to the waiter; running count is unchanged.
                waiter.set_result(None)
                return
        self._running -= 1

    @asynccontextmanager
    async def slot(self):
        await self.acquire()
        try:
            yield
        finally:
            self.release()
