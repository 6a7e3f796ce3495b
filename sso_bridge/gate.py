"""
Counting semaphore for outbound calls, with a pause before each queued caller is let through.
Runs on a single event loop; no locking needed.
"""
import asyncio
from collections import deque
from typing import Any, Awaitable, Callable

DEFAULT_DELAY = 0.15


class ConcurrencyGate:
    """
    At most `maximum` holders at once. A released slot is handed straight to the oldest waiter
    after `delay` seconds, so newcomers cannot jump the queue during the pause.
    """

    def __init__(self, maximum: int, delay: float = DEFAULT_DELAY):
        if maximum < 1:
            raise ValueError("maximum must be at least 1")
        self._maximum = maximum
        self._delay = delay
        self._active = 0
        self._waiters: deque[asyncio.Future] = deque()
        self._handoffs = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    async def acquire(self) -> None:
        if self._active < self._maximum and not self._waiters and not self._handoffs:
            self._active += 1
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was already handed to us; pass it on
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        if self._waiters:
            # Slot stays counted as active while it is handed over
            self._handoffs += 1
            asyncio.get_running_loop().call_later(self._delay, self._hand_off)
            return
        self._active -= 1

    def _hand_off(self) -> None:
        self._handoffs -= 1
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._active -= 1

    async def run(self, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Await func(*args) while holding a slot."""
        async with self:
            return await func(*args)

    async def __aenter__(self) -> "ConcurrencyGate":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.release()
