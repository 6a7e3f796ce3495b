"""
Fire-and-forget job queue: one job at a time across the whole process, spaced by a delay,
and at most one pending job per key.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable

from sso_bridge.gate import ConcurrencyGate

logger = logging.getLogger(__name__)

DEFAULT_DELAY = 1.0


class ActionQueue:
    """
    Runs `runner(action)` for each enqueued action, serialised through a single-slot gate.

    A key is "pending" from enqueue until its job starts; once running, the same key may be
    queued again so a newer event is not lost behind the one in progress.
    """

    def __init__(self, runner: Callable[[Any], Awaitable[Any]], delay: float = DEFAULT_DELAY, name: str = "queue"):
        self._runner = runner
        self._gate = ConcurrencyGate(1, delay)
        self._name = name
        self._pending: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._job_id = 0

    def has(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def enqueue(self, key: str, action: Any) -> bool:
        """
        Schedule action under key. Returns False without scheduling when the key is already
        pending. Must be called from the running event loop.
        """
        if key in self._pending:
            return False
        self._pending.add(key)
        self._job_id += 1
        task = asyncio.get_running_loop().create_task(self._run(self._job_id, key, action))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, job_id: int, key: str, action: Any) -> None:
        started = False
        try:
            async with self._gate:
                started = True
                self._pending.discard(key)
                logger.info(
                    "[%s] Running job %d (%s). %d jobs in queue.",
                    self._name,
                    job_id,
                    type(action).__name__,
                    len(self._pending),
                )
                try:
                    await self._runner(action)
                except Exception:
                    logger.exception("[%s] Job %d (%s) failed", self._name, job_id, type(action).__name__)
        finally:
            if not started:
                self._pending.discard(key)

    async def join(self) -> None:
        """Wait until every scheduled job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel jobs that have not finished."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._pending.clear()
