"""
Replay protection for webhook deliveries: remembers the most recent signature timestamps.
In-memory only; a multi-process deployment would need a shared store.
"""
from collections import deque

DEFAULT_CAPACITY = 64


class ReplayGuard:
    """Fixed-capacity set of tokens. When full, the oldest token is forgotten (FIFO)."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._order: deque[str] = deque()
        self._seen: set[str] = set()

    def add(self, token: str) -> bool:
        """Record token. Returns False if it was already seen (a replay), True if new."""
        if token in self._seen:
            return False
        if len(self._order) == self._capacity:
            self._seen.discard(self._order.popleft())
        self._order.append(token)
        self._seen.add(token)
        return True

    def __contains__(self, token: str) -> bool:
        return token in self._seen

    def __len__(self) -> int:
        return len(self._order)

    def clear(self) -> None:
        self._order.clear()
        self._seen.clear()
