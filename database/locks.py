"""Per-aggregate mutual exclusion.

Every state transition runs while holding the lock for the aggregate it
changes, so concurrent callers observe a consistent before and after state.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class LockRegistry:
    """Hands out one asyncio.Lock per aggregate key, created on demand.

    Locks are dropped once no task holds or waits on them, so the registry
    does not grow with the number of aggregates ever touched.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        """Hold the lock for a single aggregate key."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold_many(self, *keys: str):
        """Hold several aggregate locks, always acquired in sorted order."""
        ordered = sorted(set(keys))
        async with self._hold_ordered(ordered):
            yield

    @asynccontextmanager
    async def _hold_ordered(self, keys):
        if not keys:
            yield
            return
        async with self.hold(keys[0]):
            async with self._hold_ordered(keys[1:]):
                yield

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


def trade_key(trade_id: str) -> str:
    return f"trade:{trade_id}"


def ticket_key(ticket_id: str) -> str:
    return f"ticket:{ticket_id}"


def item_key(item_id: str) -> str:
    return f"item:{item_id}"
