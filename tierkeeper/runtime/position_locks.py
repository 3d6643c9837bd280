"""
Per-position asyncio locks.

Every code path that mutates a position (fill processing, expiry force close,
operator commands) holds that position's lock. The reconciliation loop does
not wait for a held lock; it skips the position until the next cycle.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class PositionLocks:
    """
    Lazily created asyncio.Lock per position id (single event loop).

    Tasks holding or waiting for a lock are counted, so `discard` never drops
    a lock that a queued task is about to acquire.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def _lock(self, position_id: str) -> asyncio.Lock:
        lock = self._locks.get(position_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[position_id] = lock
        return lock

    @asynccontextmanager
    async def lock_for(self, position_id: str) -> AsyncIterator[None]:
        lock = self._lock(position_id)
        self._users[position_id] = self._users.get(position_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[position_id] -= 1
            if not self._users[position_id]:
                del self._users[position_id]

    def is_locked(self, position_id: str) -> bool:
        lock = self._locks.get(position_id)
        return lock is not None and lock.locked()

    def discard(self, position_id: str) -> None:
        """Forget the lock of a finished position unless someone holds or awaits it."""
        if self._users.get(position_id):
            return
        lock = self._locks.get(position_id)
        if lock is not None and not lock.locked():
            del self._locks[position_id]

    def __len__(self) -> int:
        return len(self._locks)
