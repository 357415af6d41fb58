"""Per-key async mutex.

Serializes writers of the same collection (or subject graph) while letting
different keys proceed concurrently.

Usage:
    locks = KeyedLock()
    async with locks.hold("subject:42"):
        ...  # read-modify-write
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLock:
    """A lazily created ``asyncio.Lock`` per key.

    A key's lock is discarded once no task holds or waits for it, so the map
    does not grow with every collection ever touched. Waiters acquire in FIFO
    order.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        Released on every exit path, including exceptions and cancellation.
        """
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        """True while some task holds ``key``."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
