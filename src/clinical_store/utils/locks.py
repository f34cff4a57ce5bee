"""Keyed asyncio locks.

Serializes coroutines that touch the same logical record while letting
work on different records proceed concurrently.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple


class KeyedLock:
    """A registry of ``asyncio.Lock`` objects, one per key in use."""

    def __init__(self) -> None:
        """Initialize an empty lock registry."""
        # key -> (lock, number of holders and waiters)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    def __len__(self) -> int:
        """Number of keys currently held or awaited."""
        return len(self._locks)

    def locked(self, key: str) -> bool:
        """Whether ``key`` is currently held."""
        entry = self._locks.get(key)
        return entry is not None and entry[0].locked()

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        entry = self._locks.get(key)
        if entry is None:
            entry = (asyncio.Lock(), 0)
        lock, users = entry
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)
