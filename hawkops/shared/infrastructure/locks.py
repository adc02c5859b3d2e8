"""
Keyed Locks
===========

In-process mutual exclusion keyed by string.

Two registries use this:
- per-entity locks, so at most one transition per entity id is in flight
- per-team locks, so cycles for the same team never overlap

Locks are created lazily and released from the table once nobody holds or
waits on them.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLockRegistry:
    """Lazily created ``asyncio.Lock`` per key."""

    def __init__(self, name: str = "locks"):
        self.name = name
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, *key_parts: str) -> AsyncIterator[None]:
        """
        Hold the lock for a key for the duration of the block.

        Usage:
            async with locks.hold("incident", incident_id):
                ...
        """
        key = ":".join(key_parts)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def is_locked(self, *key_parts: str) -> bool:
        """Check whether a key is currently held."""
        lock = self._locks.get(":".join(key_parts))
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
