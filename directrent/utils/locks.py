"""
Per-key asyncio locks.

Serializes check-then-act sequences for one key (a user id) inside this
process. Cross-process safety comes from the row lock and conditional
UPDATE the services issue; this only keeps same-process requests from
racing each other into the database.
"""
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict, Hashable


class KeyedLock:
    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            # Drop idle locks so the registry does not grow per user forever
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)
