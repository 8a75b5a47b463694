"""
In-process keyed locks.

Serializes work per key (checkout session, order) inside one event loop.
Cross-process safety comes from the order store, not from here.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager


DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0


class KeyedLock:
    """One asyncio.Lock per key, dropped when the last holder leaves"""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str, timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] += 1
        try:
            async with asyncio.timeout(timeout):
                await lock.acquire()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
