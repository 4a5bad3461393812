"""
Keyed asyncio locks.

Hands out one asyncio.Lock per key (qr_id, order id) so that transitions of the
same intent are serialized while unrelated intents proceed concurrently.
Entries are reference counted and dropped once nobody holds or waits on them.
"""
import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Dict, Iterable


class KeyedLock:
    """Registry of per-key asyncio locks."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for key for the duration of the block."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    @asynccontextmanager
    async def acquire_many(self, keys: Iterable[str]) -> AsyncIterator[None]:
        """Hold several locks at once, taken in sorted order."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.acquire(key))
            yield
