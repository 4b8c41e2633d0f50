"""Per-key synchronization primitives.

State is partitioned by IP address. Synchronous stores use a fixed set of
striped thread locks so that callers on a thread pool and callers on the
event loop can share them; the analyzer serializes whole analysis runs per IP
with keyed asyncio locks. Neither primitive ever takes a lock covering every
IP at once.
"""

import asyncio
import zlib
from contextlib import asynccontextmanager
from threading import Lock, RLock
from typing import AsyncIterator, Dict, List


def stripe_index(key: str, stripes: int) -> int:
    """Stable stripe index for a key."""
    return zlib.crc32(key.encode("utf-8")) % stripes


class StripedLock:
    """A fixed pool of re-entrant locks selected by key hash."""

    def __init__(self, stripes: int = 64):
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks: List[RLock] = [RLock() for _ in range(stripes)]

    @property
    def stripes(self) -> int:
        return len(self._locks)

    def index(self, key: str) -> int:
        return stripe_index(key, len(self._locks))

    def for_key(self, key: str) -> RLock:
        return self._locks[self.index(key)]

    def at(self, index: int) -> RLock:
        return self._locks[index]


class KeyedAsyncLock:
    """asyncio locks created on demand per key and dropped when idle."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}
        self._guard = Lock()

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = asyncio.Lock()
            self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
