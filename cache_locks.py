import asyncio
from typing import Dict


class KeyLocks:
    """Singleflight lock per key, so concurrent callers do not repeat the same fetch."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def get_lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def discard(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]
