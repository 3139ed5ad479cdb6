"""
Subscriber Locks
================

Process-wide ``asyncio.Lock`` per (app_id, app_user_id).

Every mutation of a subscriber's subscriptions and entitlements runs
while holding that subscriber's lock and commits before releasing it,
so a deactivate-then-insert sequence never interleaves with another
writer for the same subscriber in this process.  Across processes the
row lock on the subscriber (``SELECT ... FOR UPDATE``) and the partial
unique indexes take over.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLocks:
    """Registry of locks keyed by string, dropped when no longer referenced."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def _acquire_ref(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
            self._refs[key] = 0
        self._refs[key] += 1
        return lock

    def _release_ref(self, key: str) -> None:
        self._refs[key] -= 1
        if self._refs[key] == 0:
            del self._refs[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """
        Hold the locks for all ``keys``.

        Keys are de-duplicated and taken in sorted order so two holders
        of overlapping key sets cannot deadlock.
        """
        ordered = sorted(set(keys))
        locks = [self._acquire_ref(key) for key in ordered]
        acquired: list[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._release_ref(key)

    def __len__(self) -> int:
        return len(self._locks)


def subscriber_key(app_id: object, app_user_id: str) -> str:
    return f"{app_id}:{app_user_id}"


# Shared by receipts, webhooks, attribute updates, identify and the read path
subscriber_locks = KeyedLocks()
