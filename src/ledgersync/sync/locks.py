"""
Advisory locks serializing every sync and resolution of one entity type.

Two executors pulling invoices at once would race on the same watermark and
could both raise a conflict for one record. Different entity types do not
share a lock and may run side by side.

Locks are process-local (asyncio). Run a single API worker, or put a
database advisory lock behind the same interface, when scaling out.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Hashable

logger = logging.getLogger(__name__)


class SyncLockRegistry:
    """Hands out one asyncio.Lock per key, created on first use."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def lock_for(self, *key: Hashable) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_locked(self, *key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, *key: Hashable):
        lock = self.lock_for(*key)
        if lock.locked():
            logger.info("Waiting for running sync %s to finish", key)
        async with lock:
            yield


# Shared by every executor and resolver in the process
default_locks = SyncLockRegistry()
