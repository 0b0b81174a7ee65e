"""Per-group mutual exclusion.

Every state-mutating operation on a group runs while holding that group's
lock. Locks are created on first use and dropped once no coroutine holds or
waits for them, so the registry does not grow with the number of groups ever
seen.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class GroupLockRegistry:
    """Hands out one asyncio.Lock per group id.

    Cross-group operations never need to be atomic with each other, so
    there is no global lock.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, group_id: str) -> AsyncIterator[None]:
        """Hold the lock for ``group_id`` for the duration of the block."""
        lock = self._locks.get(group_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[group_id] = lock
        self._waiters[group_id] = self._waiters.get(group_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters[group_id] - 1
            if remaining:
                self._waiters[group_id] = remaining
            else:
                del self._waiters[group_id]
                del self._locks[group_id]

    def __len__(self) -> int:
        return len(self._locks)
