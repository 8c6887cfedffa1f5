"""In-memory per-order mutual exclusion for lifecycle operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class OrderLockRegistry:
    """Hands out one asyncio.Lock per order id.

    Entries are reference counted so the registry does not grow with every
    order ever touched; a lock is dropped once nobody holds or waits on it.
    Cross-process races are caught by the repository's save precondition.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        """Serialize the enclosed block against other holders of order_id."""
        key = str(order_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            if lock.locked():
                logger.debug("Waiting for lock on order %s", key)
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def active_count(self) -> int:
        """Number of orders currently locked or awaited."""
        return len(self._locks)


# Global singleton instance
_order_locks: OrderLockRegistry | None = None


def get_order_locks() -> OrderLockRegistry:
    """Get or create the global order lock registry."""
    global _order_locks
    if _order_locks is None:
        _order_locks = OrderLockRegistry()
    return _order_locks
