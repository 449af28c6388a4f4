"""
In-process logical locks for queue mutations.

Mutations of one service point on one date serialize on
``lock:point:<point_id>:<date>``; token numbering serializes on
``lock:group:<group_id>:<date>``. Keys are always taken in sorted order so two
operations needing overlapping sets cannot deadlock.
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import date


def point_lock_key(point_id: int, service_date: date) -> str:
    return f"lock:point:{point_id}:{service_date.isoformat()}"


def group_lock_key(group_id: int, service_date: date) -> str:
    return f"lock:group:{group_id}:{service_date.isoformat()}"


class QueueLocks:
    """Registry of asyncio locks, created on first use and dropped when unused."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def _hold_one(self, key: str) -> AsyncGenerator[None, None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: str | None) -> AsyncGenerator[None, None]:
        """Acquire every non-empty key, in sorted order, for the duration of the block."""
        async with AsyncExitStack() as stack:
            for key in sorted({k for k in keys if k}):
                await stack.enter_async_context(self._hold_one(key))
            yield

    def held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
