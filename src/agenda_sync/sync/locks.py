"""Per-calendar critical sections."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator


class CalendarLocks:
    """One asyncio lock per calendar id.

    Merging a fetched page and reading the store for a snapshot of the same
    calendar are serialized, so a snapshot never sees half of a page.
    Different calendars never wait on each other.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, calendar_id: str) -> asyncio.Lock:
        lock = self._locks.get(calendar_id)
        if lock is None:
            lock = self._locks[calendar_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, calendar_id: str) -> AsyncGenerator[None, None]:
        async with self.get(calendar_id):
            yield

    def locked(self, calendar_id: str) -> bool:
        return calendar_id in self._locks and self._locks[calendar_id].locked()
