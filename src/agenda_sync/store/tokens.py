"""Sync token persistence.

One row per calendar in `sync_tokens`. Every mutation is committed before
the call returns, so a token on disk never refers to deltas that were not
yet merged.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda_sync.database.models import SyncTokenRow
from agenda_sync.models.event import CalendarId, SyncToken

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenStore:
    """Durable per-calendar sync tokens.

    Example:
        ```python
        tokens = TokenStore(session_factory)

        token = await tokens.get("primary")   # None -> full sync
        await tokens.set("primary", "CPDAlvCd2e0CEPDAlvCd2e0CGAU=")
        await tokens.invalidate("primary")
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def get(self, calendar_id: CalendarId) -> SyncToken | None:
        async with self._session_factory() as session:
            row = await session.get(SyncTokenRow, calendar_id)
            return row.token if row else None

    async def last_synced_at(self, calendar_id: CalendarId) -> datetime | None:
        """When a token was last committed for this calendar."""
        async with self._session_factory() as session:
            row = await session.get(SyncTokenRow, calendar_id)
            return row.last_synced_at if row else None

    async def set(self, calendar_id: CalendarId, token: SyncToken) -> None:
        """Replace the token and record the sync time."""
        if not token:
            raise ValueError("Sync token must not be empty")

        async with self._session_factory() as session:
            row = await session.get(SyncTokenRow, calendar_id)
            if row is None:
                row = SyncTokenRow(calendar_id=calendar_id)
                session.add(row)
            row.token = token
            row.last_synced_at = self._clock()
            await session.commit()

        logger.debug(f"Committed sync token for {calendar_id}")

    async def invalidate(self, calendar_id: CalendarId) -> None:
        """Drop the token so the next fetch is a full sync."""
        async with self._session_factory() as session:
            row = await session.get(SyncTokenRow, calendar_id)
            if row is None:
                row = SyncTokenRow(calendar_id=calendar_id)
                session.add(row)
            row.token = None
            row.invalidated_at = self._clock()
            await session.commit()

        logger.info(f"Invalidated sync token for {calendar_id}")
