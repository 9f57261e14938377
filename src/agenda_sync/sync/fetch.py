"""Incremental fetching.

## Sync Process

1. Read the calendar's sync token (none: full sync)
2. Fetch pages from the remote source, following page cursors
3. Apply each page's deltas to the event store as the page arrives
4. On the final page, commit the new sync token
5. After a full sync, tombstone stored events the listing no longer has

Deltas are merged page by page rather than at the end of the sync: merges
are idempotent, so a sync interrupted half way leaves the store valid and
the next sync (from the old token) fills in the rest.

## Token Invalidation

When the remote source rejects the token, the token is dropped and the sync
restarts once as a full sync. A second rejection within the same call is
fatal.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

from agenda_sync.errors import (
    FatalSyncError,
    MalformedDataError,
    TokenInvalidError,
    TransientFetchError,
)
from agenda_sync.models.event import CalendarId, DeltaKind, EventDelta, SyncToken
from agenda_sync.store.events import EventStore
from agenda_sync.store.tokens import TokenStore
from agenda_sync.sync.locks import CalendarLocks

logger = logging.getLogger(__name__)

PageCursor = str


@dataclass
class PageResult:
    """One page of changes from the remote source.

    The final page has no `next_cursor` and carries the new sync token.
    Items the fetcher could not even turn into deltas are reported in
    `malformed`.
    """

    deltas: list[EventDelta] = field(default_factory=list)
    next_cursor: PageCursor | None = None
    new_token: SyncToken | None = None
    malformed: list[MalformedDataError] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return self.next_cursor is None


class PageFetcher(ABC):
    """Remote calendar source, one page at a time.

    Implementations must raise:
    - `TokenInvalidError` when the token is expired or unknown
    - `TransientFetchError` for network failures and rate limiting
    - `FatalSyncError` for everything retrying cannot fix
    """

    name: str = "remote"

    @abstractmethod
    async def fetch_page(
        self,
        calendar_id: CalendarId,
        token: SyncToken | None,
        cursor: PageCursor | None,
    ) -> PageResult:
        """Fetch one page of changes.

        Args:
            calendar_id: Calendar to fetch
            token: Sync token, None for a full listing
            cursor: Page cursor from the previous page, None for the first page
        """
        pass


@dataclass
class SyncOutcome:
    """Result of one FetchDriver.sync() call."""

    calendar_id: CalendarId
    full_sync: bool = False
    resynced: bool = False
    pages: int = 0
    applied: int = 0
    discarded: int = 0
    malformed: int = 0
    reconciled: int = 0
    sync_token: SyncToken | None = None
    synced_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def changed(self) -> bool:
        return self.applied > 0 or self.reconciled > 0


class FetchDriver:
    """Pulls changes for one calendar into the event store.

    Example:
        ```python
        driver = FetchDriver(fetcher, TokenStore(factory), EventStore(factory))
        outcome = await driver.sync("primary")
        print(outcome.applied, outcome.sync_token)
        ```
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        tokens: TokenStore,
        events: EventStore,
        locks: CalendarLocks | None = None,
        fetch_timeout: float = 30.0,
    ):
        """Initialize the driver.

        Args:
            fetcher: Remote page source
            tokens: Sync token store
            events: Event store
            locks: Per-calendar locks shared with snapshot building
            fetch_timeout: Seconds before a page fetch counts as a transient failure
        """
        self.fetcher = fetcher
        self.tokens = tokens
        self.events = events
        self.locks = locks or CalendarLocks()
        self.fetch_timeout = fetch_timeout

    async def sync(self, calendar_id: CalendarId) -> SyncOutcome:
        """Synchronize one calendar.

        Raises:
            TransientFetchError: Network failure, rate limit or timeout
            FatalSyncError: Permanent failure or repeated token invalidation
        """
        outcome = SyncOutcome(calendar_id=calendar_id)
        invalidated = False

        while True:
            token = await self.tokens.get(calendar_id)
            outcome.full_sync = token is None
            try:
                await self._run(calendar_id, token, outcome)
                return outcome
            except TokenInvalidError as e:
                if invalidated:
                    raise FatalSyncError(
                        "sync token rejected again after a full resync",
                        calendar_id=calendar_id,
                        status_code=e.status_code,
                    ) from e
                invalidated = True
                outcome.resynced = True
                logger.warning(
                    f"Sync token for {calendar_id} rejected, performing full sync"
                )
                await self.tokens.invalidate(calendar_id)

    async def _fetch(
        self,
        calendar_id: CalendarId,
        token: SyncToken | None,
        cursor: PageCursor | None,
    ) -> PageResult:
        try:
            return await asyncio.wait_for(
                self.fetcher.fetch_page(calendar_id, token, cursor),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientFetchError(
                f"fetch timed out after {self.fetch_timeout}s",
                calendar_id=calendar_id,
            ) from e

    async def _run(
        self,
        calendar_id: CalendarId,
        token: SyncToken | None,
        outcome: SyncOutcome,
    ) -> None:
        full_sync = token is None
        seen: set[str] = set()
        cursor: PageCursor | None = None

        while True:
            page = await self._fetch(calendar_id, token, cursor)
            outcome.pages += 1

            for error in page.malformed:
                outcome.malformed += 1
                # Still listed remotely, so reconciliation must not cancel the stored copy
                if error.event_id:
                    seen.add(error.event_id)
                logger.warning(f"Skipped malformed event from {calendar_id}: {error}")

            async with self.locks.hold(calendar_id):
                for delta in page.deltas:
                    seen.add(delta.event_id)
                    await self._apply(calendar_id, delta, outcome)

                if page.is_final:
                    if full_sync:
                        outcome.reconciled = await self.events.tombstone_missing(
                            calendar_id, seen
                        )
                    if page.new_token:
                        await self.tokens.set(calendar_id, page.new_token)
                        outcome.sync_token = page.new_token
                    else:
                        logger.warning(
                            f"Final page for {calendar_id} carried no sync token; "
                            "next sync will be a full sync"
                        )

            if page.is_final:
                break
            cursor = page.next_cursor

        logger.info(
            f"Synced {calendar_id} ({'full' if full_sync else 'incremental'}): "
            f"{outcome.pages} pages, {outcome.applied} applied, "
            f"{outcome.discarded} discarded, {outcome.malformed} malformed"
        )

    async def _apply(
        self,
        calendar_id: CalendarId,
        delta: EventDelta,
        outcome: SyncOutcome,
    ) -> None:
        try:
            delta.check(calendar_id)
        except MalformedDataError as e:
            outcome.malformed += 1
            logger.warning(f"Skipped malformed delta: {e}")
            return

        if delta.kind == DeltaKind.UPSERT:
            applied = await self.events.upsert(delta.record)
        else:
            applied = await self.events.tombstone(
                calendar_id,
                delta.event_id,
                sequence=delta.sequence,
                updated=delta.updated,
                record=delta.record,
            )

        if applied:
            outcome.applied += 1
        else:
            outcome.discarded += 1
