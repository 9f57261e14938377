"""Event persistence with last-writer-wins merging.

## Merge Rules

Every stored row has a version `(sequence, remote updated time)`.

- A regular write applies only when its version is strictly newer.
- A cancellation applies when its sequence is not older than the stored
  one, unless the row is already cancelled at an equal or newer version.
  A cancellation without a sequence cancels at the stored sequence.
- Equal sequences are ordered by the remote updated time, so a write with
  the same sequence but a newer `updated` still applies. Google leaves the
  sequence unchanged for edits that do not move the event.

Re-delivering a delta is therefore a no-op and the stored sequence never
decreases, whatever order deltas arrive in.

## Tombstones

Cancelled events keep their row (status "cancelled", `tombstoned_at` set)
so a late, stale write cannot resurrect them. `purge_older_than` removes
tombstones and ended events once the retention window has passed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda_sync.database.models import StoredEvent
from agenda_sync.models.event import (
    CalendarId,
    EventRecord,
    EventStatus,
    EventTime,
)
from agenda_sync.models.recurrence import RecurrenceRule
from agenda_sync.models.snapshot import TimeWindow
from agenda_sync.recurrence.expander import series_end

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_CANCELLED = EventStatus.CANCELLED.value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def should_apply(
    row: StoredEvent | None,
    sequence: int | None,
    updated: datetime | None,
    cancelling: bool,
) -> bool:
    """Decide whether an incoming write supersedes the stored row."""
    if row is None:
        return True

    stored_version = (row.sequence, row.remote_updated_at or _EPOCH)

    if cancelling:
        if sequence is None:
            sequence = row.sequence
        if sequence < row.sequence:
            return False
        if row.status == _CANCELLED:
            return (sequence, updated or row.remote_updated_at or _EPOCH) > stored_version
        return True

    if sequence is None:
        return False
    return (sequence, updated or _EPOCH) > stored_version


def _time_columns(prefix: str, value: EventTime) -> dict:
    return {
        f"{prefix}_at": value.to_instant(),
        f"{prefix}_date": value.day,
        f"{prefix}_timezone": value.time_zone,
    }


def _row_values(record: EventRecord) -> dict:
    """Column values for a record."""
    values = {
        "sequence": record.sequence,
        "remote_updated_at": record.updated,
        "status": record.status.value,
        "title": record.title,
        "location": record.location,
        "is_all_day": record.start.all_day,
        "recurrence": None,
        "recurrence_timezone": None,
        "series_end_at": None,
        "recurring_event_id": record.recurring_event_id,
        "original_start_at": None,
        "original_start_date": None,
        "original_start_timezone": None,
    }
    values.update(_time_columns("start", record.start))
    values.update(_time_columns("end", record.end))

    if record.recurrence is not None:
        values["recurrence"] = "\n".join(record.recurrence.to_lines())
        values["recurrence_timezone"] = record.start.time_zone
        values["series_end_at"] = series_end(record)
    if record.original_start is not None:
        values.update(_time_columns("original_start", record.original_start))

    return values


def _event_time(at: datetime, day, time_zone: str | None) -> EventTime:
    if day is not None:
        return EventTime(day=day, time_zone=time_zone)
    return EventTime(date_time=at, time_zone=time_zone)


def to_record(row: StoredEvent) -> EventRecord:
    """Rebuild the EventRecord stored in a (non-bare) row."""
    recurrence = None
    if row.recurrence:
        recurrence = RecurrenceRule.parse(
            row.recurrence.splitlines(), time_zone=row.recurrence_timezone
        )

    original_start = None
    if row.recurring_event_id is not None:
        original_start = _event_time(
            row.original_start_at, row.original_start_date, row.original_start_timezone
        )

    return EventRecord(
        calendar_id=row.calendar_id,
        event_id=row.event_id,
        title=row.title,
        start=_event_time(row.start_at, row.start_date, row.start_timezone),
        end=_event_time(row.end_at, row.end_date, row.end_timezone),
        recurrence=recurrence,
        sequence=row.sequence,
        updated=row.remote_updated_at,
        status=EventStatus(row.status),
        recurring_event_id=row.recurring_event_id,
        original_start=original_start,
        location=row.location,
    )


class EventStore:
    """Durable mapping from (calendar id, event id) to the latest EventRecord.

    Example:
        ```python
        store = EventStore(session_factory)

        applied = await store.upsert(record)        # False if stale
        await store.tombstone("primary", "evt-1")
        records = await store.query_window("primary", window)
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def get(self, calendar_id: CalendarId, event_id: str) -> EventRecord | None:
        """Get a stored record, None if unknown or a bare tombstone."""
        async with self._session_factory() as session:
            row = await session.get(StoredEvent, (calendar_id, event_id))
            if row is None or row.is_bare_tombstone:
                return None
            return to_record(row)

    async def upsert(self, record: EventRecord) -> bool:
        """Apply a record if it is newer than the stored one.

        A cancelled record is applied with cancellation rules (see `tombstone`).

        Returns:
            True if the record was applied, False if it was stale or a duplicate
        """
        if record.is_cancelled:
            return await self.tombstone(
                record.calendar_id,
                record.event_id,
                sequence=record.sequence,
                updated=record.updated,
                record=record,
            )

        async with self._session_factory() as session:
            row = await session.get(StoredEvent, (record.calendar_id, record.event_id))
            if not should_apply(row, record.sequence, record.updated, cancelling=False):
                logger.debug(
                    f"Discarded stale write for {record.calendar_id}/{record.event_id} "
                    f"(sequence {record.sequence})"
                )
                return False

            if row is None:
                row = StoredEvent(calendar_id=record.calendar_id, event_id=record.event_id)
                session.add(row)
            for key, value in _row_values(record).items():
                setattr(row, key, value)
            row.tombstoned_at = None

            await session.commit()
            return True

    async def tombstone(
        self,
        calendar_id: CalendarId,
        event_id: str,
        sequence: int | None = None,
        updated: datetime | None = None,
        record: EventRecord | None = None,
    ) -> bool:
        """Mark an event cancelled.

        Args:
            calendar_id: Calendar the event belongs to
            event_id: Event to cancel
            sequence: Sequence of the cancellation, None for "current"
            updated: Remote modification time of the cancellation
            record: Data of the cancelled event, if known (needed to remember
                which occurrence a cancelled exception removes)

        Returns:
            True if the cancellation was applied
        """
        async with self._session_factory() as session:
            row = await session.get(StoredEvent, (calendar_id, event_id))
            if not should_apply(row, sequence, updated, cancelling=True):
                return False

            previous_sequence = row.sequence if row is not None else 0
            previous_updated = row.remote_updated_at if row is not None else None

            if row is None:
                row = StoredEvent(calendar_id=calendar_id, event_id=event_id)
                session.add(row)

            if record is not None:
                for key, value in _row_values(record).items():
                    setattr(row, key, value)

            row.sequence = max(sequence if sequence is not None else 0, previous_sequence)
            row.remote_updated_at = updated if updated is not None else previous_updated
            if row.title is None:
                row.title = ""
            row.status = _CANCELLED
            row.tombstoned_at = self._clock()

            await session.commit()
            return True

    async def query_window(
        self,
        calendar_id: CalendarId,
        window: TimeWindow,
    ) -> list[EventRecord]:
        """Records that may contribute to `window`.

        Returns non-recurring records intersecting the window, recurring
        parents whose series may intersect it, and every exception of those
        parents. Cancelled rows are included so callers can apply them;
        bare tombstones are not.
        """
        direct = and_(
            StoredEvent.recurrence.is_(None),
            StoredEvent.start_at < window.end,
            or_(
                StoredEvent.end_at > window.start,
                and_(
                    StoredEvent.end_at == StoredEvent.start_at,
                    StoredEvent.start_at >= window.start,
                ),
            ),
        )
        series = and_(
            StoredEvent.recurrence.is_not(None),
            StoredEvent.start_at < window.end,
            or_(
                StoredEvent.series_end_at.is_(None),
                StoredEvent.series_end_at > window.start,
            ),
        )

        async with self._session_factory() as session:
            result = await session.execute(
                select(StoredEvent).where(
                    StoredEvent.calendar_id == calendar_id,
                    or_(direct, series),
                )
            )
            rows = {row.event_id: row for row in result.scalars().all()}

            parent_ids = [row.event_id for row in rows.values() if row.recurrence]
            if parent_ids:
                result = await session.execute(
                    select(StoredEvent).where(
                        StoredEvent.calendar_id == calendar_id,
                        StoredEvent.recurring_event_id.in_(parent_ids),
                        StoredEvent.start_at.is_not(None),
                    )
                )
                for row in result.scalars().all():
                    rows.setdefault(row.event_id, row)

            records = [to_record(row) for row in rows.values()]

        records.sort(key=lambda r: (r.start.to_instant(), r.event_id))
        return records

    async def tombstone_missing(
        self,
        calendar_id: CalendarId,
        seen_ids: Iterable[str],
    ) -> int:
        """Cancel live records a complete listing no longer contains.

        Returns:
            Number of records tombstoned
        """
        seen = set(seen_ids)
        async with self._session_factory() as session:
            result = await session.execute(
                select(StoredEvent.event_id).where(
                    StoredEvent.calendar_id == calendar_id,
                    StoredEvent.status != _CANCELLED,
                )
            )
            missing = [event_id for event_id in result.scalars().all() if event_id not in seen]
            if not missing:
                return 0

            await session.execute(
                update(StoredEvent)
                .where(
                    StoredEvent.calendar_id == calendar_id,
                    StoredEvent.event_id.in_(missing),
                )
                .values(status=_CANCELLED, tombstoned_at=self._clock())
            )
            await session.commit()

        logger.info(f"Tombstoned {len(missing)} events missing from full sync of {calendar_id}")
        return len(missing)

    async def purge_older_than(
        self,
        instant: datetime,
        calendar_id: CalendarId | None = None,
    ) -> int:
        """Delete tombstones and ended events older than `instant`.

        Exceptions are kept while the occurrence they override is newer than
        `instant`, otherwise a cancelled occurrence could reappear. Purging a
        parent deletes all of its exceptions.

        Args:
            instant: Retention threshold
            calendar_id: Restrict the purge to one calendar

        Returns:
            Number of rows deleted
        """
        exception_expired = or_(
            StoredEvent.recurring_event_id.is_(None),
            StoredEvent.original_start_at < instant,
        )
        expired = or_(
            and_(
                StoredEvent.status == _CANCELLED,
                or_(StoredEvent.tombstoned_at.is_(None), StoredEvent.tombstoned_at < instant),
            ),
            and_(
                StoredEvent.status != _CANCELLED,
                StoredEvent.recurrence.is_(None),
                StoredEvent.end_at < instant,
            ),
            and_(
                StoredEvent.status != _CANCELLED,
                StoredEvent.recurrence.is_not(None),
                StoredEvent.series_end_at < instant,
            ),
        )
        statement = delete(StoredEvent).where(expired, exception_expired)
        parent_ids = select(StoredEvent.calendar_id, StoredEvent.event_id).where(
            expired, StoredEvent.recurring_event_id.is_(None)
        )
        if calendar_id is not None:
            statement = statement.where(StoredEvent.calendar_id == calendar_id)
            parent_ids = parent_ids.where(StoredEvent.calendar_id == calendar_id)

        async with self._session_factory() as session:
            purged_parents = (await session.execute(parent_ids)).all()
            result = await session.execute(statement)
            purged = result.rowcount or 0

            # Exceptions go with their parent, otherwise they would surface as orphans
            for parent_calendar, parent_id in purged_parents:
                result = await session.execute(
                    delete(StoredEvent).where(
                        StoredEvent.calendar_id == parent_calendar,
                        StoredEvent.recurring_event_id == parent_id,
                    )
                )
                purged += result.rowcount or 0

            await session.commit()

        if purged:
            logger.info(f"Purged {purged} stored events older than {instant.isoformat()}")
        return purged
