"""Database models for calendar synchronization state.

## Schema Overview

```
sync_tokens    (calendar_id)            - one continuation token per calendar
stored_events  (calendar_id, event_id)  - latest known record per event
```

Both key spaces are partitioned by calendar id; nothing joins across
calendars.

## Time Columns

All instants are stored in UTC. `start_at`/`end_at` are the absolute span
of the record and drive window queries; the exact `EventTime` (zone or
all-day date) is kept alongside so the record round-trips unchanged.
`series_end_at` is the end of a finite recurring series, NULL for
open-ended series.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as UTC.

    SQLite drops offsets, so values are normalized to UTC on the way in and
    tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime cannot be stored")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    type_annotation_map = {
        datetime: UTCDateTime(),
    }


class SyncTokenRow(Base):
    """Continuation token for incremental fetches of one calendar."""

    __tablename__ = "sync_tokens"

    calendar_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    token: Mapped[str | None] = mapped_column(Text)
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    invalidated_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<SyncTokenRow {self.calendar_id} token={'set' if self.token else 'none'}>"


class StoredEvent(Base):
    """Latest known state of one remote event.

    Cancelled events stay as tombstones (status == "cancelled") until the
    retention window elapses. A bare tombstone, cancelled before any of its
    data was seen, has no time columns.
    """

    __tablename__ = "stored_events"

    calendar_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(1024), primary_key=True)

    # Version
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    remote_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    status: Mapped[str] = mapped_column(String(16), default="confirmed", nullable=False)

    # Event data
    title: Mapped[str] = mapped_column(Text, default="", nullable=False)
    location: Mapped[str | None] = mapped_column(Text)

    # Time (absolute span used for queries)
    start_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    end_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    # Time (exact representation)
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False)
    start_date: Mapped[date | None] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date)
    start_timezone: Mapped[str | None] = mapped_column(String(64))
    end_timezone: Mapped[str | None] = mapped_column(String(64))

    # Recurrence
    recurrence: Mapped[str | None] = mapped_column(Text)  # RRULE/EXDATE/RDATE lines
    recurrence_timezone: Mapped[str | None] = mapped_column(String(64))
    series_end_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    # Exception linkage
    recurring_event_id: Mapped[str | None] = mapped_column(String(1024))
    original_start_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    original_start_date: Mapped[date | None] = mapped_column(Date)
    original_start_timezone: Mapped[str | None] = mapped_column(String(64))

    # Bookkeeping
    tombstoned_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_stored_events_window", "calendar_id", "start_at", "end_at"),
        Index("ix_stored_events_series", "calendar_id", "recurring_event_id"),
        Index("ix_stored_events_status", "status", "tombstoned_at"),
    )

    @property
    def is_bare_tombstone(self) -> bool:
        return self.start_at is None

    def __repr__(self) -> str:
        return f"<StoredEvent {self.calendar_id}/{self.event_id} seq={self.sequence}>"
