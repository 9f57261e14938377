"""Event models for calendar synchronization."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from agenda_sync.errors import MalformedDataError
from agenda_sync.models.recurrence import RecurrenceRule

CalendarId = str
SyncToken = str

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def localize(wall: datetime, zone: tzinfo) -> datetime:
    """Attach a zone to a naive wall-clock time.

    Wall times inside a DST gap are shifted forward by the gap, as most
    calendar clients do.
    """
    aware = wall.replace(tzinfo=zone)
    return aware.astimezone(timezone.utc).astimezone(zone)


class EventStatus(str, Enum):
    """Status of an event as reported by the remote calendar."""

    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class EventTime(BaseModel):
    """Start or end of an event.

    Either a point in time (`date_time`) or an all-day date (`day`), with an
    optional IANA time zone. A naive `date_time` is interpreted in
    `time_zone`.
    """

    model_config = ConfigDict(frozen=True)

    date_time: datetime | None = None
    day: date | None = None
    time_zone: str | None = None

    @field_validator("time_zone")
    @classmethod
    def validate_time_zone(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown time zone: {v}") from e
        return v

    @model_validator(mode="after")
    def check_exactly_one(self) -> EventTime:
        if (self.date_time is None) == (self.day is None):
            raise ValueError("Exactly one of date_time or day must be set")
        if (
            self.date_time is not None
            and self.date_time.tzinfo is None
            and self.time_zone is None
        ):
            raise ValueError("A naive date_time requires a time_zone")
        return self

    @classmethod
    def at(cls, value: datetime, time_zone: str | None = None) -> EventTime:
        return cls(date_time=value, time_zone=time_zone)

    @classmethod
    def on(cls, value: date, time_zone: str | None = None) -> EventTime:
        return cls(day=value, time_zone=time_zone)

    @property
    def all_day(self) -> bool:
        return self.day is not None

    def zone(self) -> tzinfo:
        """Zone used for wall-clock arithmetic."""
        if self.time_zone:
            return ZoneInfo(self.time_zone)
        if self.date_time is not None and self.date_time.tzinfo is not None:
            return self.date_time.tzinfo
        return timezone.utc

    def to_instant(self) -> datetime:
        """Absolute instant in UTC. All-day dates start at local midnight."""
        if self.day is not None:
            return localize(datetime.combine(self.day, time()), self.zone()).astimezone(
                timezone.utc
            )
        value = self.date_time
        if value.tzinfo is None:
            value = localize(value, self.zone())
        return value.astimezone(timezone.utc)

    def local_wall(self) -> datetime:
        """Naive wall-clock time in `zone()`."""
        if self.day is not None:
            return datetime.combine(self.day, time())
        return self.to_instant().astimezone(self.zone()).replace(tzinfo=None)


class EventRecord(BaseModel):
    """Latest known state of one remote event.

    Identified by `(calendar_id, event_id)`. An exception to a recurring
    series carries `recurring_event_id` and `original_start`, the start of
    the occurrence it overrides.
    """

    model_config = ConfigDict(frozen=True)

    calendar_id: CalendarId = Field(..., min_length=1)
    event_id: str = Field(..., min_length=1)
    title: str = ""
    start: EventTime
    end: EventTime
    recurrence: RecurrenceRule | None = None
    sequence: int = Field(default=0, ge=0)
    updated: datetime | None = Field(
        default=None, description="Remote last-modified time, breaks sequence ties"
    )
    status: EventStatus = EventStatus.CONFIRMED
    recurring_event_id: str | None = None
    original_start: EventTime | None = None
    location: str | None = None

    @field_validator("updated")
    @classmethod
    def normalize_updated(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def check_consistency(self) -> EventRecord:
        if self.start.all_day != self.end.all_day:
            raise ValueError("start and end must both be all-day or both be timed")
        if self.end.to_instant() < self.start.to_instant():
            raise ValueError("end is before start")
        if (self.recurring_event_id is None) != (self.original_start is None):
            raise ValueError("recurring_event_id and original_start go together")
        if self.recurrence is not None and self.recurring_event_id is not None:
            raise ValueError("an exception cannot carry its own recurrence")
        return self

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None

    @property
    def is_exception(self) -> bool:
        return self.recurring_event_id is not None

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED

    @property
    def duration(self) -> timedelta:
        return self.end.to_instant() - self.start.to_instant()

    @property
    def version(self) -> tuple[int, datetime]:
        """Ordering key for last-writer-wins merges."""
        return (self.sequence, self.updated or _EPOCH)

    def cancelled(self) -> EventRecord:
        return self.model_copy(update={"status": EventStatus.CANCELLED})


class DeltaKind(str, Enum):
    UPSERT = "upsert"
    CANCEL = "cancel"


class EventDelta(BaseModel):
    """One change reported by the remote source.

    A cancellation of a whole event needs only its id. A cancellation of a
    single occurrence carries the cancelled exception record so the store
    can remember which occurrence it removes.
    """

    model_config = ConfigDict(frozen=True)

    kind: DeltaKind
    calendar_id: CalendarId
    event_id: str
    record: EventRecord | None = None
    sequence: int | None = None
    updated: datetime | None = None

    @classmethod
    def upsert(cls, record: EventRecord) -> EventDelta:
        return cls(
            kind=DeltaKind.UPSERT,
            calendar_id=record.calendar_id,
            event_id=record.event_id,
            record=record,
            sequence=record.sequence,
            updated=record.updated,
        )

    @classmethod
    def cancel(
        cls,
        calendar_id: CalendarId,
        event_id: str,
        sequence: int | None = None,
        updated: datetime | None = None,
        record: EventRecord | None = None,
    ) -> EventDelta:
        if record is not None and not record.is_cancelled:
            record = record.cancelled()
        return cls(
            kind=DeltaKind.CANCEL,
            calendar_id=calendar_id,
            event_id=event_id,
            record=record,
            sequence=sequence,
            updated=updated,
        )

    def check(self, calendar_id: CalendarId) -> None:
        """Raise MalformedDataError unless this delta can be applied to `calendar_id`."""
        if not self.event_id:
            raise MalformedDataError("delta without event id", calendar_id=calendar_id)
        if self.calendar_id != calendar_id:
            raise MalformedDataError(
                f"delta for calendar {self.calendar_id!r} delivered to {calendar_id!r}",
                calendar_id=calendar_id,
                event_id=self.event_id,
            )
        if self.kind == DeltaKind.UPSERT and self.record is None:
            raise MalformedDataError(
                "upsert without a record", calendar_id=calendar_id, event_id=self.event_id
            )
        if self.record is not None and (
            self.record.event_id != self.event_id
            or self.record.calendar_id != self.calendar_id
        ):
            raise MalformedDataError(
                "record identity does not match delta",
                calendar_id=calendar_id,
                event_id=self.event_id,
            )
