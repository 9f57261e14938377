"""Occurrence and snapshot models.

Both are derived values: recomputed for every query window, never persisted
and never mutated after construction.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from agenda_sync.models.event import CalendarId, EventRecord, EventStatus, localize


def _require_aware(v: datetime) -> datetime:
    if v.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return v


class TimeWindow(BaseModel):
    """Half-open interval `[start, end)` of absolute time."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def require_aware(cls, v: datetime) -> datetime:
        return _require_aware(v)

    @model_validator(mode="after")
    def check_order(self) -> TimeWindow:
        if self.end <= self.start:
            raise ValueError("window end must be after start")
        return self

    @classmethod
    def days_from(cls, day: date, days: int, zone: tzinfo) -> TimeWindow:
        """Window covering `days` local days starting at midnight of `day`."""
        start = localize(datetime.combine(day, time()), zone)
        end = localize(datetime.combine(day + timedelta(days=days), time()), zone)
        return cls(start=start, end=end)

    def intersects(self, start: datetime, end: datetime) -> bool:
        """Whether a span overlaps the window. Zero-length spans count when inside."""
        if end == start:
            return self.start <= start < self.end
        return start < self.end and end > self.start


class Occurrence(BaseModel):
    """One concrete instance of an event inside a window.

    `start`/`end` are expressed in the event's own zone so consumers can
    show local wall-clock times directly.
    """

    model_config = ConfigDict(frozen=True)

    calendar_id: CalendarId
    event_id: str
    start: datetime
    end: datetime
    title: str
    status: EventStatus = EventStatus.CONFIRMED
    all_day: bool = False
    series_id: str | None = None
    original_start: datetime | None = None
    location: str | None = None

    @field_validator("start", "end")
    @classmethod
    def require_aware(cls, v: datetime) -> datetime:
        return _require_aware(v)

    @classmethod
    def from_record(cls, record: EventRecord) -> Occurrence:
        zone = record.start.zone()
        return cls(
            calendar_id=record.calendar_id,
            event_id=record.event_id,
            start=record.start.to_instant().astimezone(zone),
            end=record.end.to_instant().astimezone(zone),
            title=record.title,
            status=record.status,
            all_day=record.start.all_day,
            series_id=record.recurring_event_id,
            original_start=(
                record.original_start.to_instant() if record.original_start else None
            ),
            location=record.location,
        )

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.start.astimezone(timezone.utc), self.event_id)

    @property
    def dedup_key(self) -> tuple[str, datetime]:
        return (self.event_id, self.start.astimezone(timezone.utc))

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def format_time(self) -> str:
        """Format the occurrence time for display."""
        if self.all_day:
            return "All day"
        return f"{self.start.strftime('%H:%M')}-{self.end.strftime('%H:%M')}"


class Snapshot(BaseModel):
    """Immutable, time-ordered view of one calendar for one window."""

    model_config = ConfigDict(frozen=True)

    calendar_id: CalendarId
    window: TimeWindow
    occurrences: tuple[Occurrence, ...] = ()

    def __len__(self) -> int:
        return len(self.occurrences)

    def next_event(self, now: datetime) -> Occurrence | None:
        """First occurrence that is in progress or still to come."""
        for occurrence in self.occurrences:
            if occurrence.end > now or (
                occurrence.end == occurrence.start and occurrence.start >= now
            ):
                return occurrence
        return None

    def agenda(self, day: date, zone: tzinfo) -> list[Occurrence]:
        """Occurrences intersecting the local day `day` in `zone`."""
        day_window = TimeWindow.days_from(day, 1, zone)
        return [
            o for o in self.occurrences if day_window.intersects(o.start, o.end)
        ]
