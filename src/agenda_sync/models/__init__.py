"""Domain models for calendar synchronization."""

from agenda_sync.models.event import (
    CalendarId,
    DeltaKind,
    EventDelta,
    EventRecord,
    EventStatus,
    EventTime,
    SyncToken,
)
from agenda_sync.models.recurrence import Frequency, RecurrenceRule
from agenda_sync.models.snapshot import Occurrence, Snapshot, TimeWindow

__all__ = [
    # Event
    "CalendarId",
    "SyncToken",
    "EventStatus",
    "EventTime",
    "EventRecord",
    "EventDelta",
    "DeltaKind",
    # Recurrence
    "Frequency",
    "RecurrenceRule",
    # Snapshot
    "Occurrence",
    "Snapshot",
    "TimeWindow",
]
