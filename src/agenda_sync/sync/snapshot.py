"""Snapshot building.

Turns the records stored for a window into the ordered list of occurrences
a display shows:

- non-recurring, non-cancelled records become one occurrence each
- recurring parents are expanded together with their exceptions
- exceptions whose parent is unknown are shown on their own
- the merged list is sorted by (start instant, event id) and deduplicated
  by (event id, start instant)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable

from agenda_sync.models.event import CalendarId, EventRecord
from agenda_sync.models.snapshot import Occurrence, Snapshot, TimeWindow
from agenda_sync.recurrence import DEFAULT_OCCURRENCE_LIMIT, expand
from agenda_sync.store.events import EventStore
from agenda_sync.sync.locks import CalendarLocks

logger = logging.getLogger(__name__)


def compose_snapshot(
    calendar_id: CalendarId,
    window: TimeWindow,
    records: Iterable[EventRecord],
    limit: int = DEFAULT_OCCURRENCE_LIMIT,
) -> Snapshot:
    """Compose a snapshot from stored records.

    Args:
        calendar_id: Calendar the records belong to
        window: Viewing window
        records: Records returned by `EventStore.query_window`
        limit: Maximum occurrences generated per recurrence rule

    Returns:
        Immutable snapshot, identical for identical inputs
    """
    records = list(records)
    parents = {r.event_id: r for r in records if r.is_recurring}
    exceptions: dict[str, list[EventRecord]] = defaultdict(list)
    candidates: list[Occurrence] = []

    for record in records:
        if record.is_exception and record.recurring_event_id in parents:
            exceptions[record.recurring_event_id].append(record)
        elif record.is_recurring or record.is_cancelled:
            continue
        else:
            occurrence = Occurrence.from_record(record)
            if window.intersects(occurrence.start, occurrence.end):
                candidates.append(occurrence)

    for event_id, parent in parents.items():
        if parent.is_cancelled:
            continue
        candidates.extend(expand(parent, exceptions[event_id], window, limit))

    candidates.sort(key=lambda o: o.sort_key)

    occurrences: list[Occurrence] = []
    seen: set = set()
    for occurrence in candidates:
        key = occurrence.dedup_key
        if key in seen:
            continue
        seen.add(key)
        occurrences.append(occurrence)

    return Snapshot(
        calendar_id=calendar_id,
        window=window,
        occurrences=tuple(occurrences),
    )


class SnapshotBuilder:
    """Builds snapshots from the event store.

    Reads happen under the calendar's lock, so a snapshot never reflects
    a half-merged page.
    """

    def __init__(
        self,
        events: EventStore,
        locks: CalendarLocks | None = None,
        occurrence_limit: int = DEFAULT_OCCURRENCE_LIMIT,
    ):
        self.events = events
        self.locks = locks or CalendarLocks()
        self.occurrence_limit = occurrence_limit

    async def build(self, calendar_id: CalendarId, window: TimeWindow) -> Snapshot:
        async with self.locks.hold(calendar_id):
            records = await self.events.query_window(calendar_id, window)

        snapshot = compose_snapshot(calendar_id, window, records, self.occurrence_limit)
        logger.debug(
            f"Built snapshot for {calendar_id}: {len(snapshot)} occurrences "
            f"from {len(records)} records"
        )
        return snapshot
