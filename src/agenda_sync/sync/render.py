"""Snapshot renderers.

A renderer receives the snapshot of every successful sync cycle. The
coordinator schedules `present` as a task and does not wait for it.
"""

from __future__ import annotations

import logging
import sys
from abc import ABC, abstractmethod
from datetime import tzinfo
from typing import TextIO

from agenda_sync.models.event import CalendarId
from agenda_sync.models.snapshot import Snapshot

logger = logging.getLogger(__name__)


class SnapshotRenderer(ABC):
    """Consumer of freshly built snapshots."""

    @abstractmethod
    async def present(self, calendar_id: CalendarId, snapshot: Snapshot) -> None:
        pass


class TextRenderer(SnapshotRenderer):
    """Writes an agenda listing to a text stream.

    Output format:
        ```
        primary: 2 events
        Mon 2024-03-11 09:00-09:30  Standup
        Tue 2024-03-12 All day      Offsite
        ```
    """

    def __init__(self, stream: TextIO | None = None, zone: tzinfo | None = None):
        self.stream = stream or sys.stdout
        self.zone = zone

    def lines(self, calendar_id: CalendarId, snapshot: Snapshot) -> list[str]:
        lines = [f"{calendar_id}: {len(snapshot)} events"]
        for occurrence in snapshot.occurrences:
            start = occurrence.start
            if self.zone is not None and not occurrence.all_day:
                start = start.astimezone(self.zone)
                end = occurrence.end.astimezone(self.zone)
                when = f"{start:%H:%M}-{end:%H:%M}"
            else:
                when = occurrence.format_time()
            lines.append(f"{start:%a %Y-%m-%d} {when:<12} {occurrence.title}")
        return lines

    async def present(self, calendar_id: CalendarId, snapshot: Snapshot) -> None:
        self.stream.write("\n".join(self.lines(calendar_id, snapshot)) + "\n")
        self.stream.flush()
