"""Sync engine: fetching, snapshot building and cycle coordination."""

from agenda_sync.sync.coordinator import (
    CycleReport,
    RetryPolicy,
    SyncCoordinator,
    SyncState,
)
from agenda_sync.sync.fetch import (
    FetchDriver,
    PageFetcher,
    PageResult,
    SyncOutcome,
)
from agenda_sync.sync.locks import CalendarLocks
from agenda_sync.sync.render import SnapshotRenderer, TextRenderer
from agenda_sync.sync.snapshot import SnapshotBuilder, compose_snapshot

__all__ = [
    # Fetching
    "FetchDriver",
    "PageFetcher",
    "PageResult",
    "SyncOutcome",
    "CalendarLocks",
    # Snapshots
    "SnapshotBuilder",
    "compose_snapshot",
    "SnapshotRenderer",
    "TextRenderer",
    # Coordination
    "SyncCoordinator",
    "SyncState",
    "RetryPolicy",
    "CycleReport",
]
