"""Engine assembly.

Wires stores, fetcher, snapshot builder and coordinator from settings, the
same way for the CLI and the HTTP server.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda_sync.config import Settings
from agenda_sync.store import EventStore, TokenStore
from agenda_sync.sync import (
    CalendarLocks,
    FetchDriver,
    PageFetcher,
    RetryPolicy,
    SnapshotBuilder,
    SnapshotRenderer,
    SyncCoordinator,
)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(debug: bool = False) -> None:
    """Configure root logging for the CLI and server."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
    )
    # googleapiclient logs every discovery lookup at INFO
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)


def build_coordinator(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fetcher: PageFetcher,
    renderers: Sequence[SnapshotRenderer] = (),
) -> SyncCoordinator:
    """Assemble a coordinator from settings.

    Args:
        settings: Application settings
        session_factory: Database session factory from `init_db()`
        fetcher: Remote page source
        renderers: Receivers of each successful snapshot

    Returns:
        Coordinator whose driver and builder share one set of calendar locks
    """
    locks = CalendarLocks()
    events = EventStore(session_factory)
    driver = FetchDriver(
        fetcher,
        TokenStore(session_factory),
        events,
        locks=locks,
        fetch_timeout=settings.fetch_timeout_seconds,
    )
    builder = SnapshotBuilder(
        events, locks=locks, occurrence_limit=settings.max_occurrences_per_rule
    )
    retention = (
        timedelta(days=settings.retention_days) if settings.retention_days else None
    )
    return SyncCoordinator(
        driver,
        builder,
        renderers=renderers,
        window_days=settings.window_days,
        display_zone=settings.display_zone,
        retention=retention,
        retry_policy=RetryPolicy.from_settings(settings),
    )
