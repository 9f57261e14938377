"""Pytest fixtures for calendar synchronization tests.

This module provides test fixtures that ensure:
1. No external API calls are made (Google APIs are faked or mocked)
2. Every test gets its own throwaway SQLite database
3. Isolated test environment with controlled configuration
"""

import asyncio
import os
from datetime import date, datetime, timedelta, timezone

import pytest

# Set test environment BEFORE importing application modules
# This ensures no real services are contacted during test collection
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GOOGLE_TOKEN_FILE", "/nonexistent/token.json")
os.environ.setdefault("DEBUG", "true")

from agenda_sync.database import close_db, create_tables, init_db
from agenda_sync.errors import TokenInvalidError, TransientFetchError
from agenda_sync.models import (
    EventDelta,
    EventRecord,
    EventTime,
    RecurrenceRule,
)
from agenda_sync.store import EventStore, TokenStore
from agenda_sync.sync import CalendarLocks, FetchDriver, PageFetcher, PageResult


# =============================================================================
# Test Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset settings cache before each test to ensure clean state."""
    from agenda_sync.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh SQLite file database."""
    factory = await init_db(f"sqlite+aiosqlite:///{tmp_path / 'agenda.db'}")
    await create_tables()
    yield factory
    await close_db()


@pytest.fixture
def token_store(session_factory) -> TokenStore:
    return TokenStore(session_factory)


@pytest.fixture
def event_store(session_factory) -> EventStore:
    return EventStore(session_factory)


# =============================================================================
# Fake Remote Source
# =============================================================================


class FakeFetcher(PageFetcher):
    """Scripted PageFetcher.

    `pages[token]` is the list of pages returned for a sync started from
    `token` (None for a full sync). Cursors are page indexes. Errors queued
    in `errors` are raised by the next calls, one per call.
    """

    name = "fake"

    def __init__(self):
        self.pages: dict[str | None, list[PageResult]] = {}
        self.errors: list[Exception] = []
        self.invalid_tokens: set[str] = set()
        self.calls: list[tuple[str, str | None, str | None]] = []
        self.delay: float = 0.0

    def script(self, token: str | None, *pages: PageResult) -> None:
        self.pages[token] = list(pages)

    async def fetch_page(self, calendar_id, token, cursor):
        self.calls.append((calendar_id, token, cursor))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        if token in self.invalid_tokens:
            raise TokenInvalidError("token expired", calendar_id=calendar_id, status_code=410)
        pages = self.pages.get(token)
        if pages is None:
            raise TransientFetchError("no script for token", calendar_id=calendar_id)
        index = int(cursor) if cursor else 0
        return pages[index]


def page(*deltas, cursor=None, token=None, malformed=None) -> PageResult:
    """Build a PageResult."""
    return PageResult(
        deltas=list(deltas),
        next_cursor=cursor,
        new_token=token,
        malformed=list(malformed or []),
    )


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def locks() -> CalendarLocks:
    return CalendarLocks()


@pytest.fixture
def driver(fake_fetcher, token_store, event_store, locks) -> FetchDriver:
    return FetchDriver(fake_fetcher, token_store, event_store, locks=locks, fetch_timeout=1.0)


# =============================================================================
# Sample Records
# =============================================================================


def timed_event(
    event_id: str,
    start: datetime,
    minutes: int = 30,
    calendar_id: str = "primary",
    title: str | None = None,
    sequence: int = 0,
    time_zone: str | None = None,
    **kwargs,
) -> EventRecord:
    """Build a timed EventRecord."""
    return EventRecord(
        calendar_id=calendar_id,
        event_id=event_id,
        title=title if title is not None else event_id,
        start=EventTime(date_time=start, time_zone=time_zone),
        end=EventTime(date_time=start + timedelta(minutes=minutes), time_zone=time_zone),
        sequence=sequence,
        **kwargs,
    )


def all_day_event(
    event_id: str,
    day: date,
    days: int = 1,
    calendar_id: str = "primary",
    **kwargs,
) -> EventRecord:
    """Build an all-day EventRecord."""
    return EventRecord(
        calendar_id=calendar_id,
        event_id=event_id,
        title=kwargs.pop("title", event_id),
        start=EventTime(day=day),
        end=EventTime(day=day + timedelta(days=days)),
        **kwargs,
    )


def weekly_standup(
    event_id: str = "standup",
    first: datetime = datetime(2024, 3, 4, 9, 0),
    time_zone: str = "America/New_York",
    rule: str = "RRULE:FREQ=WEEKLY;BYDAY=MO",
    calendar_id: str = "primary",
    **kwargs,
) -> EventRecord:
    """Weekly 09:00 wall-clock meeting in New York (naive start, zoned)."""
    return EventRecord(
        calendar_id=calendar_id,
        event_id=event_id,
        title=kwargs.pop("title", "Standup"),
        start=EventTime(date_time=first, time_zone=time_zone),
        end=EventTime(date_time=first + timedelta(minutes=30), time_zone=time_zone),
        recurrence=RecurrenceRule.parse([rule], time_zone=time_zone),
        **kwargs,
    )


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def upsert(record: EventRecord) -> EventDelta:
    return EventDelta.upsert(record)

