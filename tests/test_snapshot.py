"""Tests for snapshot building."""

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from agenda_sync.models import EventDelta, EventStatus, EventTime, TimeWindow
from agenda_sync.store import EventStore
from agenda_sync.sync import FetchDriver, SnapshotBuilder, compose_snapshot

from conftest import FakeFetcher, all_day_event, page, timed_event, upsert, utc, weekly_standup

NEW_YORK = ZoneInfo("America/New_York")
WEEK = TimeWindow(start=utc(2024, 3, 4), end=utc(2024, 3, 11))


class TestComposeSnapshot:
    """Tests for the pure composition step."""

    def test_merges_direct_and_recurring(self):
        """Test that direct events and expanded occurrences are merged in order."""
        records = [
            timed_event("lunch", utc(2024, 3, 5, 17)),
            weekly_standup(first=datetime(2024, 3, 4, 9, 0), rule="RRULE:FREQ=DAILY;COUNT=3"),
            all_day_event("offsite", date(2024, 3, 6)),
        ]
        snapshot = compose_snapshot("primary", WEEK, records)

        assert [(o.event_id, o.start.day) for o in snapshot.occurrences] == [
            ("standup", 4),
            ("standup", 5),
            ("lunch", 5),
            ("offsite", 6),
            ("standup", 6),
        ]

    def test_ties_ordered_by_event_id(self):
        """Test that occurrences starting together are ordered by event id."""
        records = [
            timed_event("b", utc(2024, 3, 5, 9)),
            timed_event("a", utc(2024, 3, 5, 9)),
        ]
        snapshot = compose_snapshot("primary", WEEK, records)
        assert [o.event_id for o in snapshot.occurrences] == ["a", "b"]

    def test_deduplicates_event_and_start(self):
        """Test that a record surfacing twice appears once."""
        record = timed_event("evt", utc(2024, 3, 5, 9))
        snapshot = compose_snapshot("primary", WEEK, [record, record])
        assert len(snapshot) == 1

    def test_cancelled_direct_event_excluded(self):
        """Test that cancelled events are not shown."""
        record = timed_event("evt", utc(2024, 3, 5, 9), status=EventStatus.CANCELLED)
        assert len(compose_snapshot("primary", WEEK, [record])) == 0

    def test_cancelled_series_excluded(self):
        """Test that a cancelled recurring parent shows no occurrences."""
        parent = weekly_standup(status=EventStatus.CANCELLED)
        assert len(compose_snapshot("primary", WEEK, [parent])) == 0

    def test_orphan_exception_shown(self):
        """Test that an exception whose parent is unknown is shown on its own."""
        orphan = timed_event(
            "standup_20240305",
            datetime(2024, 3, 5, 10, 0),
            time_zone="America/New_York",
            recurring_event_id="standup",
            original_start=EventTime(date_time=datetime(2024, 3, 5, 9, 0), time_zone="America/New_York"),
        )
        snapshot = compose_snapshot("primary", WEEK, [orphan])
        assert [o.event_id for o in snapshot.occurrences] == ["standup_20240305"]
        assert snapshot.occurrences[0].series_id == "standup"

    def test_events_outside_window_dropped(self):
        """Test that over-fetched records outside the window are dropped."""
        records = [timed_event("later", utc(2024, 3, 12, 9))]
        assert len(compose_snapshot("primary", WEEK, records)) == 0

    def test_deterministic(self):
        """Test that identical inputs give identical snapshots."""
        records = [
            weekly_standup(rule="RRULE:FREQ=DAILY"),
            timed_event("b", utc(2024, 3, 5, 14)),
            timed_event("a", utc(2024, 3, 5, 14)),
        ]
        first = compose_snapshot("primary", WEEK, records)
        second = compose_snapshot("primary", WEEK, list(reversed(records)))
        assert first == second
        assert first.model_dump_json() == second.model_dump_json()


class TestSnapshotBuilder:
    """Tests for building from the event store."""

    async def test_build_from_store(self, event_store: EventStore, locks):
        """Test that build reads the store for the window."""
        await event_store.upsert(weekly_standup())
        await event_store.upsert(timed_event("lunch", utc(2024, 3, 5, 17)))
        await event_store.upsert(timed_event("elsewhere", utc(2024, 3, 5, 17), calendar_id="home"))

        snapshot = await SnapshotBuilder(event_store, locks).build("primary", WEEK)

        assert snapshot.calendar_id == "primary"
        assert snapshot.window == WEEK
        assert [o.event_id for o in snapshot.occurrences] == ["standup", "lunch"]

    async def test_build_twice_is_identical(self, event_store: EventStore, locks):
        """Test snapshot determinism over the store."""
        await event_store.upsert(weekly_standup(rule="RRULE:FREQ=DAILY"))
        for event_id in ("x", "y", "z"):
            await event_store.upsert(timed_event(event_id, utc(2024, 3, 6, 14)))

        builder = SnapshotBuilder(event_store, locks)
        first = await builder.build("primary", WEEK)
        second = await builder.build("primary", WEEK)
        assert first.model_dump_json() == second.model_dump_json()

    async def test_build_applies_stored_exceptions(self, event_store: EventStore, locks):
        """Test that stored exceptions modify and cancel occurrences."""
        await event_store.upsert(weekly_standup(rule="RRULE:FREQ=DAILY"))
        moved = timed_event(
            "standup_20240305",
            datetime(2024, 3, 5, 11, 0),
            time_zone="America/New_York",
            title="Late standup",
            recurring_event_id="standup",
            original_start=EventTime(date_time=datetime(2024, 3, 5, 9, 0), time_zone="America/New_York"),
        )
        await event_store.upsert(moved)
        cancelled = moved.model_copy(
            update={
                "event_id": "standup_20240306",
                "start": EventTime(date_time=datetime(2024, 3, 6, 9, 0), time_zone="America/New_York"),
                "end": EventTime(date_time=datetime(2024, 3, 6, 9, 30), time_zone="America/New_York"),
                "original_start": EventTime(date_time=datetime(2024, 3, 6, 9, 0), time_zone="America/New_York"),
            }
        )
        await event_store.tombstone("primary", "standup_20240306", record=cancelled)

        window = TimeWindow(start=utc(2024, 3, 4), end=utc(2024, 3, 8))
        snapshot = await SnapshotBuilder(event_store, locks).build("primary", window)

        assert [(o.start.day, o.start.hour, o.title) for o in snapshot.occurrences] == [
            (4, 9, "Standup"),
            (5, 11, "Late standup"),
            (7, 9, "Standup"),
        ]

    async def test_purged_series_stays_hidden(self, session_factory, locks):
        """Test that purging a cancelled series takes its exceptions with it."""
        store = EventStore(session_factory, clock=lambda: utc(2024, 1, 1))
        await store.upsert(weekly_standup())
        await store.upsert(
            timed_event(
                "standup_20240311",
                datetime(2024, 3, 11, 10, 0),
                time_zone="America/New_York",
                title="Moved standup",
                recurring_event_id="standup",
                original_start=EventTime(date_time=datetime(2024, 3, 11, 9, 0), time_zone="America/New_York"),
            )
        )
        await store.tombstone("primary", "standup")

        builder = SnapshotBuilder(store, locks)
        window = TimeWindow(start=utc(2024, 3, 10), end=utc(2024, 3, 17))
        assert len(await builder.build("primary", window)) == 0

        assert await store.purge_older_than(utc(2024, 2, 1)) == 2
        assert await store.get("primary", "standup_20240311") is None
        assert len(await builder.build("primary", window)) == 0


class TestWorkCalendarScenario:
    """End-to-end: full sync, build, cancel one occurrence, rebuild."""

    async def test_weekly_event_then_cancelled_occurrence(
        self, fake_fetcher: FakeFetcher, driver: FetchDriver, event_store: EventStore, locks,
    ):
        """Test a weekly Monday 10:00 event across two syncs."""
        weekly = weekly_standup(
            event_id="weekly",
            calendar_id="work",
            first=datetime(2024, 3, 4, 10, 0),
            rule="RRULE:FREQ=WEEKLY;BYDAY=MO",
        )
        fake_fetcher.script(None, page(upsert(weekly), token="T1"))

        outcome = await driver.sync("work")
        assert outcome.sync_token == "T1"

        window = TimeWindow.days_from(date(2024, 3, 5), 14, NEW_YORK)
        builder = SnapshotBuilder(event_store, locks)
        snapshot = await builder.build("work", window)

        assert len(snapshot) == 2
        for occurrence in snapshot.occurrences:
            assert occurrence.start.weekday() == 0
            assert (occurrence.start.hour, occurrence.start.minute) == (10, 0)
            assert occurrence.end - occurrence.start == timedelta(minutes=30)

        second_monday = datetime(2024, 3, 18, 10, 0)
        cancelled = timed_event(
            "weekly_20240318T140000Z",
            second_monday,
            calendar_id="work",
            time_zone="America/New_York",
            recurring_event_id="weekly",
            original_start=EventTime(date_time=second_monday, time_zone="America/New_York"),
        )
        fake_fetcher.script(
            "T1",
            page(EventDelta.cancel("work", cancelled.event_id, record=cancelled), token="T2"),
        )

        outcome = await driver.sync("work")
        assert outcome.sync_token == "T2"

        snapshot = await builder.build("work", window)
        assert len(snapshot) == 1
        assert snapshot.occurrences[0].start.day == 11
