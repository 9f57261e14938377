"""Tests for the Google Calendar fetcher.

The Calendar API resource is replaced by a MagicMock; no HTTP requests are made.
"""

from datetime import date
from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from agenda_sync.calendar import GoogleCalendarFetcher, is_declined, item_to_delta, parse_event_time
from agenda_sync.config import get_settings
from agenda_sync.errors import (
    FatalSyncError,
    MalformedDataError,
    TokenInvalidError,
    TransientFetchError,
)
from agenda_sync.models import DeltaKind

from conftest import utc

NY_TIME = {"timeZone": "America/New_York"}


def lunch_item(**overrides) -> dict:
    item = {
        "id": "lunch",
        "status": "confirmed",
        "summary": "Lunch",
        "sequence": 2,
        "updated": "2024-03-01T10:00:00.000Z",
        "start": {"dateTime": "2024-03-05T12:00:00-05:00", **NY_TIME},
        "end": {"dateTime": "2024-03-05T13:00:00-05:00", **NY_TIME},
    }
    item.update(overrides)
    return item


def http_error(status: int, **headers) -> HttpError:
    return HttpError(httplib2.Response({"status": status, **headers}), b"")


@pytest.fixture
def service() -> MagicMock:
    service = MagicMock()
    service.events.return_value.list.return_value.execute.return_value = {
        "items": [],
        "nextSyncToken": "T1",
    }
    return service


@pytest.fixture
def fetcher(service) -> GoogleCalendarFetcher:
    return GoogleCalendarFetcher(service=service)


def respond(service: MagicMock, **response) -> None:
    service.events.return_value.list.return_value.execute.return_value = response


class TestParseEventTime:
    """Tests for event time parsing."""

    def test_all_day(self):
        """Test parsing an all-day date."""
        value = parse_event_time({"date": "2024-03-06"})
        assert value.all_day
        assert value.day == date(2024, 3, 6)

    def test_default_zone_applied(self):
        """Test that the calendar zone is used when the time carries none."""
        value = parse_event_time({"dateTime": "2024-03-05T12:00:00Z"}, "Europe/Berlin")
        assert value.time_zone == "Europe/Berlin"
        assert value.to_instant() == utc(2024, 3, 5, 12)

    def test_missing_value(self):
        """Test that a time object without a value is rejected."""
        with pytest.raises(ValueError):
            parse_event_time({"timeZone": "UTC"})


class TestItemToDelta:
    """Tests for converting API items into deltas."""

    def test_timed_event(self):
        """Test a plain timed event."""
        delta = item_to_delta(lunch_item(), "primary")

        assert delta.kind == DeltaKind.UPSERT
        record = delta.record
        assert record.title == "Lunch"
        assert record.start.to_instant() == utc(2024, 3, 5, 17)
        assert record.start.time_zone == "America/New_York"
        assert record.sequence == 2
        assert record.updated == utc(2024, 3, 1, 10)

    def test_all_day_event(self):
        """Test an all-day event."""
        delta = item_to_delta(
            lunch_item(start={"date": "2024-03-06"}, end={"date": "2024-03-07"}), "primary"
        )
        assert delta.record.start.all_day
        assert delta.record.start.day == date(2024, 3, 6)

    def test_recurring_event(self):
        """Test that recurrence lines are parsed in the event's zone."""
        delta = item_to_delta(
            lunch_item(
                recurrence=[
                    "RRULE:FREQ=WEEKLY;BYDAY=TU",
                    "EXDATE;TZID=America/New_York:20240312T120000",
                ]
            ),
            "primary",
        )
        assert delta.record.is_recurring
        assert len(delta.record.recurrence.exdates) == 1

    def test_modified_exception(self):
        """Test an exception overriding one occurrence."""
        delta = item_to_delta(
            lunch_item(
                id="standup_20240311T130000Z",
                recurringEventId="standup",
                originalStartTime={"dateTime": "2024-03-11T09:00:00-04:00", **NY_TIME},
            ),
            "primary",
        )
        assert delta.kind == DeltaKind.UPSERT
        assert delta.record.recurring_event_id == "standup"
        assert delta.record.original_start.to_instant() == utc(2024, 3, 11, 13)

    def test_cancelled_exception_without_start(self):
        """Test that a cancelled occurrence remembers which occurrence it removes."""
        delta = item_to_delta(
            {
                "id": "standup_20240311T130000Z",
                "status": "cancelled",
                "recurringEventId": "standup",
                "originalStartTime": {"dateTime": "2024-03-11T09:00:00-04:00", **NY_TIME},
            },
            "primary",
        )
        assert delta.kind == DeltaKind.CANCEL
        assert delta.record.is_cancelled
        assert delta.record.recurring_event_id == "standup"
        assert delta.record.start == delta.record.original_start

    def test_bare_cancellation(self):
        """Test that a deleted event needs only its id."""
        delta = item_to_delta({"id": "gone", "status": "cancelled"}, "primary")
        assert delta.kind == DeltaKind.CANCEL
        assert delta.event_id == "gone"
        assert delta.record is None

    def test_declined_event(self):
        """Test that events the owner declined are delivered as cancellations."""
        item = lunch_item(
            attendees=[
                {"email": "me@example.com", "self": True, "responseStatus": "declined"},
                {"email": "boss@example.com", "responseStatus": "accepted"},
            ]
        )
        assert is_declined(item)
        assert item_to_delta(item, "primary").kind == DeltaKind.CANCEL
        assert item_to_delta(item, "primary", skip_declined=False).kind == DeltaKind.UPSERT

    def test_declined_by_someone_else(self):
        """Test that another attendee declining changes nothing."""
        item = lunch_item(attendees=[{"email": "x@example.com", "responseStatus": "declined"}])
        assert not is_declined(item)

    @pytest.mark.parametrize(
        "item",
        [
            {"summary": "no id"},
            lunch_item(start={"timeZone": "UTC"}),
            lunch_item(end={}),
            lunch_item(recurrence=["RRULE:FREQ=SOMETIMES"]),
            lunch_item(start={"dateTime": "not a time"}),
        ],
    )
    def test_malformed_items(self, item):
        """Test that unparseable items raise MalformedDataError."""
        with pytest.raises(MalformedDataError):
            item_to_delta(item, "primary")


class TestFetchPage:
    """Tests for fetching one page."""

    async def test_incremental_page(self, fetcher: GoogleCalendarFetcher, service: MagicMock):
        """Test a page fetched from a sync token."""
        respond(service, items=[lunch_item()], nextSyncToken="T2", timeZone="America/New_York")

        page = await fetcher.fetch_page("primary", "T1", None)

        service.events.return_value.list.assert_called_once_with(
            calendarId="primary",
            maxResults=250,
            singleEvents=False,
            showDeleted=True,
            syncToken="T1",
        )
        assert page.is_final
        assert page.new_token == "T2"
        assert [d.event_id for d in page.deltas] == ["lunch"]

    async def test_intermediate_page(self, fetcher: GoogleCalendarFetcher, service: MagicMock):
        """Test that a page with a cursor is not final."""
        respond(service, items=[], nextPageToken="p2")

        page = await fetcher.fetch_page("primary", None, None)

        assert not page.is_final
        assert page.next_cursor == "p2"
        assert page.new_token is None

    async def test_calendar_zone_used_for_floating_times(
        self, fetcher: GoogleCalendarFetcher, service: MagicMock,
    ):
        """Test that the response time zone applies to items without one."""
        item = lunch_item(
            start={"dateTime": "2024-03-05T12:00:00Z"},
            end={"dateTime": "2024-03-05T13:00:00Z"},
        )
        respond(service, items=[item], nextSyncToken="T1", timeZone="Europe/Berlin")

        page = await fetcher.fetch_page("primary", None, None)
        assert page.deltas[0].record.start.time_zone == "Europe/Berlin"

    async def test_other_event_types_ignored(
        self, fetcher: GoogleCalendarFetcher, service: MagicMock,
    ):
        """Test that working-location and focus-time entries are dropped."""
        respond(
            service,
            items=[
                lunch_item(),
                lunch_item(id="office", eventType="workingLocation"),
                lunch_item(id="focus", eventType="focusTime"),
            ],
            nextSyncToken="T1",
        )
        page = await fetcher.fetch_page("primary", None, None)
        assert [d.event_id for d in page.deltas] == ["lunch"]

    async def test_malformed_items_collected(
        self, fetcher: GoogleCalendarFetcher, service: MagicMock,
    ):
        """Test that a malformed item does not fail the page."""
        respond(
            service,
            items=[lunch_item(), lunch_item(id="broken", start={})],
            nextSyncToken="T1",
        )
        page = await fetcher.fetch_page("primary", None, None)

        assert len(page.deltas) == 1
        assert len(page.malformed) == 1
        assert page.malformed[0].event_id == "broken"

    @pytest.mark.parametrize(
        "status, expected",
        [
            (410, TokenInvalidError),
            (429, TransientFetchError),
            (503, TransientFetchError),
            (401, FatalSyncError),
            (403, FatalSyncError),
            (404, FatalSyncError),
        ],
    )
    async def test_http_errors_classified(
        self, fetcher: GoogleCalendarFetcher, service: MagicMock, status, expected,
    ):
        """Test that HTTP errors map onto the sync error taxonomy."""
        service.events.return_value.list.return_value.execute.side_effect = http_error(status)

        with pytest.raises(expected) as exc_info:
            await fetcher.fetch_page("primary", "T1", None)

        assert exc_info.value.status_code == status
        assert exc_info.value.calendar_id == "primary"

    async def test_network_error_is_transient(
        self, fetcher: GoogleCalendarFetcher, service: MagicMock,
    ):
        """Test that socket errors are retried."""
        service.events.return_value.list.return_value.execute.side_effect = ConnectionResetError()

        with pytest.raises(TransientFetchError):
            await fetcher.fetch_page("primary", "T1", None)


class TestClassify:
    """Tests for status code classification."""

    def test_retry_after_seconds(self, fetcher: GoogleCalendarFetcher):
        """Test that a numeric Retry-After is carried on the error."""
        error = fetcher.classify("primary", http_error(429, **{"retry-after": "12"}))
        assert isinstance(error, TransientFetchError)
        assert error.retry_after == 12.0

    def test_retry_after_http_date_ignored(self, fetcher: GoogleCalendarFetcher):
        """Test that a date-form Retry-After is ignored."""
        error = fetcher.classify(
            "primary", http_error(503, **{"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"})
        )
        assert error.retry_after is None

    def test_configured_codes(self, service: MagicMock):
        """Test that status classification follows configuration."""
        fetcher = GoogleCalendarFetcher(
            service=service,
            token_invalid_status_codes=[410, 400],
            transient_status_codes=[500],
        )
        assert isinstance(fetcher.classify("primary", http_error(400)), TokenInvalidError)
        assert isinstance(fetcher.classify("primary", http_error(429)), FatalSyncError)


class TestConfiguration:
    """Tests for fetcher construction and request parameters."""

    def test_requires_credentials_or_service(self):
        """Test that a fetcher needs a way to reach the API."""
        with pytest.raises(ValueError):
            GoogleCalendarFetcher()

    def test_missing_token_file_is_fatal(self):
        """Test that a missing token file fails fast."""
        with pytest.raises(FatalSyncError):
            GoogleCalendarFetcher.from_settings(get_settings())

    def test_full_sync_params_bounded_by_lookback(self, fetcher: GoogleCalendarFetcher):
        """Test that full syncs start from the lookback horizon."""
        params = fetcher.list_params("primary", None, "page-2")
        assert "syncToken" not in params
        assert "timeMin" in params
        assert params["pageToken"] == "page-2"

    def test_incremental_params_have_no_time_bounds(self, fetcher: GoogleCalendarFetcher):
        """Test that sync-token requests carry no time bounds."""
        params = fetcher.list_params("primary", "T1", None)
        assert params["syncToken"] == "T1"
        assert "timeMin" not in params

    def test_unbounded_full_sync(self, service: MagicMock):
        """Test that the lookback can be disabled."""
        fetcher = GoogleCalendarFetcher(service=service, full_sync_lookback=None)
        assert "timeMin" not in fetcher.list_params("primary", None, None)
