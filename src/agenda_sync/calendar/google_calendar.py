"""Google Calendar page fetcher.

Reads changes from the Google Calendar API v3 `events.list` endpoint:
- https://developers.google.com/calendar/api/v3/reference/events/list
- https://developers.google.com/calendar/api/guides/sync

## Listing Mode

Events are listed with `singleEvents=False`: recurring events arrive once,
with their RRULE/EXDATE/RDATE lines, and modified or cancelled occurrences
arrive as separate exception items (`recurringEventId`,
`originalStartTime`). Expansion happens locally.

## Status Codes

| Status | Meaning | Raised |
| --- | --- | --- |
| 410 | sync token expired | `TokenInvalidError` |
| 429, 5xx | rate limit, server trouble | `TransientFetchError` |
| anything else | auth, permissions, unknown calendar | `FatalSyncError` |

Both lists are configurable.

## Authentication

Uses an authorized-user token file (as written by the OAuth installed-app
flow). Access tokens are refreshed transparently by the client library.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone
from typing import Any

from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from agenda_sync.config import Settings
from agenda_sync.errors import (
    FatalSyncError,
    MalformedDataError,
    TokenInvalidError,
    TransientFetchError,
)
from agenda_sync.models.event import (
    CalendarId,
    EventDelta,
    EventRecord,
    EventStatus,
    EventTime,
    SyncToken,
)
from agenda_sync.models.recurrence import RecurrenceRule
from agenda_sync.sync.fetch import PageCursor, PageFetcher, PageResult

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp (`2024-03-01T12:00:00.000Z`)."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_event_time(data: dict[str, Any], default_zone: str | None = None) -> EventTime:
    """Parse an API `start`/`end`/`originalStartTime` object.

    Raises:
        ValueError: If neither `date` nor `dateTime` is present
    """
    zone = data.get("timeZone") or default_zone
    if "date" in data:
        return EventTime(day=date.fromisoformat(data["date"]), time_zone=zone)
    if "dateTime" in data:
        return EventTime(date_time=parse_timestamp(data["dateTime"]), time_zone=zone)
    raise ValueError(f"Event time without date or dateTime: {data}")


def is_declined(item: dict[str, Any]) -> bool:
    """Whether the calendar owner declined this event."""
    for attendee in item.get("attendees", []):
        if attendee.get("self") and attendee.get("responseStatus") == "declined":
            return True
    return False


def item_to_delta(
    item: dict[str, Any],
    calendar_id: CalendarId,
    default_zone: str | None = None,
    skip_declined: bool = True,
) -> EventDelta:
    """Convert one `events.list` item into a delta.

    Args:
        item: Event resource from the API
        calendar_id: Calendar the item was listed from
        default_zone: Calendar time zone, used when the item carries none
        skip_declined: Deliver events the owner declined as cancellations

    Raises:
        MalformedDataError: If the item cannot be represented
    """
    event_id = item.get("id")
    if not event_id:
        raise MalformedDataError("event without id", calendar_id=calendar_id)

    try:
        sequence = item.get("sequence")
        updated = parse_timestamp(item["updated"]) if item.get("updated") else None
        cancelled = item.get("status") == EventStatus.CANCELLED.value

        original_start = None
        if "originalStartTime" in item:
            original_start = parse_event_time(item["originalStartTime"], default_zone)

        if cancelled and "start" not in item:
            record = None
            if original_start is not None and item.get("recurringEventId"):
                # Cancelled occurrence: keep which occurrence it removes
                record = EventRecord(
                    calendar_id=calendar_id,
                    event_id=event_id,
                    start=original_start,
                    end=original_start,
                    sequence=sequence or 0,
                    updated=updated,
                    status=EventStatus.CANCELLED,
                    recurring_event_id=item["recurringEventId"],
                    original_start=original_start,
                )
            return EventDelta.cancel(
                calendar_id, event_id, sequence=sequence, updated=updated, record=record
            )

        start = parse_event_time(item["start"], default_zone)
        end = parse_event_time(item["end"], start.time_zone or default_zone)

        recurrence = None
        if item.get("recurrence"):
            recurrence = RecurrenceRule.parse(item["recurrence"], time_zone=start.time_zone)

        record = EventRecord(
            calendar_id=calendar_id,
            event_id=event_id,
            title=item.get("summary", ""),
            start=start,
            end=end,
            recurrence=recurrence,
            sequence=sequence or 0,
            updated=updated,
            status=EventStatus(item.get("status", EventStatus.CONFIRMED.value)),
            recurring_event_id=item.get("recurringEventId") if original_start else None,
            original_start=original_start if item.get("recurringEventId") else None,
            location=item.get("location"),
        )
    except (KeyError, ValueError) as e:
        raise MalformedDataError(
            f"cannot parse event: {e}", calendar_id=calendar_id, event_id=event_id
        ) from e

    if record.is_cancelled or (skip_declined and is_declined(item)):
        return EventDelta.cancel(
            calendar_id,
            event_id,
            sequence=record.sequence,
            updated=record.updated,
            record=record,
        )
    return EventDelta.upsert(record)


class GoogleCalendarFetcher(PageFetcher):
    """PageFetcher backed by the Google Calendar API.

    Example:
        ```python
        fetcher = GoogleCalendarFetcher.from_settings(get_settings())
        page = await fetcher.fetch_page("primary", token=None, cursor=None)
        ```
    """

    name = "google"

    def __init__(
        self,
        credentials: Credentials | None = None,
        service: Any = None,
        page_size: int = 250,
        full_sync_lookback: timedelta | None = timedelta(days=30),
        skip_declined: bool = True,
        event_types: Iterable[str] = ("default",),
        token_invalid_status_codes: Iterable[int] = (410,),
        transient_status_codes: Iterable[int] = (429, 500, 502, 503, 504),
    ):
        """Initialize the fetcher.

        Args:
            credentials: Authorized user credentials
            service: Prebuilt Calendar API resource (takes precedence over credentials)
            page_size: Items per page (`maxResults`)
            full_sync_lookback: Full syncs skip events that ended before now minus this
            skip_declined: Deliver events the owner declined as cancellations
            event_types: Google event types kept, others are ignored
            token_invalid_status_codes: HTTP statuses meaning the sync token is invalid
            transient_status_codes: HTTP statuses worth retrying
        """
        if service is None and credentials is None:
            raise ValueError("Either credentials or service is required")
        self._credentials = credentials
        self._service = service
        self.page_size = page_size
        self.full_sync_lookback = full_sync_lookback
        self.skip_declined = skip_declined
        self.event_types = set(event_types)
        self.token_invalid_status_codes = set(token_invalid_status_codes)
        self.transient_status_codes = set(transient_status_codes)
        self._calendar_zones: dict[CalendarId, str | None] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> GoogleCalendarFetcher:
        """Create a fetcher from the authorized-user token file in settings."""
        path = os.path.expanduser(settings.google_token_file)
        if not os.path.exists(path):
            raise FatalSyncError(f"Google token file not found: {path}")
        credentials = Credentials.from_authorized_user_file(
            path, scopes=settings.google_calendar_scopes or DEFAULT_SCOPES
        )
        lookback = (
            timedelta(days=settings.full_sync_lookback_days)
            if settings.full_sync_lookback_days is not None
            else None
        )
        return cls(
            credentials=credentials,
            page_size=settings.page_size,
            full_sync_lookback=lookback,
            skip_declined=settings.skip_declined,
            event_types=settings.event_types,
            token_invalid_status_codes=settings.token_invalid_status_codes,
            transient_status_codes=settings.transient_status_codes,
        )

    @property
    def service(self) -> Any:
        if self._service is None:
            self._service = build(
                "calendar", "v3", credentials=self._credentials, cache_discovery=False
            )
        return self._service

    def list_params(
        self,
        calendar_id: CalendarId,
        token: SyncToken | None,
        cursor: PageCursor | None,
    ) -> dict[str, Any]:
        """Build `events.list` parameters for one page."""
        params: dict[str, Any] = {
            "calendarId": calendar_id,
            "maxResults": self.page_size,
            "singleEvents": False,
            "showDeleted": True,
        }
        if token:
            params["syncToken"] = token
        elif self.full_sync_lookback is not None:
            time_min = datetime.now(timezone.utc) - self.full_sync_lookback
            params["timeMin"] = time_min.isoformat()
        if cursor:
            params["pageToken"] = cursor
        return params

    async def fetch_page(
        self,
        calendar_id: CalendarId,
        token: SyncToken | None,
        cursor: PageCursor | None,
    ) -> PageResult:
        params = self.list_params(calendar_id, token, cursor)
        request = self.service.events().list(**params)
        result = await self._execute(calendar_id, request)

        # The list response carries the calendar's zone for floating times
        default_zone = result.get("timeZone") or self._calendar_zones.get(calendar_id)
        self._calendar_zones[calendar_id] = default_zone

        page = PageResult(
            next_cursor=result.get("nextPageToken"),
            new_token=result.get("nextSyncToken"),
        )
        for item in result.get("items", []):
            event_type = item.get("eventType", "default")
            if self.event_types and event_type not in self.event_types:
                logger.debug(f"Ignoring {event_type} event {item.get('id')}")
                continue
            try:
                page.deltas.append(
                    item_to_delta(item, calendar_id, default_zone, self.skip_declined)
                )
            except MalformedDataError as e:
                page.malformed.append(e)

        logger.debug(
            f"Fetched {len(page.deltas)} deltas from {calendar_id} "
            f"({'final' if page.is_final else 'more pages'})"
        )
        return page

    async def _execute(self, calendar_id: CalendarId, request: Any) -> dict[str, Any]:
        """Execute a request in a worker thread and classify failures."""
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as e:
            raise self.classify(calendar_id, e) from e
        except RefreshError as e:
            raise FatalSyncError(
                f"Google credentials rejected: {e}", calendar_id=calendar_id
            ) from e
        except (TransportError, OSError) as e:
            raise TransientFetchError(
                f"Network error: {e}", calendar_id=calendar_id
            ) from e

    def classify(self, calendar_id: CalendarId, error: HttpError) -> Exception:
        """Map an HttpError onto the sync error taxonomy."""
        status = int(error.resp.status)
        message = f"Google Calendar API error {status}: {error.reason or error}"

        if status in self.token_invalid_status_codes:
            return TokenInvalidError(message, calendar_id=calendar_id, status_code=status)
        if status in self.transient_status_codes:
            retry_after = error.resp.get("retry-after")
            if retry_after and not retry_after.isdigit():
                retry_after = None  # HTTP-date form
            return TransientFetchError(
                message,
                calendar_id=calendar_id,
                status_code=status,
                retry_after=float(retry_after) if retry_after else None,
            )
        return FatalSyncError(message, calendar_id=calendar_id, status_code=status)
