"""Google Calendar integration.

Provides the page fetcher that pulls event changes from Google Calendar
into the sync engine.

## Google Calendar API

Uses the Google Calendar API v3:
- https://developers.google.com/calendar/api/v3/reference
"""

from agenda_sync.calendar.google_calendar import (
    GoogleCalendarFetcher,
    is_declined,
    item_to_delta,
    parse_event_time,
)

__all__ = [
    "GoogleCalendarFetcher",
    "is_declined",
    "item_to_delta",
    "parse_event_time",
]
