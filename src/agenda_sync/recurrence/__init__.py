"""Recurrence expansion for recurring calendar events."""

from agenda_sync.recurrence.expander import (
    DEFAULT_OCCURRENCE_LIMIT,
    expand,
    series_end,
)

__all__ = [
    "DEFAULT_OCCURRENCE_LIMIT",
    "expand",
    "series_end",
]
