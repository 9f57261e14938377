"""Recurrence expansion.

Turns a recurring parent event plus its exception records into the concrete
occurrences inside a window.

## Wall-clock Semantics

Candidates are generated by `dateutil.rrule` on naive wall-clock times in
the event's own zone and only then localized. A daily 09:00 meeting in
`America/New_York` therefore stays at 09:00 local across DST transitions
instead of drifting by an hour in UTC.

## Exceptions

Exception records are matched to candidates by their `original_start`:

- cancelled exception: the occurrence is dropped
- any other exception: its own start, end and title replace the generated ones

An exception whose original start is a valid occurrence outside the scanned
candidate range is still emitted when its new time falls inside the window
(an occurrence moved into the window from far away).

`expand` has no hidden state. Memoization, if any, belongs to the caller
and must be keyed by (event id, window) and dropped whenever the parent or
one of its exceptions changes.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, timezone, tzinfo

from dateutil.rrule import (
    DAILY,
    FR,
    MO,
    MONTHLY,
    SA,
    SU,
    TH,
    TU,
    WE,
    WEEKLY,
    YEARLY,
    rrule,
    rruleset,
)

from agenda_sync.models.event import EventRecord, localize
from agenda_sync.models.recurrence import Frequency, RecurrenceRule
from agenda_sync.models.snapshot import Occurrence, TimeWindow

logger = logging.getLogger(__name__)

DEFAULT_OCCURRENCE_LIMIT = 1000

_FREQUENCIES = {
    Frequency.DAILY: DAILY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.MONTHLY: MONTHLY,
    Frequency.YEARLY: YEARLY,
}
_WEEKDAYS = {"MO": MO, "TU": TU, "WE": WE, "TH": TH, "FR": FR, "SA": SA, "SU": SU}
_WEEKDAY_PATTERN = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")

# Slack around the window when scanning wall-clock candidates; covers the
# largest UTC offset difference between the window's zone and the event's.
_SCAN_SLACK = timedelta(days=1)


def _weekday(spec: str):
    match = _WEEKDAY_PATTERN.match(spec)
    weekday = _WEEKDAYS[match.group(2)]
    if match.group(1):
        return weekday(int(match.group(1)))
    return weekday


def _to_wall(value: datetime | date, zone: tzinfo, default_time: time) -> datetime:
    """Express an EXDATE/RDATE/UNTIL value as naive wall-clock time in `zone`."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value
        return value.astimezone(zone).replace(tzinfo=None)
    return datetime.combine(value, default_time)


def _wall_duration(parent: EventRecord) -> timedelta:
    """Duration in wall-clock terms, as measured in the start's zone."""
    if parent.start.all_day:
        return parent.end.day - parent.start.day
    zone = parent.start.zone()
    end_wall = parent.end.to_instant().astimezone(zone).replace(tzinfo=None)
    return end_wall - parent.start.local_wall()


class _Series:
    """Wall-clock view of one parent's recurrence."""

    def __init__(self, parent: EventRecord):
        rule = parent.recurrence
        if rule is None:
            raise ValueError(f"Event {parent.event_id} has no recurrence")

        self.parent = parent
        self.rule: RecurrenceRule = rule
        self.zone = parent.start.zone()
        self.all_day = parent.start.all_day
        self.dtstart = parent.start.local_wall()
        self.duration = _wall_duration(parent)
        self.excluded_days = {
            d for d in rule.exdates if not isinstance(d, datetime)
        }
        self.ruleset = self._build()

    def _build(self) -> rruleset:
        rule = self.rule
        until = None
        if rule.until is not None:
            # A date-only UNTIL includes the whole last day
            until_time = time() if self.all_day else time(23, 59, 59)
            until = _to_wall(rule.until, self.zone, until_time)

        kwargs = {
            "dtstart": self.dtstart,
            "interval": rule.interval,
            "count": rule.count,
            "until": until,
        }
        if rule.by_weekday:
            kwargs["byweekday"] = [_weekday(d) for d in rule.by_weekday]
        if rule.by_month_day:
            kwargs["bymonthday"] = list(rule.by_month_day)
        if rule.by_month:
            kwargs["bymonth"] = list(rule.by_month)
        if rule.by_set_pos:
            kwargs["bysetpos"] = list(rule.by_set_pos)
        if rule.week_start:
            kwargs["wkst"] = _WEEKDAYS[rule.week_start]

        rset = rruleset()
        rset.rrule(rrule(_FREQUENCIES[rule.frequency], **kwargs))
        for value in rule.rdates:
            rset.rdate(_to_wall(value, self.zone, self.dtstart.time()))
        for value in rule.exdates:
            if isinstance(value, datetime):
                rset.exdate(_to_wall(value, self.zone, self.dtstart.time()))
        return rset

    def key(self, wall: datetime) -> date | datetime:
        """Identity of an occurrence: its local date for all-day series, else its instant."""
        if self.all_day:
            return wall.date()
        return localize(wall, self.zone).astimezone(timezone.utc)

    def is_excluded(self, wall: datetime) -> bool:
        return wall.date() in self.excluded_days

    def walls(self, lo: datetime, hi: datetime, limit: int) -> list[datetime]:
        """Candidate wall-clock starts in `[lo, hi]`, at most `limit` of them."""
        result = []
        generated = 0
        for wall in self.ruleset.xafter(lo, count=limit, inc=True):
            if wall > hi:
                break
            generated += 1
            if not self.is_excluded(wall):
                result.append(wall)
        if generated >= limit:
            logger.warning(
                f"Expansion of {self.parent.event_id} stopped at {limit} occurrences"
            )
        return result

    def contains(self, wall: datetime) -> bool:
        if self.is_excluded(wall):
            return False
        return bool(self.ruleset.between(wall, wall, inc=True))

    def occurrence(self, wall: datetime) -> Occurrence:
        start = localize(wall, self.zone)
        end = localize(wall + self.duration, self.zone)
        parent = self.parent
        return Occurrence(
            calendar_id=parent.calendar_id,
            event_id=parent.event_id,
            start=start,
            end=end,
            title=parent.title,
            status=parent.status,
            all_day=self.all_day,
            series_id=parent.event_id,
            original_start=start.astimezone(timezone.utc),
            location=parent.location,
        )


def _exception_key(exception: EventRecord, series: _Series) -> date | datetime:
    original = exception.original_start
    if series.all_day and original.day is not None:
        return original.day
    if series.all_day:
        return original.to_instant().astimezone(series.zone).date()
    return original.to_instant()


def _override(exception: EventRecord, series: _Series, wall: datetime) -> Occurrence:
    occurrence = Occurrence.from_record(exception)
    return occurrence.model_copy(
        update={
            "series_id": series.parent.event_id,
            "original_start": localize(wall, series.zone).astimezone(timezone.utc),
        }
    )


def expand(
    parent: EventRecord,
    exceptions: Iterable[EventRecord],
    window: TimeWindow,
    limit: int = DEFAULT_OCCURRENCE_LIMIT,
) -> list[Occurrence]:
    """Expand a recurring event into the occurrences intersecting `window`.

    Args:
        parent: Recurring event (must carry a recurrence rule)
        exceptions: Exception records of this parent, in any order
        window: Query window
        limit: Maximum candidates generated for the rule

    Returns:
        Occurrences sorted by (start, event id)
    """
    series = _Series(parent)

    by_key: dict[date | datetime, EventRecord] = {}
    for exception in exceptions:
        if exception.recurring_event_id != parent.event_id:
            continue
        key = _exception_key(exception, series)
        current = by_key.get(key)
        if current is None or exception.version > current.version:
            by_key[key] = exception

    lo = (window.start - series.duration).astimezone(series.zone).replace(tzinfo=None)
    hi = window.end.astimezone(series.zone).replace(tzinfo=None)
    walls = series.walls(lo - _SCAN_SLACK, hi + _SCAN_SLACK, limit)

    occurrences: list[Occurrence] = []
    matched: set[date | datetime] = set()

    for wall in walls:
        key = series.key(wall)
        exception = by_key.get(key)
        if exception is not None:
            matched.add(key)
            if exception.is_cancelled:
                continue
            occurrence = _override(exception, series, wall)
        else:
            occurrence = series.occurrence(wall)
        if window.intersects(occurrence.start, occurrence.end):
            occurrences.append(occurrence)

    # Occurrences moved into the window from outside the scanned range
    for key, exception in by_key.items():
        if key in matched or exception.is_cancelled:
            continue
        if isinstance(key, datetime):
            wall = key.astimezone(series.zone).replace(tzinfo=None)
        else:
            wall = datetime.combine(key, time())
        if not series.contains(wall):
            continue
        occurrence = _override(exception, series, wall)
        if window.intersects(occurrence.start, occurrence.end):
            occurrences.append(occurrence)

    occurrences.sort(key=lambda o: o.sort_key)
    return occurrences


def series_end(record: EventRecord) -> datetime | None:
    """End instant of the last occurrence of a finite series, None if open-ended.

    Used to index recurring events for window queries.
    """
    rule = record.recurrence
    if rule is None:
        return record.end.to_instant()
    if not rule.is_finite:
        return None

    series = _Series(record)
    last: datetime | None = None
    for wall in series.ruleset:
        if not series.is_excluded(wall):
            last = wall

    if last is None:
        return record.end.to_instant()
    return localize(last + series.duration, series.zone).astimezone(timezone.utc)
