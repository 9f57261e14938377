"""Recurrence rule model.

Covers the subset of RFC 5545 that Google Calendar emits in an event's
`recurrence` list:

```
RRULE:FREQ=WEEKLY;INTERVAL=2;UNTIL=20240401T035959Z;BYDAY=MO,WE
EXDATE;TZID=America/New_York:20240311T100000
EXDATE;VALUE=DATE:20240311
RDATE:20240320T150000Z
```
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from enum import Enum
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_WEEKDAY_PATTERN = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")


class Frequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


def _parse_int_list(value: str) -> tuple[int, ...]:
    return tuple(int(part) for part in value.split(","))


def _parse_value(
    value: str,
    params: dict[str, str],
    default_zone: str | None,
) -> datetime | date:
    """Parse a DATE or DATE-TIME property value."""
    if params.get("VALUE") == "DATE" or len(value) == 8:
        return datetime.strptime(value, "%Y%m%d").date()
    if value.endswith("Z"):
        return datetime.strptime(value[:-1], "%Y%m%dT%H%M%S").replace(
            tzinfo=timezone.utc
        )
    naive = datetime.strptime(value, "%Y%m%dT%H%M%S")
    zone_name = params.get("TZID") or default_zone
    return naive.replace(tzinfo=ZoneInfo(zone_name) if zone_name else timezone.utc)


def _format_value(value: datetime | date) -> tuple[str, str]:
    """Return (params, value) for a DATE or DATE-TIME."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return "", value.strftime("%Y%m%dT%H%M%S")
        return "", value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return ";VALUE=DATE", value.strftime("%Y%m%d")


class RecurrenceRule(BaseModel):
    """A recurrence rule with its exclusion and inclusion dates."""

    model_config = ConfigDict(frozen=True)

    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    count: int | None = Field(default=None, ge=1)
    until: datetime | date | None = None
    by_weekday: tuple[str, ...] = ()
    by_month_day: tuple[int, ...] = ()
    by_month: tuple[int, ...] = ()
    by_set_pos: tuple[int, ...] = ()
    week_start: str | None = None
    exdates: tuple[datetime | date, ...] = ()
    rdates: tuple[datetime | date, ...] = ()

    @field_validator("by_weekday")
    @classmethod
    def validate_weekdays(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        for day in v:
            if not _WEEKDAY_PATTERN.match(day):
                raise ValueError(f"Invalid weekday: {day}")
        return v

    @field_validator("week_start")
    @classmethod
    def validate_week_start(cls, v: str | None) -> str | None:
        if v is not None and v not in ("MO", "TU", "WE", "TH", "FR", "SA", "SU"):
            raise ValueError(f"Invalid week start: {v}")
        return v

    @model_validator(mode="after")
    def check_end_condition(self) -> RecurrenceRule:
        if self.count is not None and self.until is not None:
            raise ValueError("COUNT and UNTIL are mutually exclusive")
        return self

    @property
    def is_finite(self) -> bool:
        return self.count is not None or self.until is not None

    @classmethod
    def parse(cls, lines: list[str], time_zone: str | None = None) -> RecurrenceRule:
        """Parse RRULE/EXDATE/RDATE lines.

        Floating date-times (no `Z`, no TZID) are read in `time_zone`.

        Raises:
            ValueError: On unsupported properties or malformed values
        """
        fields: dict = {}
        exdates: list[datetime | date] = []
        rdates: list[datetime | date] = []
        seen_rule = False

        for line in lines:
            line = line.strip()
            if not line:
                continue
            head, sep, body = line.partition(":")
            if not sep:
                raise ValueError(f"Malformed recurrence line: {line!r}")
            name, *raw_params = head.split(";")
            params = dict(p.split("=", 1) for p in raw_params if "=" in p)
            name = name.upper()

            if name == "RRULE":
                if seen_rule:
                    raise ValueError("Multiple RRULE lines are not supported")
                seen_rule = True
                fields.update(cls._parse_rrule(body, time_zone))
            elif name in ("EXDATE", "RDATE"):
                target = exdates if name == "EXDATE" else rdates
                for value in body.split(","):
                    target.append(_parse_value(value, params, time_zone))
            else:
                raise ValueError(f"Unsupported recurrence property: {name}")

        if not seen_rule:
            raise ValueError("Recurrence without RRULE")

        return cls(**fields, exdates=tuple(exdates), rdates=tuple(rdates))

    @staticmethod
    def _parse_rrule(body: str, time_zone: str | None) -> dict:
        fields: dict = {}
        for part in body.split(";"):
            if not part:
                continue
            key, _, value = part.partition("=")
            key = key.upper()
            if key == "FREQ":
                fields["frequency"] = Frequency(value.upper())
            elif key == "INTERVAL":
                fields["interval"] = int(value)
            elif key == "COUNT":
                fields["count"] = int(value)
            elif key == "UNTIL":
                fields["until"] = _parse_value(value, {}, time_zone)
            elif key == "BYDAY":
                fields["by_weekday"] = tuple(value.upper().split(","))
            elif key == "BYMONTHDAY":
                fields["by_month_day"] = _parse_int_list(value)
            elif key == "BYMONTH":
                fields["by_month"] = _parse_int_list(value)
            elif key == "BYSETPOS":
                fields["by_set_pos"] = _parse_int_list(value)
            elif key == "WKST":
                fields["week_start"] = value.upper()
            else:
                raise ValueError(f"Unsupported RRULE part: {key}")
        if "frequency" not in fields:
            raise ValueError("RRULE without FREQ")
        return fields

    def to_lines(self) -> list[str]:
        """Serialize back to RRULE/EXDATE/RDATE lines."""
        parts = [f"FREQ={self.frequency.value}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        if self.until is not None:
            parts.append(f"UNTIL={_format_value(self.until)[1]}")
        if self.by_weekday:
            parts.append(f"BYDAY={','.join(self.by_weekday)}")
        if self.by_month_day:
            parts.append(f"BYMONTHDAY={','.join(map(str, self.by_month_day))}")
        if self.by_month:
            parts.append(f"BYMONTH={','.join(map(str, self.by_month))}")
        if self.by_set_pos:
            parts.append(f"BYSETPOS={','.join(map(str, self.by_set_pos))}")
        if self.week_start:
            parts.append(f"WKST={self.week_start}")

        lines = [f"RRULE:{';'.join(parts)}"]
        for name, values in (("EXDATE", self.exdates), ("RDATE", self.rdates)):
            for value in values:
                params, text = _format_value(value)
                lines.append(f"{name}{params}:{text}")
        return lines
