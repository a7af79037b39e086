"""
Local-calendar date filtering.

A fixture belongs to a day when its kickoff, converted to the consumer's timezone,
falls on that day. Truncating the UTC timestamp instead would push late-evening
matches west of Greenwich onto the following day.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterable, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shared.errors import InvalidDateError
from shared.models.domain import Fixture

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

TimezoneLike = Union[str, tzinfo]


def resolve_timezone(tz: TimezoneLike) -> tzinfo:
    """Accept an IANA zone name or a tzinfo instance."""
    if isinstance(tz, tzinfo):
        return tz
    if not tz or tz.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone {tz!r}") from exc


def parse_target_date(value: Union[str, date]) -> date:
    """Validate a YYYY-MM-DD string (or pass a date through)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not DATE_RE.match(value):
        raise InvalidDateError(f"Invalid date format {value!r}. Use YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise InvalidDateError(f"Invalid date value {value!r}") from exc


def local_date(instant: datetime, tz: TimezoneLike) -> date:
    return instant.astimezone(resolve_timezone(tz)).date()


def local_today(now: datetime, tz: TimezoneLike) -> date:
    return local_date(now, tz)


def filter_by_local_date(
    fixtures: Iterable[Fixture], target: Union[str, date], tz: TimezoneLike
) -> list[Fixture]:
    """Keep fixtures whose local kickoff date equals `target`. Input order is preserved."""
    target_day = parse_target_date(target)
    zone = resolve_timezone(tz)
    return [f for f in fixtures if f.kickoff.astimezone(zone).date() == target_day]


def local_day_bounds(target: Union[str, date], tz: TimezoneLike) -> tuple[datetime, datetime]:
    """UTC instants of local midnight at the start and end of `target`."""
    target_day = parse_target_date(target)
    zone = resolve_timezone(tz)
    start = datetime.combine(target_day, time.min, tzinfo=zone)
    end = datetime.combine(target_day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def utc_dates_for_local_day(target: Union[str, date], tz: TimezoneLike) -> list[date]:
    """UTC calendar dates the local day overlaps; at most two except on odd DST days."""
    start, end = local_day_bounds(target, tz)
    last = (end - timedelta(microseconds=1)).date()
    days = []
    current = start.date()
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days
