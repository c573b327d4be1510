"""Datetime parsing and timezone normalization utilities.

Task records carry loosely formatted dates (``YYYY-MM-DD`` or a full ISO
timestamp, with or without an offset) while the remote calendar speaks
RFC3339. Everything that crosses between the two goes through here so that
comparisons and identity keys agree on what an instant is.
"""

from __future__ import annotations

import datetime
import logging
import re
from functools import lru_cache
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as dateutil_parser

logger = logging.getLogger(__name__)

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CLOCK = re.compile(r"^(?:(?P<h>[01]\d|2[0-3]):(?P<m>[0-5]\d)|(?P<midnight>24:00))$")

DateValue = Union[datetime.date, datetime.datetime]


@lru_cache(maxsize=32)
def resolve_zone(name: Optional[str]) -> datetime.tzinfo:
    """Return the tzinfo for an IANA name, falling back to UTC."""

    if not name:
        return datetime.timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %r; using UTC", name)
        return datetime.timezone.utc


def has_time_component(value: Optional[str]) -> bool:
    return bool(value) and "T" in value  # type: ignore[operator]


def parse_date_value(value: Optional[str]) -> Optional[DateValue]:
    """Parse a task date string.

    ``YYYY-MM-DD`` yields a ``date``; anything with a time component yields a
    ``datetime`` which keeps whatever offset the string carried (or none).
    Unparseable input yields ``None``.
    """
    if not value:
        return None
    text = value.strip()
    try:
        if _DATE_ONLY.match(text):
            return datetime.date.fromisoformat(text)
        if "T" in text:
            return dateutil_parser.isoparse(text)
    except (ValueError, OverflowError):
        return None
    return None


def as_date(value: DateValue) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    return value


def as_datetime(value: DateValue) -> datetime.datetime:
    """Widen a ``date`` to midnight; leave datetimes untouched."""

    if isinstance(value, datetime.datetime):
        return value
    return datetime.datetime.combine(value, datetime.time())


def resolve_instant(
    date_time: Optional[str], time_zone: Optional[str] = None
) -> Optional[datetime.datetime]:
    """Turn a ``dateTime`` (plus optional ``timeZone``) into an aware instant.

    A string without an offset is interpreted in ``time_zone``, or UTC.
    """
    if not date_time:
        return None
    try:
        parsed = dateutil_parser.isoparse(date_time)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=resolve_zone(time_zone))
    return parsed


def format_wall_clock(value: datetime.datetime) -> str:
    """Render seconds precision, keeping the offset when there is one."""

    return value.replace(microsecond=0).isoformat()


def parse_clock(value: Optional[str]) -> Optional[tuple[int, int]]:
    """Parse ``HH:mm``; ``24:00`` is returned as ``(24, 0)``."""

    if not value:
        return None
    match = _CLOCK.match(value.strip())
    if match is None:
        return None
    if match.group("midnight"):
        return (24, 0)
    return (int(match.group("h")), int(match.group("m")))


def at_clock(day: datetime.date, clock: tuple[int, int]) -> datetime.datetime:
    """Place a wall-clock time on ``day``; ``24:00`` rolls to the next day."""

    hour, minute = clock
    if hour == 24:
        return datetime.datetime.combine(day + datetime.timedelta(days=1), datetime.time())
    return datetime.datetime.combine(day, datetime.time(hour, minute))


__all__ = [
    "DateValue",
    "as_date",
    "as_datetime",
    "at_clock",
    "format_wall_clock",
    "has_time_component",
    "parse_clock",
    "parse_date_value",
    "resolve_instant",
    "resolve_zone",
]
