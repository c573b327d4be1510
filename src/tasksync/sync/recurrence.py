"""Recurrence rule handling and occurrence materialization."""

from __future__ import annotations

import datetime
import itertools
import logging
from typing import Iterator, Optional

from dateutil.rrule import rrule, rrulestr

from ..utils.datetime_utils import (
    as_date,
    at_clock,
    format_wall_clock,
    parse_clock,
    parse_date_value,
    resolve_instant,
)
from .identity import normalize_rule
from .models import CalendarEvent, EventDateTime, Task

logger = logging.getLogger(__name__)

RRULE_PREFIX = "RRULE:"

# Reference start used only to check that a rule parses.
_RULE_ANCHOR = datetime.datetime(2000, 1, 1)


def rule_parts(rule: str) -> dict[str, str]:
    """Split ``RRULE:FREQ=DAILY;COUNT=3`` into ``{"FREQ": "DAILY", ...}``."""

    parts: dict[str, str] = {}
    for chunk in normalize_rule(rule).split(";"):
        if "=" not in chunk:
            continue
        key, value = chunk.split("=", 1)
        parts[key.strip()] = value.strip()
    return parts


def build_rule(rule: str, dtstart: datetime.datetime) -> rrule:
    """Parse one RRULE line against a naive ``dtstart``.

    UNTIL values are read without their zone so they stay comparable with the
    naive wall-clock start.
    """
    parsed = rrulestr(normalize_rule(rule), dtstart=dtstart, ignoretz=True)
    if not isinstance(parsed, rrule):
        raise ValueError(f"Expected a single recurrence rule: {rule!r}")
    return parsed


def normalize_recurrence(text: Optional[str]) -> Optional[str]:
    """Return an uppercase ``RRULE:`` line, or ``None`` when it does not parse."""

    if not text or not text.strip():
        return None
    candidate = text.strip().upper()
    if not candidate.startswith(RRULE_PREFIX):
        candidate = f"{RRULE_PREFIX}{candidate}"
    try:
        build_rule(candidate, _RULE_ANCHOR)
    except (ValueError, TypeError) as exc:
        logger.warning("Dropping invalid recurrence rule %r: %s", text, exc)
        return None
    return candidate


def _with_count(rule: str, count: int) -> str:
    return f"{RRULE_PREFIX}{normalize_rule(rule)};COUNT={count}"


def bound_recurrence(
    rule: str,
    start: datetime.datetime,
    due_day: datetime.date,
) -> str:
    """Inject ``COUNT`` into a rule that has neither ``COUNT`` nor ``UNTIL``.

    DAILY rules get the inclusive day span. Other frequencies get the number
    of occurrences between ``start`` and the end of ``due_day``.
    """
    parts = rule_parts(rule)
    if "COUNT" in parts or "UNTIL" in parts:
        return rule

    if parts.get("FREQ") == "DAILY":
        span = (due_day - start.date()).days + 1
        return _with_count(rule, max(1, span))

    naive_start = start.replace(tzinfo=None)
    window_end = datetime.datetime.combine(due_day, datetime.time.max)
    try:
        occurrences = build_rule(rule, naive_start).between(
            naive_start, window_end, inc=True
        )
    except (ValueError, TypeError) as exc:
        logger.warning("Could not count occurrences for %r: %s", rule, exc)
        return rule
    if not occurrences:
        return rule
    return _with_count(rule, len(occurrences))


def single_rule(recurrence: Optional[list[str]]) -> Optional[str]:
    if not recurrence or len(recurrence) != 1:
        return None
    return recurrence[0]


def is_expandable(recurrence: Optional[list[str]]) -> bool:
    """Return True for a single DAILY rule or a WEEKLY rule with BYDAY."""

    rule = single_rule(recurrence)
    if rule is None:
        return False
    parts = rule_parts(rule)
    frequency = parts.get("FREQ")
    return frequency == "DAILY" or (frequency == "WEEKLY" and "BYDAY" in parts)


def _task_span(task: Task) -> Optional[tuple[datetime.date, datetime.date]]:
    start = parse_date_value(task.start_date)
    due = parse_date_value(task.due_date)
    if start is None or due is None:
        return None
    return as_date(start), as_date(due)


def _occurrence_days(
    rule: str, first_day: datetime.date, last_day: datetime.date
) -> Iterator[datetime.date]:
    dtstart = datetime.datetime.combine(first_day, datetime.time())
    for occurrence in build_rule(rule, dtstart):
        day = occurrence.date()
        if day > last_day:
            return
        if day >= first_day:
            yield day


def _place_on(
    template: CalendarEvent,
    task: Task,
    day: datetime.date,
    default_duration_minutes: int,
) -> CalendarEvent:
    event = template.copy()
    event.recurrence = None

    window_start = parse_clock(task.time_window_start)
    window_end = parse_clock(task.time_window_end)
    base = template.start
    base_end = template.end
    zone_name = base.time_zone if base else None

    start_at: Optional[datetime.datetime] = None
    end_at: Optional[datetime.datetime] = None

    # Templates written with an explicit offset keep it on every occurrence.
    tzinfo = None
    if base and base.date_time and _has_offset(base.date_time):
        parsed = resolve_instant(base.date_time)
        tzinfo = parsed.tzinfo if parsed else None

    if window_start and window_end and window_start[0] != 24:
        start_at = at_clock(day, window_start)
        end_at = at_clock(day, window_end)
    elif base and base.date_time and base_end and base_end.date_time:
        first = resolve_instant(base.date_time, zone_name)
        last = resolve_instant(base_end.date_time, zone_name)
        if first is not None and last is not None:
            start_at = datetime.datetime.combine(day, first.time())
            end_at = datetime.datetime.combine(day, last.time())

    if start_at is None or end_at is None:
        event.start = EventDateTime(date=day.isoformat())
        event.end = EventDateTime(date=(day + datetime.timedelta(days=1)).isoformat())
        return event

    if end_at <= start_at:
        end_at = start_at + datetime.timedelta(minutes=default_duration_minutes)
    if tzinfo is not None:
        start_at = start_at.replace(tzinfo=tzinfo)
        end_at = end_at.replace(tzinfo=tzinfo)

    event.start = EventDateTime(date_time=format_wall_clock(start_at), time_zone=zone_name)
    event.end = EventDateTime(date_time=format_wall_clock(end_at), time_zone=zone_name)
    return event


def _has_offset(value: str) -> bool:
    if "T" not in value:
        return False
    clock = value.split("T", 1)[1]
    return clock.endswith("Z") or "+" in clock or "-" in clock


def expand_occurrences(
    template: CalendarEvent,
    task: Task,
    *,
    default_duration_minutes: int = 60,
) -> Iterator[CalendarEvent]:
    """Yield one payload per occurrence of the template's rule in the task span.

    The span is ``[start_date, due_date]``, both inclusive. Each occurrence
    keeps the template's wall-clock window and drops the recurrence. A
    template without a single rule, or whose rule has no occurrence inside
    the span, is yielded once unchanged. The result is a generator: finite,
    ordered by date and not restartable.
    """
    rule = single_rule(template.recurrence)
    span = _task_span(task)
    if rule is None or span is None:
        yield template
        return

    first_day, last_day = span
    try:
        days = _occurrence_days(rule, first_day, last_day)
        first = next(days, None)
    except (ValueError, TypeError) as exc:
        logger.warning("Recurrence expansion failed for task %s: %s", task.id, exc)
        yield template
        return

    if first is None:
        yield template
        return

    for day in itertools.chain([first], days):
        yield _place_on(template, task, day, default_duration_minutes)


__all__ = [
    "RRULE_PREFIX",
    "bound_recurrence",
    "build_rule",
    "expand_occurrences",
    "is_expandable",
    "normalize_recurrence",
    "rule_parts",
    "single_rule",
]
