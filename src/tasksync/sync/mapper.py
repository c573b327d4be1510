"""Translate task records into calendar event payloads."""

from __future__ import annotations

import datetime
import logging
import math
from typing import Callable, NamedTuple, Optional
from urllib.parse import quote

from ..config import Settings
from ..utils.datetime_utils import (
    as_date,
    as_datetime,
    at_clock,
    format_wall_clock,
    has_time_component,
    parse_clock,
    parse_date_value,
    resolve_zone,
)
from .identity import IdentityOptions, identity_key
from .models import (
    APP_ID,
    APP_ID_KEY,
    FINGERPRINT_KEY,
    MARKER_VERSION,
    OWNER_KEY,
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    SYNC_MARKER_KEY,
    VERSION_KEY,
    CalendarEvent,
    EventDateTime,
    ReminderOverride,
    Reminders,
    Task,
)
from .recurrence import bound_recurrence, normalize_recurrence

logger = logging.getLogger(__name__)

UNTITLED_SUMMARY = "Untitled task"
MAX_REMINDER_MINUTES = 40_320

PRIORITY_LABELS = {
    "highest": "🔺 Highest",
    "high": "⏫ High",
    "medium": "🔼 Medium",
    "low": "🔽 Low",
    "lowest": "⏬ Lowest",
}

NOTE_MISSING_DATES = "(Note: event time set to default - start/due date missing)"
NOTE_UNPARSEABLE = "(Note: event time set to default - date could not be parsed)"
NOTE_UNRESOLVED = "(Note: event time set to default - date processing error)"


class _Timing(NamedTuple):
    start: EventDateTime
    end: EventDateTime
    # Aware instant of the start, used as the reminder reference.
    reference: datetime.datetime
    # Naive wall-clock start, used to count recurrence occurrences.
    wall_start: datetime.datetime
    due_day: datetime.date


class EventMapper:
    """Build the event payload for a task.

    The mapper never raises for bad task data: unparseable dates fall back to
    an all-day event for today with a note in the description, and an
    invalid recurrence rule is dropped.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        today: Optional[Callable[[], datetime.date]] = None,
    ) -> None:
        self._settings = settings
        self._zone = resolve_zone(settings.time_zone)
        self._identity = IdentityOptions.from_settings(settings)
        self._today = today or (lambda: datetime.datetime.now(datetime.timezone.utc).date())

    def map(self, task: Task) -> CalendarEvent:
        event = CalendarEvent(
            summary=(task.summary or "").strip() or UNTITLED_SUMMARY,
            description=self._describe(task),
            status=STATUS_CANCELLED if task.is_completed else STATUS_CONFIRMED,
            private_properties={
                OWNER_KEY: task.id,
                SYNC_MARKER_KEY: "true",
                APP_ID_KEY: APP_ID,
                VERSION_KEY: MARKER_VERSION,
            },
        )

        rule = None
        if not task.is_completed:
            rule = normalize_recurrence(task.recurrence_rule)

        timing: Optional[_Timing] = None
        if task.has_span:
            timing = self._timing(task, has_rule=rule is not None)
            if timing is None:
                logger.warning(
                    "Task %s has unparseable dates (%s, %s); using today",
                    task.id,
                    task.start_date,
                    task.due_date,
                )
                self._apply_fallback(event, NOTE_UNPARSEABLE)
        else:
            logger.warning("Task %s is missing a start or due date; using today", task.id)
            self._apply_fallback(event, NOTE_MISSING_DATES)

        if timing is not None:
            event.start = timing.start
            event.end = timing.end
            event.reminders = self._reminders(task, timing.reference)
            if rule is not None:
                rule = bound_recurrence(rule, timing.wall_start, timing.due_day)

        if rule is not None and event.start is not None:
            event.recurrence = [rule]

        if not (event.start and event.start.is_resolved and event.end and event.end.is_resolved):
            logger.error("Task %s produced unresolved start/end; using today", task.id)
            event.recurrence = None
            self._apply_fallback(event, NOTE_UNRESOLVED)

        event.private_properties[FINGERPRINT_KEY] = identity_key(event, self._identity)
        return event

    # ------------------------------------------------------------------
    # Timing
    # ------------------------------------------------------------------
    def _localize(self, value: datetime.datetime) -> datetime.datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self._zone)
        return value

    def _timed(self, value: datetime.datetime) -> EventDateTime:
        if value.tzinfo is None:
            return EventDateTime(
                date_time=format_wall_clock(value), time_zone=self._settings.time_zone
            )
        return EventDateTime(date_time=format_wall_clock(value))

    def _timing(self, task: Task, *, has_rule: bool) -> Optional[_Timing]:
        start_value = parse_date_value(task.start_date)
        due_value = parse_date_value(task.due_date)
        if start_value is None or due_value is None:
            return None

        default_duration = datetime.timedelta(
            minutes=self._settings.default_event_duration_minutes
        )
        start_day = as_date(start_value)
        due_day = as_date(due_value)
        window_start = parse_clock(task.time_window_start)
        window_end = parse_clock(task.time_window_end)

        if window_start and window_end and window_start[0] != 24:
            start_at = at_clock(start_day, window_start)
            # A recurring window repeats daily, so its end belongs to the start day.
            end_at = at_clock(start_day if has_rule else due_day, window_end)
            if end_at <= start_at:
                end_at = start_at + default_duration
            return _Timing(
                start=self._timed(start_at),
                end=self._timed(end_at),
                reference=self._localize(start_at),
                wall_start=start_at,
                due_day=due_day,
            )

        if has_time_component(task.start_date) or has_time_component(task.due_date):
            start_at = as_datetime(start_value)
            end_at = as_datetime(due_value)
            if self._localize(end_at) <= self._localize(start_at):
                end_at = start_at + default_duration
            return _Timing(
                start=self._timed(start_at),
                end=self._timed(end_at),
                reference=self._localize(start_at),
                wall_start=start_at.replace(tzinfo=None),
                due_day=due_day,
            )

        end_day = due_day + datetime.timedelta(days=1)
        if end_day <= start_day:
            end_day = start_day + datetime.timedelta(days=1)
        midnight = datetime.datetime.combine(start_day, datetime.time())
        return _Timing(
            start=EventDateTime(date=start_day.isoformat()),
            end=EventDateTime(date=end_day.isoformat()),
            reference=self._localize(midnight),
            wall_start=midnight,
            due_day=due_day,
        )

    def _apply_fallback(self, event: CalendarEvent, note: str) -> None:
        today = self._today()
        event.start = EventDateTime(date=today.isoformat())
        event.end = EventDateTime(date=(today + datetime.timedelta(days=1)).isoformat())
        event.description = f"{event.description or ''}\n\n{note}"

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------
    def _reminders(self, task: Task, reference: datetime.datetime) -> Optional[Reminders]:
        anchor_value = parse_date_value(task.scheduled_date)
        if anchor_value is not None:
            anchor = self._localize(as_datetime(anchor_value))
        else:
            anchor = reference - datetime.timedelta(days=1)

        lead_minutes = math.floor((reference - anchor).total_seconds() / 60)
        if lead_minutes <= 0:
            return None
        return Reminders(
            use_default=False,
            overrides=[
                ReminderOverride(
                    method="popup", minutes=min(lead_minutes, MAX_REMINDER_MINUTES)
                )
            ],
        )

    # ------------------------------------------------------------------
    # Description
    # ------------------------------------------------------------------
    def _describe(self, task: Task) -> str:
        lines: list[str] = []
        if task.source_path:
            lines.append(self._source_line(task))
        lines.extend(note.rstrip() for note in task.notes if note.strip())

        meta: list[str] = []
        settings = self._settings
        if settings.sync_priority_to_description and task.priority:
            label = PRIORITY_LABELS.get(task.priority.lower(), task.priority)
            meta.append(f"Priority: {label}")
        if settings.sync_tags_to_description and task.tags:
            meta.append("Tags: " + " ".join(f"#{tag.lstrip('#')}" for tag in task.tags))
        if task.created_date:
            meta.append(f"Created: {task.created_date}")
        if settings.sync_scheduled_date_to_description and task.scheduled_date:
            meta.append(f"Scheduled: {task.scheduled_date}")
        if task.is_completed and task.completion_date:
            meta.append(f"Completed: {task.completion_date}")

        if meta:
            lines.append("---")
            lines.extend(meta)
        return "\n".join(lines)

    def _source_line(self, task: Task) -> str:
        path = task.source_path or ""
        if self._settings.vault_name:
            link = (
                f"obsidian://open?vault={quote(self._settings.vault_name, safe='')}"
                f"&file={quote(path, safe='')}"
            )
            if task.block_link:
                link += f"#{task.block_link}"
            return f"Obsidian note: {link}"
        if task.source_line is not None:
            return f"Source: {path} (line {task.source_line + 1})"
        return f"Source: {path}"


__all__ = ["EventMapper", "MAX_REMINDER_MINUTES", "UNTITLED_SUMMARY"]
