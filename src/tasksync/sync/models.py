"""Domain models for tasks, calendar events and batch operations.

Remote JSON is converted into these explicit optional-field structures once,
at the edge, via ``from_api``; ``to_api`` renders the wire shape again. Keys
that are absent on the wire stay ``None`` here and are omitted on output.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from urllib.parse import quote

SYNC_MARKER_KEY = "isGcalSync"
OWNER_KEY = "obsidianTaskId"
APP_ID_KEY = "appId"
VERSION_KEY = "version"
FINGERPRINT_KEY = "localFp"

APP_ID = "obsidian-gcal-tasks"
MARKER_VERSION = "1"

STATUS_CONFIRMED = "confirmed"
STATUS_CANCELLED = "cancelled"


def events_path(calendar_id: str, event_id: Optional[str] = None) -> str:
    """Return the batch request path for the events collection or one event."""

    path = f"/calendar/v3/calendars/{quote(calendar_id, safe='')}/events"
    if event_id:
        path += f"/{quote(event_id, safe='')}"
    return path


@dataclass(slots=True)
class Task:
    """A local task record, consumed read-only."""

    id: str
    summary: str = ""
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    time_window_start: Optional[str] = None
    time_window_end: Optional[str] = None
    recurrence_rule: Optional[str] = None
    is_completed: bool = False
    priority: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    scheduled_date: Optional[str] = None
    created_date: Optional[str] = None
    completion_date: Optional[str] = None
    source_path: Optional[str] = None
    source_line: Optional[int] = None
    block_link: Optional[str] = None
    notes: list[str] = field(default_factory=list)

    @property
    def has_span(self) -> bool:
        """Return True when both the start and due dates are present."""

        return bool(self.start_date and self.due_date)


@dataclass(slots=True)
class EventDateTime:
    """Either an all-day ``date`` or a timed ``date_time`` (plus zone)."""

    date: Optional[str] = None
    date_time: Optional[str] = None
    time_zone: Optional[str] = None

    @property
    def is_all_day(self) -> bool:
        return self.date is not None

    @property
    def is_resolved(self) -> bool:
        return bool(self.date or self.date_time)

    @classmethod
    def from_api(cls, data: Optional[dict[str, Any]]) -> Optional["EventDateTime"]:
        if not data:
            return None
        return cls(
            date=data.get("date"),
            date_time=data.get("dateTime"),
            time_zone=data.get("timeZone"),
        )

    def to_api(self) -> dict[str, Any]:
        if self.date is not None:
            return {"date": self.date}
        payload: dict[str, Any] = {"dateTime": self.date_time}
        if self.time_zone:
            payload["timeZone"] = self.time_zone
        return payload


@dataclass(slots=True)
class ReminderOverride:
    method: str = "popup"
    minutes: int = 0


@dataclass(slots=True)
class Reminders:
    """Reminder configuration.

    ``use_default`` is ``None`` when the remote omitted it; comparisons treat
    a missing flag as ``True`` because that is the remote calendar's default.
    """

    use_default: Optional[bool] = None
    overrides: Optional[list[ReminderOverride]] = None

    @classmethod
    def from_api(cls, data: Optional[dict[str, Any]]) -> Optional["Reminders"]:
        if data is None:
            return None
        overrides = data.get("overrides")
        return cls(
            use_default=data.get("useDefault"),
            overrides=(
                None
                if overrides is None
                else [
                    ReminderOverride(
                        method=str(item.get("method") or "popup"),
                        minutes=int(item.get("minutes") or 0),
                    )
                    for item in overrides
                    if isinstance(item, dict)
                ]
            ),
        )

    def to_api(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.use_default is not None:
            payload["useDefault"] = self.use_default
        if self.overrides is not None:
            payload["overrides"] = [
                {"method": item.method, "minutes": item.minutes}
                for item in self.overrides
            ]
        return payload


@dataclass(slots=True)
class CalendarEvent:
    """A remote event, or an event payload produced locally.

    ``id``, ``etag`` and ``updated`` are only populated for events read back
    from the remote calendar.
    """

    summary: Optional[str] = None
    description: Optional[str] = None
    start: Optional[EventDateTime] = None
    end: Optional[EventDateTime] = None
    status: Optional[str] = None
    recurrence: Optional[list[str]] = None
    reminders: Optional[Reminders] = None
    private_properties: dict[str, str] = field(default_factory=dict)
    id: Optional[str] = None
    etag: Optional[str] = None
    updated: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == STATUS_CANCELLED

    @property
    def is_managed(self) -> bool:
        """Return True when the event carries this service's sync marker."""

        return self.private_properties.get(SYNC_MARKER_KEY) == "true"

    @property
    def owner_task_id(self) -> Optional[str]:
        return self.private_properties.get(OWNER_KEY) or None

    def copy(self) -> "CalendarEvent":
        return copy.deepcopy(self)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "CalendarEvent":
        extended = data.get("extendedProperties") or {}
        private = extended.get("private") or {}
        recurrence = data.get("recurrence")
        return cls(
            summary=data.get("summary"),
            description=data.get("description"),
            start=EventDateTime.from_api(data.get("start")),
            end=EventDateTime.from_api(data.get("end")),
            status=data.get("status"),
            recurrence=list(recurrence) if recurrence is not None else None,
            reminders=Reminders.from_api(data.get("reminders")),
            private_properties={str(k): str(v) for k, v in private.items()},
            id=data.get("id"),
            etag=data.get("etag"),
            updated=data.get("updated"),
        )

    def to_api(self) -> dict[str, Any]:
        """Render the request body shape (read-only fields excluded)."""

        payload: dict[str, Any] = {}
        if self.summary is not None:
            payload["summary"] = self.summary
        if self.description is not None:
            payload["description"] = self.description
        if self.start is not None:
            payload["start"] = self.start.to_api()
        if self.end is not None:
            payload["end"] = self.end.to_api()
        if self.status is not None:
            payload["status"] = self.status
        if self.recurrence:
            payload["recurrence"] = list(self.recurrence)
        if self.reminders is not None:
            payload["reminders"] = self.reminders.to_api()
        if self.private_properties:
            payload["extendedProperties"] = {"private": dict(self.private_properties)}
        return payload


class OperationKind(str, Enum):
    INSERT = "insert"
    PATCH = "patch"
    DELETE = "delete"


@dataclass(slots=True)
class Operation:
    """A single batch request item.

    ``task_id``, ``prior_event_id``, ``kind``, ``full_body`` and
    ``claims_mapping`` are engine metadata and never go over the wire.
    ``claims_mapping`` is False for the secondary occurrences of an expanded
    task, whose ids are not recorded in the task mapping.
    """

    method: str
    path: str
    kind: OperationKind
    headers: dict[str, str] = field(default_factory=dict)
    body: Optional[dict[str, Any]] = None
    task_id: Optional[str] = None
    prior_event_id: Optional[str] = None
    full_body: Optional[dict[str, Any]] = None
    claims_mapping: bool = True

    def without_precondition(self) -> "Operation":
        headers = {k: v for k, v in self.headers.items() if k.lower() != "if-match"}
        return Operation(
            method=self.method,
            path=self.path,
            kind=self.kind,
            headers=headers,
            body=copy.deepcopy(self.body),
            task_id=self.task_id,
            prior_event_id=self.prior_event_id,
            full_body=copy.deepcopy(self.full_body),
            claims_mapping=self.claims_mapping,
        )


@dataclass(slots=True)
class OperationResult:
    """A decoded batch sub-response."""

    status: int
    body: Optional[dict[str, Any]] = None
    content_id: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def error_reason(self) -> str:
        """Return the first machine-readable error reason, if any."""

        if not isinstance(self.body, dict):
            return ""
        error = self.body.get("error")
        if not isinstance(error, dict):
            return ""
        errors = error.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            reason = errors[0].get("reason")
            if reason:
                return str(reason)
        return str(error.get("status") or "")

    @property
    def error_message(self) -> Optional[str]:
        if not isinstance(self.body, dict):
            return None
        error = self.body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"][:200]
        message = self.body.get("message")
        return message[:200] if isinstance(message, str) else None


__all__ = [
    "APP_ID",
    "APP_ID_KEY",
    "CalendarEvent",
    "EventDateTime",
    "FINGERPRINT_KEY",
    "MARKER_VERSION",
    "OWNER_KEY",
    "Operation",
    "OperationKind",
    "OperationResult",
    "ReminderOverride",
    "Reminders",
    "STATUS_CANCELLED",
    "STATUS_CONFIRMED",
    "SYNC_MARKER_KEY",
    "Task",
    "VERSION_KEY",
    "events_path",
]
