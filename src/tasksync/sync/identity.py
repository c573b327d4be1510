"""Identity keys, reminder fingerprints and field-level drift detection.

Two events are the same logical event iff their identity keys are equal.
The key is built from the normalized summary, start/end time keys, the
canonical status and the recurrence signature; description and reminder
signature are appended only when the corresponding option is enabled.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from ..utils.datetime_utils import resolve_instant, resolve_zone
from .models import CalendarEvent, EventDateTime, Reminders

DESCRIPTION_KEY_LIMIT = 256

_WHITESPACE = re.compile(r"\s+")
_RRULE_PREFIX = re.compile(r"^RRULE:", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class IdentityOptions:
    include_description: bool = False
    include_reminders: bool = False

    @classmethod
    def from_settings(cls, settings) -> "IdentityOptions":
        return cls(
            include_description=settings.include_description_in_identity,
            include_reminders=settings.include_reminder_in_identity,
        )


def normalize_summary(summary: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", (summary or "").strip())


def time_key(value: Optional[EventDateTime]) -> str:
    """``D:<date>`` for all-day, ``T:<ISO instant>`` for timed.

    The instant is written with the offset of its ``timeZone`` when one is
    set, otherwise with its own offset (UTC for a bare value), so a payload
    and the remote echo of it agree.
    """

    if value is None:
        return "N"
    if value.date:
        return f"D:{value.date}"
    if value.date_time:
        instant = resolve_instant(value.date_time, value.time_zone)
        if instant is None:
            return f"T:{value.date_time}"
        if value.time_zone:
            instant = instant.astimezone(resolve_zone(value.time_zone))
        return f"T:{instant.isoformat(timespec='milliseconds')}"
    return "N"


def normalize_rule(rule: str) -> str:
    return _RRULE_PREFIX.sub("", rule.strip().upper()).strip()


def recurrence_signature(recurrence: Optional[list[str]]) -> str:
    return ";".join(sorted(normalize_rule(rule) for rule in recurrence or []))


def status_code(status: Optional[str]) -> str:
    return "X" if status == "cancelled" else "C"


def reminder_fingerprint(reminders: Optional[Reminders]) -> str:
    """Return ``N``, ``DEF``, ``OFF`` or ``OVR(method:minutes,...)``."""

    use_default = reminders.use_default if reminders is not None else None
    raw = (reminders.overrides if reminders is not None else None) or []

    seen: set[tuple[str, int]] = set()
    for item in raw:
        seen.add(((item.method or "popup").lower(), int(item.minutes or 0)))
    normalized = sorted(seen)

    if use_default is None and not normalized:
        return "N"
    if use_default:
        return "DEF"
    if not normalized:
        return "OFF"
    signature = ",".join(f"{method}:{minutes}" for method, minutes in normalized)
    return f"OVR({signature})"


def identity_key(event: CalendarEvent, options: IdentityOptions = IdentityOptions()) -> str:
    key = (
        f"S|{normalize_summary(event.summary)}"
        f"|A|{time_key(event.start)}"
        f"|B|{time_key(event.end)}"
        f"|R|{recurrence_signature(event.recurrence)}"
        f"|Z|{status_code(event.status)}"
    )
    if options.include_description:
        key += f"|D|{(event.description or '').strip()[:DESCRIPTION_KEY_LIMIT]}"
    if options.include_reminders:
        key += f"|M|{reminder_fingerprint(event.reminders)}"
    return key


def same_time(left: Optional[EventDateTime], right: Optional[EventDateTime]) -> bool:
    """Compare two start/end values at second precision.

    All-day and timed values never compare equal to each other.
    """
    if left is None and right is None:
        return True
    if left is None or right is None:
        return False
    if left.date and right.date:
        return left.date == right.date
    if left.date_time and right.date_time:
        a = resolve_instant(left.date_time, left.time_zone)
        b = resolve_instant(right.date_time, right.time_zone)
        if a is None or b is None:
            return left.date_time == right.date_time
        return a.replace(microsecond=0) == b.replace(microsecond=0)
    return False


def same_reminders(left: Optional[Reminders], right: Optional[Reminders]) -> bool:
    left_default = True if left is None or left.use_default is None else left.use_default
    right_default = True if right is None or right.use_default is None else right.use_default
    if left_default != right_default:
        return False
    if left_default:
        return True
    return reminder_fingerprint(
        Reminders(use_default=False, overrides=left.overrides if left else None)
    ) == reminder_fingerprint(
        Reminders(use_default=False, overrides=right.overrides if right else None)
    )


def canonical_status(status: Optional[str]) -> str:
    return "cancelled" if status == "cancelled" else "confirmed"


def changed_fields(existing: CalendarEvent, payload: CalendarEvent) -> list[str]:
    """Return the compared fields whose values differ, in patch order."""

    changed: list[str] = []
    if (existing.summary or "") != (payload.summary or ""):
        changed.append("summary")
    if (existing.description or "") != (payload.description or ""):
        changed.append("description")
    if canonical_status(existing.status) != canonical_status(payload.status):
        changed.append("status")
    if not same_time(existing.start, payload.start):
        changed.append("start")
    if not same_time(existing.end, payload.end):
        changed.append("end")
    if not same_reminders(existing.reminders, payload.reminders):
        changed.append("reminders")
    if recurrence_signature(existing.recurrence) != recurrence_signature(payload.recurrence):
        changed.append("recurrence")
    return changed


__all__ = [
    "DESCRIPTION_KEY_LIMIT",
    "IdentityOptions",
    "canonical_status",
    "changed_fields",
    "identity_key",
    "normalize_rule",
    "normalize_summary",
    "recurrence_signature",
    "reminder_fingerprint",
    "same_reminders",
    "same_time",
    "status_code",
    "time_key",
]
