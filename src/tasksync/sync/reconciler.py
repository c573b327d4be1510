"""Pure reconciliation planning and result application.

``plan`` turns (tasks, remote snapshot, mapping) into batch operations
without any I/O. ``apply_results`` folds settled batch results back into the
mapping and returns the follow-up operations some outcomes call for.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from ..config import Settings
from .identity import IdentityOptions, changed_fields, identity_key
from .mapper import EventMapper
from .models import (
    FINGERPRINT_KEY,
    OWNER_KEY,
    STATUS_CANCELLED,
    CalendarEvent,
    Operation,
    OperationKind,
    Task,
    events_path,
)
from .recurrence import expand_occurrences, is_expandable
from .retry import BatchOutcome, Disposition

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RemoteIndex:
    """Per-run lookups over the live remote events this service cares about."""

    events: list[CalendarEvent]
    by_id: dict[str, CalendarEvent]
    by_owner: dict[str, list[CalendarEvent]]
    dedupe: dict[str, CalendarEvent]


def _newest_first(events: Iterable[CalendarEvent]) -> list[CalendarEvent]:
    # RFC3339 UTC timestamps from the API sort lexically.
    return sorted(events, key=lambda event: event.updated or "", reverse=True)


def build_remote_index(
    events: Iterable[CalendarEvent],
    mapping: dict[str, str],
    options: IdentityOptions = IdentityOptions(),
) -> RemoteIndex:
    """Index live events that are sync-marked or referenced by the mapping."""

    mapped_ids = set(mapping.values())
    live = [
        event
        for event in events
        if event.id and not event.is_cancelled and (event.is_managed or event.id in mapped_ids)
    ]
    live = _newest_first(live)

    by_id: dict[str, CalendarEvent] = {}
    by_owner: dict[str, list[CalendarEvent]] = {}
    dedupe: dict[str, CalendarEvent] = {}
    for event in live:
        by_id[event.id] = event  # type: ignore[index]
        owner = event.owner_task_id
        if owner:
            by_owner.setdefault(owner, []).append(event)
        if event.is_managed:
            # Newest wins because ``live`` is sorted newest first.
            dedupe.setdefault(identity_key(event, options), event)
    return RemoteIndex(events=live, by_id=by_id, by_owner=by_owner, dedupe=dedupe)


@dataclass(slots=True)
class Plan:
    operations: list[Operation] = field(default_factory=list)
    mapping: dict[str, str] = field(default_factory=dict)
    skipped: int = 0
    current_task_ids: set[str] = field(default_factory=set)

    @property
    def deletes(self) -> list[Operation]:
        return [op for op in self.operations if op.kind is OperationKind.DELETE]

    @property
    def upserts(self) -> list[Operation]:
        return [op for op in self.operations if op.kind is not OperationKind.DELETE]


def _if_match(event: CalendarEvent) -> dict[str, str]:
    return {"If-Match": event.etag} if event.etag else {}


def build_patch_body(
    existing: CalendarEvent,
    payload: CalendarEvent,
    fields: Sequence[str],
) -> dict:
    """Body holding only ``fields`` plus merged ownership markers.

    The existing owner id is never replaced.
    """
    rendered = payload.to_api()
    body: dict = {}
    for name in fields:
        if name == "reminders":
            body[name] = rendered.get(name) or {"useDefault": True, "overrides": []}
        elif name == "recurrence":
            body[name] = rendered.get(name) or []
        elif name == "description":
            body[name] = rendered.get(name) or ""
        else:
            body[name] = rendered.get(name)

    private = dict(existing.private_properties)
    private.update(payload.private_properties)
    if existing.owner_task_id:
        private[OWNER_KEY] = existing.owner_task_id
    body["extendedProperties"] = {"private": private}
    return body


class Reconciler:
    """Decide, per task, what the remote calendar needs."""

    def __init__(self, settings: Settings, mapper: EventMapper) -> None:
        self._settings = settings
        self._mapper = mapper
        self._options = IdentityOptions.from_settings(settings)

    def _path(self, event_id: Optional[str] = None) -> str:
        return events_path(self._settings.calendar_id, event_id)

    # ------------------------------------------------------------------
    # Operation builders
    # ------------------------------------------------------------------
    def _insert(self, task: Task, payload: CalendarEvent, *, claims_mapping: bool = True) -> Operation:
        body = payload.to_api()
        return Operation(
            method="POST",
            path=self._path(),
            kind=OperationKind.INSERT,
            body=body,
            task_id=task.id,
            full_body=body,
            claims_mapping=claims_mapping,
        )

    def _patch(
        self,
        task_id: str,
        existing: CalendarEvent,
        payload: CalendarEvent,
        fields: Sequence[str],
        *,
        claims_mapping: bool = True,
    ) -> Operation:
        return Operation(
            method="PATCH",
            path=self._path(existing.id),
            kind=OperationKind.PATCH,
            headers=_if_match(existing),
            body=build_patch_body(existing, payload, fields),
            task_id=task_id,
            prior_event_id=existing.id,
            full_body=payload.to_api(),
            claims_mapping=claims_mapping,
        )

    def _delete(self, task_id: Optional[str], event: CalendarEvent) -> Operation:
        return Operation(
            method="DELETE",
            path=self._path(event.id),
            kind=OperationKind.DELETE,
            headers=_if_match(event),
            task_id=task_id,
            prior_event_id=event.id,
        )

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def plan(
        self,
        tasks: Sequence[Task],
        index: RemoteIndex,
        mapping: dict[str, str],
        *,
        force: bool = False,
    ) -> Plan:
        if force:
            return self._plan_rebuild(tasks, index, mapping)

        plan = Plan(mapping=dict(mapping), current_task_ids={task.id for task in tasks})
        # Events already mapped by a current task are never adopted by another.
        reserved = {
            mapping[task.id]: task.id for task in tasks if task.id in mapping
        }
        claimed: set[str] = set()

        for task in tasks:
            emitted = self._plan_task(task, index, plan, reserved, claimed)
            if not emitted:
                plan.skipped += 1

        plan.operations.extend(self.plan_deletions(index, mapping, plan, claimed))
        return plan

    def _owned_events(
        self,
        task: Task,
        index: RemoteIndex,
        reserved: dict[str, str],
        mapped: Optional[CalendarEvent],
    ) -> list[CalendarEvent]:
        owned = [
            event
            for event in index.by_owner.get(task.id, [])
            if reserved.get(event.id, task.id) == task.id  # type: ignore[arg-type]
        ]
        if mapped is not None:
            # The mapped event always leads.
            owned = [mapped] + [event for event in owned if event.id != mapped.id]
        return owned

    def _dedupe_candidate(
        self,
        task: Task,
        key: str,
        index: RemoteIndex,
        plan: Plan,
        reserved: dict[str, str],
        claimed: set[str],
    ) -> Optional[CalendarEvent]:
        candidate = index.dedupe.get(key)
        if candidate is None or candidate.id in claimed:
            return None
        if reserved.get(candidate.id, task.id) != task.id:  # type: ignore[arg-type]
            return None
        owner = candidate.owner_task_id
        if owner and owner != task.id and owner in plan.current_task_ids:
            return None
        return candidate

    def _plan_task(
        self,
        task: Task,
        index: RemoteIndex,
        plan: Plan,
        reserved: dict[str, str],
        claimed: set[str],
    ) -> int:
        """Append the operations for one task and return how many were added."""

        before = len(plan.operations)
        if not task.has_span:
            logger.debug("Skipping task %s: missing start or due date", task.id)
            return 0

        mapped_id = plan.mapping.get(task.id)
        mapped = index.by_id.get(mapped_id) if mapped_id else None
        if mapped_id and mapped is None:
            logger.debug("Dropping mapping %s -> %s: event is gone", task.id, mapped_id)
            plan.mapping.pop(task.id, None)

        owned = self._owned_events(task, index, reserved, mapped)
        claimed.update(event.id for event in owned)  # type: ignore[misc]

        if task.is_completed:
            for event in owned:
                if event.status != STATUS_CANCELLED:
                    payload = event.copy()
                    payload.status = STATUS_CANCELLED
                    operation = self._patch(task.id, event, payload, ["status"])
                    operation.full_body = None
                    plan.operations.append(operation)
            return len(plan.operations) - before

        payload = self._mapper.map(task)
        occurrences: list[CalendarEvent] = []
        if is_expandable(payload.recurrence):
            occurrences = list(
                expand_occurrences(
                    payload,
                    task,
                    default_duration_minutes=self._settings.default_event_duration_minutes,
                )
            )
        if len(occurrences) > 1 or (occurrences and occurrences[0] is not payload):
            self._plan_expanded(task, occurrences, owned, index, plan, reserved, claimed)
        else:
            self._plan_single(task, payload, owned, index, plan, reserved, claimed)
        return len(plan.operations) - before

    def _plan_single(
        self,
        task: Task,
        payload: CalendarEvent,
        owned: list[CalendarEvent],
        index: RemoteIndex,
        plan: Plan,
        reserved: dict[str, str],
        claimed: set[str],
    ) -> None:
        target: Optional[CalendarEvent] = owned[0] if owned else None
        if target is None:
            key = identity_key(payload, self._options)
            target = self._dedupe_candidate(task, key, index, plan, reserved, claimed)
            if target is not None:
                logger.info("Reusing existing event %s for task %s", target.id, task.id)
                claimed.add(target.id)  # type: ignore[arg-type]

        if target is None:
            plan.operations.append(self._insert(task, payload))
            return

        plan.mapping[task.id] = target.id  # type: ignore[assignment]
        # A task that stopped recurring may still own the old occurrences.
        for extra in owned[1:]:
            plan.operations.append(self._delete(task.id, extra))
        fields = changed_fields(target, payload)
        if fields:
            plan.operations.append(self._patch(task.id, target, payload, fields))

    def _plan_expanded(
        self,
        task: Task,
        occurrences: list[CalendarEvent],
        owned: list[CalendarEvent],
        index: RemoteIndex,
        plan: Plan,
        reserved: dict[str, str],
        claimed: set[str],
    ) -> None:
        remaining: dict[str, CalendarEvent] = {}
        for event in owned:
            remaining.setdefault(identity_key(event, self._options), event)
        kept_ids = {event.id for event in remaining.values()}
        leftovers = [event for event in owned if event.id not in kept_ids]

        upserts: list[Operation] = []
        anchor: Optional[str] = None
        for occurrence in occurrences:
            key = identity_key(occurrence, self._options)
            occurrence.private_properties[FINGERPRINT_KEY] = key
            existing = remaining.pop(key, None)
            if existing is None:
                existing = self._dedupe_candidate(task, key, index, plan, reserved, claimed)
                if existing is not None:
                    claimed.add(existing.id)  # type: ignore[arg-type]
            if existing is None:
                upserts.append(self._insert(task, occurrence, claims_mapping=False))
                continue
            if anchor is None:
                anchor = existing.id
            fields = changed_fields(existing, occurrence)
            if fields:
                upserts.append(
                    self._patch(task.id, existing, occurrence, fields, claims_mapping=False)
                )

        for event in leftovers + list(remaining.values()):
            plan.operations.append(self._delete(task.id, event))

        if anchor is not None:
            plan.mapping[task.id] = anchor
        else:
            plan.mapping.pop(task.id, None)
            first_insert = next(
                (op for op in upserts if op.kind is OperationKind.INSERT), None
            )
            if first_insert is not None:
                first_insert.claims_mapping = True
        plan.operations.extend(upserts)

    def _plan_rebuild(
        self,
        tasks: Sequence[Task],
        index: RemoteIndex,
        mapping: dict[str, str],
    ) -> Plan:
        """Force mode: delete every known event and insert everything again."""

        plan = Plan(mapping={}, current_task_ids={task.id for task in tasks})
        doomed: dict[str, CalendarEvent] = {}
        for event in index.events:
            if event.is_managed or event.id in mapping.values():
                doomed.setdefault(event.id, event)  # type: ignore[arg-type]
        owner_by_id = {event_id: task_id for task_id, event_id in mapping.items()}
        for event_id, event in doomed.items():
            plan.operations.append(
                self._delete(owner_by_id.get(event_id) or event.owner_task_id, event)
            )

        for task in tasks:
            if not task.has_span or task.is_completed:
                plan.skipped += 1
                continue
            payload = self._mapper.map(task)
            occurrences = [payload]
            if is_expandable(payload.recurrence):
                occurrences = list(
                    expand_occurrences(
                        payload,
                        task,
                        default_duration_minutes=self._settings.default_event_duration_minutes,
                    )
                )
            for position, occurrence in enumerate(occurrences):
                if occurrence is not payload:
                    occurrence.private_properties[FINGERPRINT_KEY] = identity_key(
                        occurrence, self._options
                    )
                plan.operations.append(
                    self._insert(task, occurrence, claims_mapping=position == 0)
                )
        return plan

    def plan_deletions(
        self,
        index: RemoteIndex,
        previous_mapping: dict[str, str],
        plan: Plan,
        claimed: set[str],
    ) -> list[Operation]:
        """Orphan cleanup over stale mapping entries and unowned managed events.

        Stale entries are pruned from ``plan.mapping`` in place when no request
        is needed.
        """
        operations: list[Operation] = []
        current = plan.current_task_ids
        in_use = {
            event_id for task_id, event_id in plan.mapping.items() if task_id in current
        }
        deleting: set[str] = set()

        for task_id, event_id in previous_mapping.items():
            if task_id in current:
                continue
            event = index.by_id.get(event_id)
            if event is None or event_id in in_use or event_id in claimed or event_id in deleting:
                plan.mapping.pop(task_id, None)
                continue
            deleting.add(event_id)
            operations.append(self._delete(task_id, event))

        surviving = set(plan.mapping.values())
        for event in index.events:
            if not event.is_managed or event.id in claimed or event.id in deleting:
                continue
            if event.owner_task_id in current:
                continue
            if event.id in surviving or event.id in in_use:
                continue
            deleting.add(event.id)  # type: ignore[arg-type]
            operations.append(self._delete(event.owner_task_id, event))

        if operations:
            logger.info("Planned %d orphan deletion(s)", len(operations))
        return operations


def apply_results(
    mapping: dict[str, str],
    operations: Sequence[Operation],
    outcome: BatchOutcome,
    *,
    overwrite_on_conflict: bool = True,
    allow_follow_ups: bool = True,
) -> list[Operation]:
    """Fold settled results into ``mapping`` and return follow-up operations.

    A patch whose event vanished is re-sent as an insert of the full payload.
    A precondition failure is re-sent once without ``If-Match`` when
    ``overwrite_on_conflict`` is set.
    """
    follow_ups: list[Operation] = []
    for operation, result, disposition in zip(
        operations, outcome.results, outcome.dispositions
    ):
        task_id = operation.task_id
        if disposition is Disposition.SUCCEED:
            if operation.kind is OperationKind.INSERT:
                new_id = (result.body or {}).get("id")
                if task_id and new_id and operation.claims_mapping:
                    mapping[task_id] = new_id
            elif operation.kind is OperationKind.PATCH:
                if task_id and operation.prior_event_id and operation.claims_mapping:
                    mapping[task_id] = operation.prior_event_id
            else:
                _release(mapping, task_id, operation.prior_event_id)
            continue

        if disposition is not Disposition.SKIP:
            continue

        status = result.status
        if operation.kind is OperationKind.DELETE and status in (404, 410):
            _release(mapping, task_id, operation.prior_event_id)
        elif operation.kind is OperationKind.PATCH and status in (404, 410):
            _release(mapping, task_id, operation.prior_event_id)
            if allow_follow_ups and operation.full_body is not None:
                follow_ups.append(
                    Operation(
                        method="POST",
                        path=operation.path.rsplit("/", 1)[0],
                        kind=OperationKind.INSERT,
                        body=operation.full_body,
                        task_id=task_id,
                        full_body=operation.full_body,
                        claims_mapping=operation.claims_mapping,
                    )
                )
        elif status == 412 and overwrite_on_conflict and allow_follow_ups:
            logger.info(
                "Precondition failed for %s %s; retrying without If-Match",
                operation.method,
                operation.path,
            )
            follow_ups.append(operation.without_precondition())
    return follow_ups


def _release(mapping: dict[str, str], task_id: Optional[str], event_id: Optional[str]) -> None:
    if task_id and event_id and mapping.get(task_id) == event_id:
        mapping.pop(task_id, None)


__all__ = [
    "Plan",
    "Reconciler",
    "RemoteIndex",
    "apply_results",
    "build_patch_body",
    "build_remote_index",
]
