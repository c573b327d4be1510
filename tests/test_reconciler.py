"""Tests for reconciliation planning and result application."""

from __future__ import annotations

import datetime
from typing import Iterable

import pytest

from tasksync.config import Settings
from tasksync.sync.mapper import EventMapper
from tasksync.sync.models import (
    OWNER_KEY,
    SYNC_MARKER_KEY,
    CalendarEvent,
    Operation,
    OperationKind,
    OperationResult,
    Task,
    events_path,
)
from tasksync.sync.reconciler import (
    Reconciler,
    apply_results,
    build_patch_body,
    build_remote_index,
)
from tasksync.sync.retry import BatchOutcome, Disposition

COLLECTION = events_path("primary")


@pytest.fixture()
def settings() -> Settings:
    return Settings(time_zone="UTC", calendar_id="primary")


@pytest.fixture()
def reconciler(settings: Settings) -> Reconciler:
    mapper = EventMapper(settings, today=lambda: datetime.date(2025, 9, 10))
    return Reconciler(settings, mapper)


def _remote(event_id: str, *, owner: str | None = None, managed: bool = True, **fields) -> CalendarEvent:
    private = {}
    if managed:
        private[SYNC_MARKER_KEY] = "true"
    if owner:
        private[OWNER_KEY] = owner
    data = {
        "id": event_id,
        "etag": f"etag-{event_id}",
        "updated": "2025-08-01T00:00:00.000Z",
        "status": "confirmed",
        "summary": "Pay rent",
        "start": {"date": "2025-08-31"},
        "end": {"date": "2025-09-01"},
        "extendedProperties": {"private": private},
    }
    data.update(fields)
    return CalendarEvent.from_api(data)


def _index(events: Iterable[CalendarEvent], mapping: dict[str, str]):
    return build_remote_index(list(events), mapping)


def _rent(**overrides) -> Task:
    values = dict(id="t1", summary="Pay rent", start_date="2025-08-31", due_date="2025-08-31")
    values.update(overrides)
    return Task(**values)


def _standup(**overrides) -> Task:
    values = dict(
        id="t1",
        summary="Standup",
        start_date="2025-08-31",
        due_date="2025-09-02",
        time_window_start="13:00",
        time_window_end="16:00",
        recurrence_rule="FREQ=DAILY",
    )
    values.update(overrides)
    return Task(**values)


def _succeed_all(operations: list[Operation], first_id: int = 1) -> tuple[BatchOutcome, list[CalendarEvent]]:
    """Pretend every operation succeeded and return the remote events it produced."""

    results: list[OperationResult] = []
    created: list[CalendarEvent] = []
    for offset, operation in enumerate(operations):
        if operation.kind is OperationKind.INSERT:
            event_id = f"ev-{first_id + offset}"
            results.append(OperationResult(status=200, body={"id": event_id}))
            created.append(
                CalendarEvent.from_api(
                    {
                        **operation.body,
                        "id": event_id,
                        "etag": f"etag-{event_id}",
                        "updated": f"2025-08-0{1 + offset}T00:00:00.000Z",
                    }
                )
            )
        else:
            results.append(OperationResult(status=204))
    outcome = BatchOutcome(results=results, dispositions=[Disposition.SUCCEED] * len(results))
    return outcome, created


class TestBuildRemoteIndex:
    def test_filters_cancelled_and_foreign_events(self):
        events = [
            _remote("a", owner="t1"),
            _remote("b", owner="t1", status="cancelled"),
            _remote("c", managed=False),
            _remote("d", managed=False),
        ]
        index = _index(events, {"t9": "d"})

        assert sorted(index.by_id) == ["a", "d"]
        assert [event.id for event in index.by_owner["t1"]] == ["a"]

    def test_newest_duplicate_wins(self):
        older = _remote("old", updated="2025-08-01T00:00:00.000Z")
        newer = _remote("new", updated="2025-08-05T00:00:00.000Z")
        index = _index([older, newer], {})

        assert list(index.dedupe.values()) == [newer]


def test_new_task_is_inserted(reconciler: Reconciler):
    plan = reconciler.plan([_rent()], _index([], {}), {})

    (operation,) = plan.operations
    assert operation.kind is OperationKind.INSERT
    assert operation.method == "POST"
    assert operation.path == COLLECTION
    assert operation.body["extendedProperties"]["private"][OWNER_KEY] == "t1"
    assert operation.claims_mapping
    assert plan.mapping == {}


@pytest.mark.parametrize("task", [_rent(), _standup()], ids=["single", "expanded"])
def test_second_plan_is_a_no_op(reconciler: Reconciler, task: Task):
    first = reconciler.plan([task], _index([], {}), {})
    outcome, remote = _succeed_all(first.operations)
    mapping = dict(first.mapping)
    assert apply_results(mapping, first.operations, outcome) == []
    assert mapping == {"t1": "ev-1"}

    second = reconciler.plan([task], _index(remote, mapping), mapping)

    assert second.operations == []
    assert second.mapping == {"t1": "ev-1"}


def test_duplicate_is_reused_instead_of_inserted(reconciler: Reconciler):
    dup = _remote("dup-1", owner="legacy", description="old text")

    plan = reconciler.plan([_rent()], _index([dup], {}), {})

    (operation,) = plan.operations
    assert operation.kind is OperationKind.PATCH
    assert operation.path == events_path("primary", "dup-1")
    assert operation.headers == {"If-Match": "etag-dup-1"}
    assert operation.body["description"] == ""
    assert plan.mapping["t1"] == "dup-1"


def test_event_mapped_to_another_task_is_not_adopted(reconciler: Reconciler):
    taken = _remote("ev-1", owner="t1")
    tasks = [_rent(), _rent(id="t2")]

    plan = reconciler.plan(tasks, _index([taken], {"t1": "ev-1"}), {"t1": "ev-1"})

    inserts = [op for op in plan.operations if op.kind is OperationKind.INSERT]
    assert [op.task_id for op in inserts] == ["t2"]
    assert plan.mapping == {"t1": "ev-1"}


def test_changed_summary_patches_only_that_field(reconciler: Reconciler):
    first = reconciler.plan([_rent()], _index([], {}), {})
    outcome, remote = _succeed_all(first.operations)
    mapping: dict[str, str] = {}
    apply_results(mapping, first.operations, outcome)

    plan = reconciler.plan([_rent(summary="Pay the rent")], _index(remote, mapping), mapping)

    (operation,) = plan.operations
    assert operation.kind is OperationKind.PATCH
    assert operation.headers == {"If-Match": "etag-ev-1"}
    assert set(operation.body) == {"summary", "extendedProperties"}
    assert operation.body["summary"] == "Pay the rent"


def test_extra_owned_events_are_deleted(reconciler: Reconciler):
    first = reconciler.plan([_rent()], _index([], {}), {})
    outcome, remote = _succeed_all(first.operations)
    mapping: dict[str, str] = {}
    apply_results(mapping, first.operations, outcome)
    stray = CalendarEvent.from_api({**first.operations[0].body, "id": "stray", "etag": "etag-stray"})

    plan = reconciler.plan([_rent()], _index(remote + [stray], mapping), mapping)

    (operation,) = plan.operations
    assert operation.kind is OperationKind.DELETE
    assert operation.prior_event_id == "stray"
    assert plan.mapping == {"t1": "ev-1"}


def test_orphan_mapping_to_absent_event_is_pruned(reconciler: Reconciler):
    plan = reconciler.plan([], _index([], {"gone": "missing"}), {"gone": "missing"})

    assert plan.operations == []
    assert plan.mapping == {}


def test_orphan_event_is_deleted(reconciler: Reconciler):
    orphan = _remote("ev-9", owner="removed-task")

    plan = reconciler.plan([_rent()], _index([orphan], {}), {})

    deletes = plan.deletes
    # The orphan's content matches t1 but dedupe adopts it instead of deleting.
    assert deletes == []

    other = _remote("ev-8", owner="removed-task", summary="Something else")
    plan = reconciler.plan([_rent()], _index([other], {}), {})
    (delete,) = plan.deletes
    assert delete.method == "DELETE"
    assert delete.path == events_path("primary", "ev-8")
    assert delete.headers == {"If-Match": "etag-ev-8"}


def test_stale_mapping_entry_deletes_its_event(reconciler: Reconciler):
    event = _remote("ev-1", owner="old", managed=False, summary="Gone")

    plan = reconciler.plan([], _index([event], {"old": "ev-1"}), {"old": "ev-1"})

    (delete,) = plan.operations
    assert delete.kind is OperationKind.DELETE
    assert delete.task_id == "old"
    assert delete.prior_event_id == "ev-1"


def test_tasks_without_dates_are_skipped(reconciler: Reconciler):
    tasks = [Task(id="a", summary="x"), Task(id="b", start_date="2025-08-31")]

    plan = reconciler.plan(tasks, _index([], {}), {})

    assert plan.operations == []
    assert plan.skipped == 2


def test_completed_task_without_event_is_skipped(reconciler: Reconciler):
    plan = reconciler.plan([_rent(is_completed=True)], _index([], {}), {})

    assert plan.operations == []
    assert plan.skipped == 1


def test_completed_task_cancels_its_event(reconciler: Reconciler):
    event = _remote("ev-1", owner="t1")

    plan = reconciler.plan([_rent(is_completed=True)], _index([event], {"t1": "ev-1"}), {"t1": "ev-1"})

    (operation,) = plan.operations
    assert operation.kind is OperationKind.PATCH
    assert operation.body["status"] == "cancelled"
    assert operation.full_body is None
    assert operation.headers == {"If-Match": "etag-ev-1"}


def test_single_event_becoming_daily_is_rebuilt(reconciler: Reconciler):
    old = _remote("ev-old", owner="t1", summary="Standup", etag="etag-old")

    plan = reconciler.plan([_standup()], _index([old], {"t1": "ev-old"}), {"t1": "ev-old"})

    (delete,) = plan.deletes
    assert delete.headers == {"If-Match": "etag-old"}
    inserts = plan.upserts
    assert [op.method for op in inserts] == ["POST", "POST", "POST"]
    assert [op.body["start"]["dateTime"] for op in inserts] == [
        "2025-08-31T13:00:00",
        "2025-09-01T13:00:00",
        "2025-09-02T13:00:00",
    ]
    assert [op.claims_mapping for op in inserts] == [True, False, False]
    assert all("recurrence" not in op.body for op in inserts)
    assert "t1" not in plan.mapping


def test_force_deletes_everything_and_reinserts(reconciler: Reconciler):
    events = [_remote("ev-1", owner="t1"), _remote("ev-2", owner="gone", summary="Other")]
    tasks = [_rent(), _rent(id="t2", is_completed=True), Task(id="t3")]

    plan = reconciler.plan(tasks, _index(events, {"t1": "ev-1"}), {"t1": "ev-1"}, force=True)

    assert sorted(op.prior_event_id for op in plan.deletes) == ["ev-1", "ev-2"]
    assert [op.task_id for op in plan.upserts] == ["t1"]
    assert plan.skipped == 2
    assert plan.mapping == {}


def test_build_patch_body_keeps_existing_owner():
    existing = _remote("ev-1", owner="original")
    payload = CalendarEvent(
        summary="New",
        private_properties={OWNER_KEY: "other", SYNC_MARKER_KEY: "true", "localFp": "x"},
    )

    body = build_patch_body(existing, payload, ["summary", "reminders", "recurrence"])

    assert body["summary"] == "New"
    assert body["reminders"] == {"useDefault": True, "overrides": []}
    assert body["recurrence"] == []
    assert body["extendedProperties"]["private"][OWNER_KEY] == "original"
    assert body["extendedProperties"]["private"]["localFp"] == "x"


class TestApplyResults:
    def _patch(self) -> Operation:
        return Operation(
            method="PATCH",
            path=events_path("primary", "ev-1"),
            kind=OperationKind.PATCH,
            headers={"If-Match": "etag-ev-1"},
            body={"summary": "x"},
            task_id="t1",
            prior_event_id="ev-1",
            full_body={"summary": "x", "status": "confirmed"},
        )

    def test_vanished_patch_becomes_insert(self):
        mapping = {"t1": "ev-1"}
        operation = self._patch()
        outcome = BatchOutcome(
            results=[OperationResult(status=404)], dispositions=[Disposition.SKIP]
        )

        (follow_up,) = apply_results(mapping, [operation], outcome)

        assert mapping == {}
        assert follow_up.kind is OperationKind.INSERT
        assert follow_up.method == "POST"
        assert follow_up.path == COLLECTION
        assert follow_up.body == {"summary": "x", "status": "confirmed"}
        assert follow_up.headers == {}

    def test_precondition_failure_retries_without_if_match(self):
        operation = self._patch()
        outcome = BatchOutcome(
            results=[OperationResult(status=412)], dispositions=[Disposition.SKIP]
        )

        (follow_up,) = apply_results({"t1": "ev-1"}, [operation], outcome)

        assert follow_up.kind is OperationKind.PATCH
        assert follow_up.headers == {}
        assert operation.headers == {"If-Match": "etag-ev-1"}

    def test_precondition_failure_kept_when_overwrite_disabled(self):
        outcome = BatchOutcome(
            results=[OperationResult(status=412)], dispositions=[Disposition.SKIP]
        )
        assert apply_results({}, [self._patch()], outcome, overwrite_on_conflict=False) == []

    def test_follow_ups_are_not_chained(self):
        outcome = BatchOutcome(
            results=[OperationResult(status=404)], dispositions=[Disposition.SKIP]
        )
        assert apply_results({}, [self._patch()], outcome, allow_follow_ups=False) == []

    def test_delete_releases_only_matching_mapping(self):
        delete = Operation(
            method="DELETE",
            path=events_path("primary", "ev-1"),
            kind=OperationKind.DELETE,
            task_id="t1",
            prior_event_id="ev-1",
        )
        outcome = BatchOutcome(
            results=[OperationResult(status=204)], dispositions=[Disposition.SUCCEED]
        )

        mapping = {"t1": "ev-2"}
        apply_results(mapping, [delete], outcome)
        assert mapping == {"t1": "ev-2"}

        mapping = {"t1": "ev-1"}
        apply_results(mapping, [delete], outcome)
        assert mapping == {}

    def test_failed_insert_leaves_mapping_alone(self):
        insert = Operation(
            method="POST", path=COLLECTION, kind=OperationKind.INSERT, body={}, task_id="t1"
        )
        outcome = BatchOutcome(
            results=[OperationResult(status=400)], dispositions=[Disposition.FAIL]
        )
        mapping: dict[str, str] = {}

        assert apply_results(mapping, [insert], outcome) == []
        assert mapping == {}
