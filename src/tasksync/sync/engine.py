"""Run orchestration for task to calendar reconciliation.

One run is: ensure a credential, read the tasks, list remote events, plan,
then execute the plan in two batch phases (deletions first, then patches and
inserts) and fold the results back into the task mapping. Only one run or
dedupe cleanup is active at a time; a concurrent trigger is rejected rather
than queued. The mapping is persisted when the run ends, including when it
aborts.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

from ..config import Settings
from ..schemas.sync import DedupeGroup, DedupeReport, RunStatus, SyncSummary
from ..schemas.sync_state import ErrorRecord, SyncState
from ..services.state_store import SyncStateStore
from .errors import CredentialError, ErrorKind, SyncError
from .identity import IdentityOptions, identity_key
from .mapper import EventMapper
from .models import CalendarEvent, Operation, OperationKind, Task, events_path
from .reconciler import Reconciler, apply_results, build_remote_index
from .retry import BatchDriver, BatchInterrupted, BatchOutcome, RetryPolicy
from .transport import CalendarTransport, ListingResult

logger = logging.getLogger(__name__)

GetTasks = Callable[[], Awaitable[Sequence[Task]]]
EnsureCredential = Callable[[], Awaitable[bool]]
Notify = Callable[[str, str], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _Totals:
    __slots__ = ("created", "updated", "deleted", "skipped", "errors", "records")

    def __init__(self) -> None:
        self.created = 0
        self.updated = 0
        self.deleted = 0
        self.skipped = 0
        self.errors = 0
        self.records: list[ErrorRecord] = []

    def add(self, outcome: BatchOutcome) -> None:
        self.created += outcome.created
        self.updated += outcome.updated
        self.deleted += outcome.deleted
        self.skipped += outcome.skipped
        self.errors += outcome.errors
        self.records.extend(outcome.error_records)


class SyncEngine:
    """Reconcile tasks into the remote calendar."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: CalendarTransport,
        get_tasks: GetTasks,
        ensure_credential: EnsureCredential,
        notify: Notify,
        store: SyncStateStore,
        mapper: Optional[EventMapper] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._get_tasks = get_tasks
        self._ensure_credential = ensure_credential
        self._notify = notify
        self._store = store
        self._mapper = mapper or EventMapper(settings)
        self._reconciler = Reconciler(settings, self._mapper)
        self._options = IdentityOptions.from_settings(settings)
        self._sleep = sleep
        self._rng = rng
        self._running = False
        self._state: Optional[SyncState] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def settings(self) -> Settings:
        return self._settings

    async def get_state(self) -> SyncState:
        if self._state is None:
            self._state = await self._store.load()
        return self._state

    # ------------------------------------------------------------------
    # Notices
    # ------------------------------------------------------------------
    def _notice(self, message: str, *, manual: bool) -> None:
        if manual and self._settings.show_notices:
            self._notify(message, "info")

    def _error_notice(self, message: str, severity: str = "error") -> None:
        if self._settings.show_errors:
            self._notify(message, severity)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    async def run(self, force: bool = False, *, manual: bool = True) -> SyncSummary:
        if self._running:
            logger.warning("Sync requested while another run is active; rejecting")
            return SyncSummary(
                status=RunStatus.REJECTED,
                force=force,
                message="A sync run is already in progress",
            )

        self._running = True
        started_at = _now()
        state: Optional[SyncState] = None
        try:
            state = await self.get_state()
            summary = await self._run(state, force, manual=manual)
            summary.started_at = started_at
        except Exception as exc:
            if isinstance(exc, SyncError):
                logger.exception("Sync run aborted (%s)", exc.kind.value)
            else:
                logger.exception("Unexpected error during sync run")
            self._error_notice(f"Sync failed: {exc}")
            if state is not None:
                state.record_errors(
                    [
                        ErrorRecord(
                            kind=ErrorKind.FATAL,
                            operation="run",
                            message=str(exc)[:200],
                        )
                    ]
                )
            summary = SyncSummary(
                status=RunStatus.FAILED,
                force=force,
                started_at=started_at,
                message=str(exc),
            )
        finally:
            if state is not None:
                await self._persist(state)
            self._running = False

        summary.finished_at = _now()
        return summary

    async def _persist(self, state: SyncState) -> None:
        try:
            await self._store.save(state)
        except OSError:
            logger.exception("Failed to persist sync state to %s", self._store.path)

    async def _run(self, state: SyncState, force: bool, *, manual: bool) -> SyncSummary:
        if not await self._ensure_credential():
            raise CredentialError("Google credential is missing or could not be refreshed")

        self._notice("Sync started" + (" (full rebuild)" if force else ""), manual=manual)
        tasks = list(await self._get_tasks())
        logger.info("Loaded %d task(s)", len(tasks))

        if force:
            state.sync_token = None
        listing = await self._transport.list_events(
            state.sync_token, state.list_filter_signature
        )
        events = self._merge_listing(state, listing)

        index = build_remote_index(events, state.task_map, self._options)
        plan = self._reconciler.plan(tasks, index, state.task_map, force=force)
        state.task_map = plan.mapping
        logger.info(
            "Planned %d operation(s) for %d task(s); %d skipped",
            len(plan.operations),
            len(tasks),
            plan.skipped,
        )

        totals = _Totals()
        totals.skipped = plan.skipped
        if not plan.operations:
            logger.info("No remote changes needed")
            state.last_sync_time = _now()
            self._notice("Sync complete: no changes", manual=manual)
            return SyncSummary(status=RunStatus.COMPLETED, force=force, skipped=plan.skipped)

        await self._execute_phase("delete", plan.deletes, state, totals)
        await self._execute_phase("upsert", plan.upserts, state, totals)

        state.record_errors(totals.records)
        state.last_sync_time = _now()

        message = (
            f"Sync complete: {totals.created} created, {totals.updated} updated, "
            f"{totals.deleted} deleted, {totals.skipped} skipped, {totals.errors} error(s)"
        )
        logger.info(message)
        self._notice(message, manual=manual)
        if totals.errors:
            self._error_notice(f"Sync finished with {totals.errors} error(s)", "warning")

        return SyncSummary(
            status=RunStatus.COMPLETED,
            force=force,
            created=totals.created,
            updated=totals.updated,
            deleted=totals.deleted,
            skipped=totals.skipped,
            errors=totals.errors,
            error_records=totals.records,
        )

    def _merge_listing(self, state: SyncState, listing: ListingResult) -> list[CalendarEvent]:
        """Return the remote snapshot reconciliation should see.

        Incremental listings only carry changes, so they are merged into the
        cached snapshot; a full listing replaces it.
        """
        if not self._settings.use_sync_token:
            state.event_cache = {}
            state.sync_token = None
            state.list_filter_signature = None
            return listing.events

        if listing.incremental:
            cache = dict(state.event_cache)
            for item in listing.raw_items:
                event_id = item.get("id")
                if not event_id:
                    continue
                if item.get("status") == "cancelled":
                    cache.pop(event_id, None)
                else:
                    cache[event_id] = item
        else:
            cache = {
                item["id"]: item
                for item in listing.raw_items
                if item.get("id") and item.get("status") != "cancelled"
            }

        state.event_cache = cache
        state.sync_token = listing.next_sync_token
        state.list_filter_signature = listing.filter_signature
        return [CalendarEvent.from_api(item) for item in cache.values()]

    def _driver(self) -> BatchDriver:
        return BatchDriver(
            self._transport.execute_batch,
            batch_size=self._settings.batch_size,
            inter_batch_delay_ms=self._settings.inter_batch_delay_ms,
            policy=RetryPolicy.from_settings(self._settings),
            sleep=self._sleep,
            rng=self._rng,
        )

    async def _execute_phase(
        self,
        title: str,
        operations: list[Operation],
        state: SyncState,
        totals: _Totals,
    ) -> None:
        if not operations:
            return
        driver = self._driver()
        outcome = await self._drive(driver, title, operations, state, totals)

        follow_ups = apply_results(
            state.task_map,
            operations,
            outcome,
            overwrite_on_conflict=self._settings.overwrite_on_conflict,
        )
        if not follow_ups:
            return

        logger.info("Sending %d follow-up operation(s) after %s phase", len(follow_ups), title)
        extra = await self._drive(driver, f"{title} follow-up", follow_ups, state, totals)
        apply_results(state.task_map, follow_ups, extra, allow_follow_ups=False)

    async def _drive(
        self,
        driver: BatchDriver,
        title: str,
        operations: list[Operation],
        state: SyncState,
        totals: _Totals,
    ) -> BatchOutcome:
        try:
            outcome = await driver.run(operations)
        except BatchInterrupted as exc:
            # Keep whatever settled before the failure so the abort flush includes it.
            logger.warning(
                "%s phase interrupted after %d settled operation(s)", title, len(exc.operations)
            )
            totals.add(exc.outcome)
            state.record_errors(totals.records)
            apply_results(state.task_map, exc.operations, exc.outcome, allow_follow_ups=False)
            raise
        outcome.metrics.log_summary(title, logger)
        totals.add(outcome)
        return outcome

    # ------------------------------------------------------------------
    # Dedupe cleanup
    # ------------------------------------------------------------------
    async def dedupe_cleanup(self, dry_run: bool = True) -> DedupeReport:
        """Collapse remote duplicates that share an identity key."""

        if self._running:
            return DedupeReport(
                status=RunStatus.REJECTED,
                dry_run=dry_run,
                message="A sync run is already in progress",
            )

        self._running = True
        state: Optional[SyncState] = None
        try:
            state = await self.get_state()
            report = await self._dedupe(state, dry_run)
        except Exception as exc:
            logger.exception("Dedupe cleanup failed")
            self._error_notice(f"Duplicate cleanup failed: {exc}")
            report = DedupeReport(status=RunStatus.FAILED, dry_run=dry_run, message=str(exc))
        finally:
            if state is not None and not dry_run:
                await self._persist(state)
            self._running = False
        return report

    async def _dedupe(self, state: SyncState, dry_run: bool) -> DedupeReport:
        if not await self._ensure_credential():
            raise CredentialError("Google credential is missing or could not be refreshed")

        listing = await self._transport.list_events(None, None)
        groups: dict[str, list[CalendarEvent]] = {}
        for event in listing.events:
            if event.id and event.is_managed and not event.is_cancelled:
                groups.setdefault(identity_key(event, self._options), []).append(event)

        usage: dict[str, int] = {}
        for event_id in state.task_map.values():
            usage[event_id] = usage.get(event_id, 0) + 1

        report = DedupeReport(status=RunStatus.COMPLETED, dry_run=dry_run)
        doomed: dict[str, CalendarEvent] = {}
        for key, members in groups.items():
            if len(members) < 2:
                continue
            keep = max(members, key=lambda event: (usage.get(event.id, 0), event.updated or ""))
            losers = [event for event in members if event.id != keep.id]
            report.groups.append(
                DedupeGroup(
                    identity_key=key,
                    keep_id=keep.id,  # type: ignore[arg-type]
                    delete_ids=[event.id for event in losers],  # type: ignore[misc]
                )
            )
            for event in losers:
                doomed[event.id] = event  # type: ignore[index]
                for task_id, event_id in list(state.task_map.items()):
                    if event_id == event.id and not dry_run:
                        state.task_map[task_id] = keep.id  # type: ignore[assignment]

        logger.info(
            "Dedupe found %d duplicate group(s), %d event(s) to delete (dry_run=%s)",
            len(report.groups),
            len(doomed),
            dry_run,
        )
        if dry_run or not doomed:
            return report

        operations = [
            Operation(
                method="DELETE",
                path=events_path(self._settings.calendar_id, event.id),
                kind=OperationKind.DELETE,
                headers={"If-Match": event.etag} if event.etag else {},
                task_id=event.owner_task_id,
                prior_event_id=event.id,
            )
            for event in doomed.values()
        ]
        outcome = await self._driver().run(operations)
        outcome.metrics.log_summary("dedupe", logger)
        state.record_errors(outcome.error_records)
        report.deleted = outcome.deleted + outcome.skipped
        report.errors = outcome.errors
        return report

    def status_snapshot(self) -> dict[str, Any]:
        state = self._state or SyncState()
        return {
            "running": self._running,
            "last_sync_time": state.last_sync_time,
            "mapped_tasks": len(state.task_map),
            "sync_token_present": bool(state.sync_token),
            "recent_errors": list(state.recent_errors),
        }


__all__ = ["SyncEngine"]
