"""Retry policy and the round-based batch driver.

``classify`` is a pure function from (operation kind, status, reason) to a
``Disposition``. ``BatchDriver`` sends operations in sub-batches and keeps
only the retry-eligible ones for the next round, with exponential backoff and
jitter between rounds, until everything is settled or the attempt ceiling is
reached.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

from ..schemas.sync_state import ErrorRecord
from .errors import ErrorKind, SyncError
from .metrics import SyncMetrics
from .models import Operation, OperationKind, OperationResult

logger = logging.getLogger(__name__)

_RATE_LIMIT_REASON = re.compile(r"rateLimitExceeded|userRateLimitExceeded", re.IGNORECASE)
_EXHAUSTED_REASON = re.compile(r"RESOURCE_EXHAUSTED", re.IGNORECASE)
_RETRYABLE_SERVER_STATUSES = frozenset({500, 502, 503, 504})

RETRY_LIMIT_MESSAGE = "Retry limit reached"

SendBatch = Callable[[Sequence[Operation]], Awaitable[list[OperationResult]]]
Sleep = Callable[[float], Awaitable[None]]


class Disposition(str, Enum):
    SUCCEED = "succeed"
    SKIP = "skip"
    RETRY = "retry"
    FAIL = "fail"


def is_retryable(status: int, reason: str = "") -> bool:
    if status == 429:
        return True
    if status == 403 and _RATE_LIMIT_REASON.search(reason or ""):
        return True
    if _EXHAUSTED_REASON.search(reason or ""):
        return True
    return status in _RETRYABLE_SERVER_STATUSES


def classify(kind: OperationKind, status: int, reason: str = "") -> Disposition:
    """Classify one sub-response.

    Not-found, gone and precondition failures on patch/delete, and conflicts on
    insert, are benign skips: the remote already reflects (or has superseded)
    the intended change.
    """
    if 200 <= status < 300:
        return Disposition.SUCCEED
    if kind in (OperationKind.PATCH, OperationKind.DELETE) and status in (404, 410, 412):
        return Disposition.SKIP
    if kind is OperationKind.INSERT and status == 409:
        return Disposition.SKIP
    if is_retryable(status, reason):
        return Disposition.RETRY
    return Disposition.FAIL


def backoff_delay_ms(
    attempt: int,
    *,
    base_ms: int = 400,
    cap_ms: int = 20_000,
    rng: Optional[random.Random] = None,
) -> int:
    """``min(cap, base * 2**attempt)`` scaled by a 0.75x-1.25x jitter."""

    source = rng or random
    ceiling = min(cap_ms, base_ms * (2 ** attempt))
    return int(ceiling * source.uniform(0.75, 1.25))


def jittered_ms(base_ms: int, rng: Optional[random.Random] = None) -> int:
    """Apply a ±25% jitter to a fixed delay."""

    source = rng or random
    return int(base_ms * source.uniform(0.75, 1.25))


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 4
    base_backoff_ms: int = 400
    max_backoff_ms: int = 20_000

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_batch_attempts,
            base_backoff_ms=settings.base_backoff_ms,
            max_backoff_ms=settings.max_backoff_ms,
        )


@dataclass(slots=True)
class BatchOutcome:
    """Settled results aligned index-for-index with the submitted operations."""

    results: list[OperationResult]
    dispositions: list[Disposition]
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0
    error_records: list[ErrorRecord] = field(default_factory=list)
    metrics: SyncMetrics = field(default_factory=SyncMetrics)


class BatchInterrupted(SyncError):
    """A sub-batch send failed outright partway through a driver run.

    ``operations`` and ``outcome`` cover only what settled before the
    failure, aligned index-for-index, so callers can still apply them.
    """

    def __init__(
        self,
        cause: Exception,
        operations: list[Operation],
        outcome: BatchOutcome,
    ) -> None:
        super().__init__(str(cause))
        self.kind = cause.kind if isinstance(cause, SyncError) else ErrorKind.FATAL
        self.operations = operations
        self.outcome = outcome


def _settled_part(
    operations: Sequence[Operation],
    settled: list[Optional[OperationResult]],
    dispositions: list[Optional[Disposition]],
    outcome: BatchOutcome,
) -> tuple[list[Operation], BatchOutcome]:
    kept = [
        index
        for index, result in enumerate(settled)
        if result is not None and dispositions[index] is not None
    ]
    outcome.results = [settled[index] for index in kept]  # type: ignore[misc]
    outcome.dispositions = [dispositions[index] for index in kept]  # type: ignore[misc]
    return [operations[index] for index in kept], outcome


class BatchDriver:
    """Drive operations through ``send`` with selective, round-based retries."""

    def __init__(
        self,
        send: SendBatch,
        *,
        batch_size: int = 100,
        inter_batch_delay_ms: int = 0,
        policy: RetryPolicy = RetryPolicy(),
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._send = send
        self._batch_size = max(1, min(batch_size, 1000))
        self._inter_batch_delay_ms = max(0, inter_batch_delay_ms)
        self._policy = policy
        self._sleep = sleep
        self._rng = rng
        self._clock = clock

    async def run(self, operations: Sequence[Operation]) -> BatchOutcome:
        settled: list[Optional[OperationResult]] = [None] * len(operations)
        dispositions: list[Optional[Disposition]] = [None] * len(operations)
        outcome = BatchOutcome(results=[], dispositions=[])
        metrics = outcome.metrics

        pending = list(range(len(operations)))
        attempt = 0
        while pending:
            attempt += 1
            metrics.attempts = attempt

            for offset in range(0, len(pending), self._batch_size):
                window = pending[offset : offset + self._batch_size]
                try:
                    await self._send_window(operations, window, attempt, settled, dispositions, outcome)
                except SyncError as exc:
                    raise BatchInterrupted(
                        exc, *_settled_part(operations, settled, dispositions, outcome)
                    ) from exc

                more_in_round = offset + self._batch_size < len(pending)
                if more_in_round and self._inter_batch_delay_ms > 0:
                    delay = jittered_ms(self._inter_batch_delay_ms, self._rng)
                    metrics.total_wait_ms += delay
                    await self._sleep(delay / 1000)

            pending = [index for index in pending if settled[index] is None]
            if not pending:
                break

            if attempt >= self._policy.max_attempts:
                for index in pending:
                    self._finalize_exhausted(operations[index], index, attempt, settled, dispositions, outcome)
                logger.warning(
                    "%d operation(s) still failing after %d attempts", len(pending), attempt
                )
                break

            delay = backoff_delay_ms(
                attempt,
                base_ms=self._policy.base_backoff_ms,
                cap_ms=self._policy.max_backoff_ms,
                rng=self._rng,
            )
            metrics.total_wait_ms += delay
            logger.info(
                "Retrying %d operation(s) in %dms (attempt %d/%d)",
                len(pending),
                delay,
                attempt + 1,
                self._policy.max_attempts,
            )
            await self._sleep(delay / 1000)

        outcome.results = [result for result in settled if result is not None]
        outcome.dispositions = [d for d in dispositions if d is not None]
        return outcome

    async def _send_window(
        self,
        operations: Sequence[Operation],
        window: list[int],
        attempt: int,
        settled: list[Optional[OperationResult]],
        dispositions: list[Optional[Disposition]],
        outcome: BatchOutcome,
    ) -> None:
        metrics = outcome.metrics
        started = self._clock()
        responses = await self._send([operations[index] for index in window])
        metrics.batch_latencies_ms.append((self._clock() - started) * 1000)
        metrics.sent_sub_batches += 1

        by_content_id = {f"item-{position + 1}": index for position, index in enumerate(window)}
        for position, response in enumerate(responses):
            index = by_content_id.get(response.content_id or "")
            if index is None:
                if response.content_id:
                    logger.warning("Unknown Content-ID in batch response: %s", response.content_id)
                if position >= len(window):
                    continue
                index = window[position]
            if settled[index] is not None:
                continue

            operation = operations[index]
            metrics.record_status(response.status)
            disposition = classify(operation.kind, response.status, response.error_reason)

            if disposition is Disposition.RETRY:
                # Left pending; the next round resends it or finalizes it at the ceiling.
                continue

            settled[index] = response
            dispositions[index] = disposition
            if disposition is Disposition.SUCCEED:
                if operation.kind is OperationKind.INSERT:
                    outcome.created += 1
                elif operation.kind is OperationKind.PATCH:
                    outcome.updated += 1
                else:
                    outcome.deleted += 1
            elif disposition is Disposition.SKIP:
                outcome.skipped += 1
            else:
                outcome.errors += 1
                outcome.error_records.append(
                    _error_record(operation, response, ErrorKind.PERMANENT, attempt - 1)
                )
                logger.warning(
                    "Permanent failure: %s %s (task=%s) -> %d %s",
                    operation.method,
                    operation.path,
                    operation.task_id,
                    response.status,
                    response.error_reason or response.error_message or "",
                )

    def _finalize_exhausted(
        self,
        operation: Operation,
        index: int,
        attempt: int,
        settled: list[Optional[OperationResult]],
        dispositions: list[Optional[Disposition]],
        outcome: BatchOutcome,
    ) -> None:
        result = OperationResult(status=500, body={"error": {"message": RETRY_LIMIT_MESSAGE}})
        settled[index] = result
        dispositions[index] = Disposition.FAIL
        outcome.errors += 1
        record = _error_record(operation, result, ErrorKind.PERMANENT, attempt)
        record.reason = "retryLimitReached"
        outcome.error_records.append(record)


def _error_record(
    operation: Operation,
    result: OperationResult,
    kind: ErrorKind,
    retry_count: int,
) -> ErrorRecord:
    return ErrorRecord(
        kind=kind,
        operation=operation.kind.value,
        task_id=operation.task_id,
        event_id=operation.prior_event_id,
        retry_count=retry_count,
        status=result.status,
        reason=result.error_reason or None,
        message=result.error_message,
    )


__all__ = [
    "BatchInterrupted",
    "BatchDriver",
    "BatchOutcome",
    "Disposition",
    "RETRY_LIMIT_MESSAGE",
    "RetryPolicy",
    "backoff_delay_ms",
    "classify",
    "is_retryable",
    "jittered_ms",
]
