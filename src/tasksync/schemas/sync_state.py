"""Pydantic schemas for the persisted sync state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..sync.errors import ErrorKind

RECENT_ERRORS_LIMIT = 50


class ErrorRecord(BaseModel):
    """Diagnostic entry for an operation that did not succeed."""

    model_config = ConfigDict(extra="ignore")

    kind: ErrorKind
    operation: str
    task_id: Optional[str] = None
    event_id: Optional[str] = None
    retry_count: int = 0
    status: Optional[int] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SyncState(BaseModel):
    """State owned by the engine and carried between runs.

    ``event_cache`` holds the last known remote snapshot (keyed by event id)
    and is only maintained when incremental listing is enabled.
    """

    model_config = ConfigDict(extra="ignore")

    task_map: dict[str, str] = Field(default_factory=dict)
    sync_token: Optional[str] = None
    list_filter_signature: Optional[str] = None
    last_sync_time: Optional[datetime] = None
    recent_errors: list[ErrorRecord] = Field(default_factory=list)
    event_cache: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def record_errors(self, records: Iterable[ErrorRecord]) -> None:
        """Prepend ``records`` (newest first) and cap the ring."""

        newest_first = list(records)[::-1]
        self.recent_errors = (newest_first + self.recent_errors)[:RECENT_ERRORS_LIMIT]


__all__ = ["ErrorRecord", "RECENT_ERRORS_LIMIT", "SyncState"]
