"""Schemas for run summaries, dedupe reports and the status endpoint."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .sync_state import ErrorRecord


class RunStatus(str, Enum):
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


class SyncSummary(BaseModel):
    """End-of-run summary returned by ``SyncEngine.run``."""

    model_config = ConfigDict(extra="forbid")

    status: RunStatus
    force: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0
    error_records: list[ErrorRecord] = Field(default_factory=list)
    message: Optional[str] = None


class DedupeGroup(BaseModel):
    identity_key: str
    keep_id: str
    delete_ids: list[str]


class DedupeReport(BaseModel):
    status: RunStatus
    dry_run: bool = True
    groups: list[DedupeGroup] = Field(default_factory=list)
    deleted: int = 0
    errors: int = 0
    message: Optional[str] = None


class Notice(BaseModel):
    message: str
    severity: str
    created_at: datetime


class SyncStatusResponse(BaseModel):
    running: bool
    last_sync_time: Optional[datetime] = None
    mapped_tasks: int = 0
    sync_token_present: bool = False
    recent_errors: list[ErrorRecord] = Field(default_factory=list)
    notices: list[Notice] = Field(default_factory=list)


__all__ = [
    "DedupeGroup",
    "DedupeReport",
    "Notice",
    "RunStatus",
    "SyncStatusResponse",
    "SyncSummary",
]
