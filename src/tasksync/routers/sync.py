"""REST API endpoints for triggering and inspecting sync runs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..schemas.sync import DedupeReport, RunStatus, SyncStatusResponse, SyncSummary
from ..services.notifier import NoticeLog
from ..sync.engine import SyncEngine

router = APIRouter(prefix="/api/sync", tags=["sync"])


def get_sync_engine(request: Request) -> SyncEngine:
    """Dependency to access the application's sync engine."""

    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Sync engine is not configured",
        )
    return engine


def get_notice_log(request: Request) -> NoticeLog:
    notices = getattr(request.app.state, "notice_log", None)
    if notices is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Notice log is not configured",
        )
    return notices


@router.post("", response_model=SyncSummary)
async def trigger_sync(
    force: bool = Query(False, description="Delete and recreate every managed event"),
    engine: SyncEngine = Depends(get_sync_engine),
) -> SyncSummary:
    """Run one reconciliation pass and return its summary."""

    summary = await engine.run(force=force)
    if summary.status is RunStatus.REJECTED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=summary.message)
    return summary


@router.post("/dedupe", response_model=DedupeReport)
async def dedupe(
    dry_run: bool = Query(True, description="Only report what would be deleted"),
    engine: SyncEngine = Depends(get_sync_engine),
) -> DedupeReport:
    report = await engine.dedupe_cleanup(dry_run=dry_run)
    if report.status is RunStatus.REJECTED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=report.message)
    return report


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    engine: SyncEngine = Depends(get_sync_engine),
    notices: NoticeLog = Depends(get_notice_log),
) -> SyncStatusResponse:
    await engine.get_state()
    return SyncStatusResponse(**engine.status_snapshot(), notices=notices.recent())


__all__ = ["router"]
