"""Application factory for the sync service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from .config import PROJECT_ROOT, Settings, get_settings
from .logging_handlers import DateStampedFileHandler, cleanup_old_logs
from .logging_settings import parse_logging_settings
from .routers.sync import router as sync_router
from .services.auto_sync import AutoSyncScheduler
from .services.google_auth import GoogleCredentialProvider
from .services.notifier import NoticeLog
from .services.state_store import SyncStateStore
from .services.task_source import JsonTaskSource
from .sync.engine import SyncEngine
from .sync.transport import CalendarTransport

SYNC_LOG_DIR = PROJECT_ROOT / "logs" / "sync"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _configure_logging() -> None:
    """Configure logging from LOG_LEVEL/LOG_FILE and ``logging_settings.conf``."""

    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    file_settings = parse_logging_settings(PROJECT_ROOT / "logging_settings.conf")

    handlers: list[logging.Handler] = []
    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if file_settings.terminal_level is not None:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler.setLevel(file_settings.terminal_level)
        handlers.append(console_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)
    logging.getLogger("tasksync").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)

    logging.getLogger("httpx").setLevel(log_level)
    logging.getLogger("httpcore").setLevel(log_level)
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    sync_logger = logging.getLogger("tasksync.sync")
    for handler in list(sync_logger.handlers):
        if isinstance(handler, DateStampedFileHandler):
            sync_logger.removeHandler(handler)
            handler.close()
    if file_settings.sync_runs_level is not None:
        run_handler = DateStampedFileHandler(directory=SYNC_LOG_DIR, prefix="sync", delay=True)
        run_handler.setFormatter(formatter)
        run_handler.setLevel(file_settings.sync_runs_level)
        sync_logger.addHandler(run_handler)

    cleanup_old_logs(
        [SYNC_LOG_DIR],
        file_settings.retention_hours,
        logging.getLogger(__name__),
    )


def _resolve_under(base: Path, path: Path) -> Path:
    if path.is_absolute():
        return path.resolve()
    resolved = (base / path).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(f"Configured path {resolved} escapes project root {base}")
    return resolved


def create_app(settings: Settings | None = None) -> FastAPI:
    _configure_logging()

    settings = settings or get_settings()
    root = PROJECT_ROOT.resolve()

    credentials = GoogleCredentialProvider(_resolve_under(root, settings.token_path))
    transport = CalendarTransport(settings, credentials)
    notices = NoticeLog()
    task_source = JsonTaskSource(_resolve_under(root, settings.tasks_path))
    store = SyncStateStore(_resolve_under(root, settings.state_path))

    engine = SyncEngine(
        settings,
        transport=transport,
        get_tasks=task_source.get_tasks,
        ensure_credential=credentials.ensure,
        notify=notices.notify,
        store=store,
    )
    scheduler = AutoSyncScheduler(
        engine,
        credentials.ensure,
        settings.sync_interval_minutes,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.get_state()
        if settings.auto_sync:
            scheduler.start()
        try:
            yield
        finally:
            await scheduler.shutdown()
            try:
                await asyncio.wait_for(transport.aclose(), timeout=10.0)
            except asyncio.TimeoutError:
                logging.warning("Transport shutdown timed out after 10s")

    app = FastAPI(
        title="Task Calendar Sync",
        version="0.1.0",
        description="Reconciles local task records into a Google Calendar.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.sync_engine = engine
    app.state.notice_log = notices
    app.state.auto_sync = scheduler

    app.include_router(sync_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str | bool]:
        return {
            "status": "ok",
            "calendar_id": settings.calendar_id,
            "auto_sync": scheduler.is_active,
        }

    return app


__all__ = ["create_app"]
