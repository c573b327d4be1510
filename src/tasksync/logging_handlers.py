"""File handlers for sync-run logs and their retention."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional


class DateStampedFileHandler(logging.FileHandler):
    """Write to ``<directory>/<YYYY-MM-DD>/<prefix>_<YYYY-MM-DD_HH-MM-SS>.log``.

    Timestamps are UTC. ``current_time`` pins the file name in tests.
    """

    def __init__(
        self,
        *,
        directory: str | Path = "logs/sync",
        prefix: str = "sync",
        encoding: str | None = "utf-8",
        delay: bool = False,
        current_time: Optional[datetime] = None,
    ) -> None:
        stamp = (current_time or datetime.now(timezone.utc)).astimezone(timezone.utc)
        folder = Path(directory).resolve() / stamp.strftime("%Y-%m-%d")
        folder.mkdir(parents=True, exist_ok=True)
        self.log_path = folder / f"{prefix}_{stamp.strftime('%Y-%m-%d_%H-%M-%S')}.log"
        super().__init__(self.log_path, mode="a", encoding=encoding, delay=delay)


def cleanup_old_logs(
    log_directories: Iterable[str | Path],
    retention_hours: int,
    logger: logging.Logger | None = None,
    *,
    now: Optional[datetime] = None,
) -> tuple[int, int]:
    """Delete ``*.log`` files older than ``retention_hours``.

    Empty date folders left behind are removed as well. A retention of 0
    disables cleanup. Returns ``(files_deleted, errors)``.
    """
    if retention_hours <= 0:
        return (0, 0)

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=retention_hours)
    deleted = 0
    errors = 0

    for directory in log_directories:
        root = Path(directory).resolve()
        if not root.is_dir():
            continue

        for log_file in root.rglob("*.log"):
            try:
                modified = datetime.fromtimestamp(log_file.stat().st_mtime, tz=timezone.utc)
                if modified >= cutoff:
                    continue
                log_file.unlink()
                deleted += 1
            except OSError as exc:
                errors += 1
                if logger:
                    logger.warning("Failed to delete %s: %s", log_file, exc)

        for folder in root.iterdir():
            if folder.is_dir() and not any(folder.iterdir()):
                try:
                    folder.rmdir()
                except OSError as exc:
                    if logger:
                        logger.debug("Could not remove %s: %s", folder, exc)

    if logger and deleted:
        logger.info("Removed %d old log file(s), %d error(s)", deleted, errors)
    return (deleted, errors)


__all__ = ["DateStampedFileHandler", "cleanup_old_logs"]
