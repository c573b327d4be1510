"""Task source backed by a JSON export file."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List

from pydantic import ValidationError

from ..schemas.tasks import TaskRecord
from ..sync.models import Task

logger = logging.getLogger(__name__)


class JsonTaskSource:
    """Read task records from ``path``.

    The file holds either a list of records or ``{"tasks": [...]}``. Invalid
    records are skipped with a warning; a missing file yields no tasks.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    def _read(self) -> List[Task]:
        if not self._path.exists():
            logger.warning("Task file %s does not exist", self._path)
            return []

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read task file %s: %s", self._path, exc)
            return []

        if isinstance(raw, dict):
            items = raw.get("tasks", [])
        elif isinstance(raw, list):
            items = raw
        else:
            items = []

        tasks: List[Task] = []
        seen: set[str] = set()
        for item in items:
            try:
                record = TaskRecord.model_validate(item)
            except ValidationError as exc:
                logger.warning("Skipping invalid task entry: %s", exc)
                continue
            if record.id in seen:
                logger.warning("Skipping duplicate task id %s", record.id)
                continue
            seen.add(record.id)
            tasks.append(record.to_task())
        return tasks

    async def get_tasks(self) -> List[Task]:
        return await asyncio.to_thread(self._read)


__all__ = ["JsonTaskSource"]
