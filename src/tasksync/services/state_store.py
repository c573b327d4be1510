"""JSON persistence for the engine's sync state."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from pydantic import ValidationError

from ..schemas.sync_state import SyncState

logger = logging.getLogger(__name__)


class SyncStateStore:
    """Load and save ``SyncState`` as a single JSON document."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load_from_disk(self) -> SyncState:
        if not self._path.exists():
            return SyncState()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read sync state %s: %s", self._path, exc)
            return SyncState()
        try:
            return SyncState.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Discarding invalid sync state %s: %s", self._path, exc)
            return SyncState()

    def _save_to_disk(self, state: SyncState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(serialized + "\n", encoding="utf-8")
        tmp_path.replace(self._path)

    async def load(self) -> SyncState:
        async with self._lock:
            return self._load_from_disk()

    async def save(self, state: SyncState) -> None:
        async with self._lock:
            self._save_to_disk(state)


__all__ = ["SyncStateStore"]
