"""In-process notice sink."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone

from ..schemas.sync import Notice

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class NoticeLog:
    """Log each notice at its severity and keep the most recent ones."""

    def __init__(self, capacity: int = 20) -> None:
        self._notices: deque[Notice] = deque(maxlen=capacity)

    def notify(self, message: str, severity: str = "info") -> None:
        level = _LEVELS.get(severity.lower(), logging.INFO)
        logger.log(level, "Notice: %s", message)
        self._notices.append(
            Notice(message=message, severity=severity, created_at=datetime.now(timezone.utc))
        )

    def recent(self) -> list[Notice]:
        return list(self._notices)


__all__ = ["NoticeLog"]
