"""Parse the ``logging_settings.conf`` file.

The file is a list of ``key = value`` lines::

    terminal = info
    sync_runs = debug
    retention_hours = 72

Levels are ``debug``, ``info``, ``warning`` or ``off``. Unknown keys are
ignored and unknown levels fall back to ``info``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

_LEVELS: dict[str, int | None] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "off": None,
}

_LEVEL_KEYS = ("terminal", "sync_runs")
_FALLBACK_LEVEL = logging.INFO
_FALLBACK_RETENTION_HOURS = 168


@dataclass(frozen=True)
class LoggingSettings:
    terminal_level: int | None = _FALLBACK_LEVEL
    sync_runs_level: int | None = _FALLBACK_LEVEL
    retention_hours: int = _FALLBACK_RETENTION_HOURS


def parse_logging_settings(path: Path) -> LoggingSettings:
    if not path.exists():
        return LoggingSettings()

    levels: dict[str, int | None] = {key: _FALLBACK_LEVEL for key in _LEVEL_KEYS}
    retention_hours = _FALLBACK_RETENTION_HOURS

    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if "=" not in line:
            continue
        key, value = (part.strip().lower() for part in line.split("=", 1))
        if key == "retention_hours":
            try:
                retention_hours = max(0, int(value))
            except ValueError:
                retention_hours = _FALLBACK_RETENTION_HOURS
        elif key in levels:
            levels[key] = _LEVELS.get(value, _FALLBACK_LEVEL)

    return LoggingSettings(
        terminal_level=levels["terminal"],
        sync_runs_level=levels["sync_runs"],
        retention_hours=retention_hours,
    )


__all__ = ["LoggingSettings", "parse_logging_settings"]
