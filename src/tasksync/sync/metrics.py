"""Per-phase batch metrics."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class SyncMetrics:
    sent_sub_batches: int = 0
    attempts: int = 0
    total_wait_ms: int = 0
    batch_latencies_ms: list[float] = field(default_factory=list)
    status_counts: dict[int, int] = field(default_factory=dict)

    def record_status(self, status: int) -> None:
        self.status_counts[status] = self.status_counts.get(status, 0) + 1

    def percentile(self, pct: float) -> float:
        """Nearest-rank percentile of the sub-batch latencies."""

        ordered = sorted(self.batch_latencies_ms)
        if not ordered:
            return 0.0
        index = min(len(ordered) - 1, max(0, math.ceil(pct / 100 * len(ordered)) - 1))
        return ordered[index]

    def summary(self) -> dict[str, Any]:
        latencies = self.batch_latencies_ms
        average = sum(latencies) / len(latencies) if latencies else 0.0
        return {
            "batches": self.sent_sub_batches,
            "attempts": self.attempts,
            "wait_ms": self.total_wait_ms,
            "avg_ms": round(average, 1),
            "p50_ms": round(self.percentile(50), 1),
            "p95_ms": round(self.percentile(95), 1),
            "p99_ms": round(self.percentile(99), 1),
            "statuses": dict(sorted(self.status_counts.items())),
        }

    def log_summary(self, title: str, logger: logging.Logger) -> None:
        data = self.summary()
        statuses = ", ".join(f"{code}:{count}" for code, count in data["statuses"].items())
        logger.info(
            "[metrics] %s: batches=%d, attempts=%d, waitMs=%d, avg=%.1fms, "
            "p50=%.1fms, p95=%.1fms, p99=%.1fms, statuses={%s}",
            title,
            data["batches"],
            data["attempts"],
            data["wait_ms"],
            data["avg_ms"],
            data["p50_ms"],
            data["p95_ms"],
            data["p99_ms"],
            statuses,
        )


__all__ = ["SyncMetrics"]
