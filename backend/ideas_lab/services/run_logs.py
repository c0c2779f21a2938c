from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import asdict, dataclass

from ideas_lab.schemas import AiRunLog, GenerationStatus


@dataclass
class RunLogsStats:
    total: int = 0
    success_count: int = 0
    failed_count: int = 0
    avg_latency_ms: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        return {
            "total": data["total"],
            "successCount": data["success_count"],
            "failedCount": data["failed_count"],
            "avgLatencyMs": data["avg_latency_ms"],
            "totalTokens": data["total_tokens"],
        }


def compute_logs_stats(logs: Sequence[AiRunLog]) -> RunLogsStats:
    if not logs:
        return RunLogsStats()
    return RunLogsStats(
        total=len(logs),
        success_count=sum(1 for log in logs if log.status == GenerationStatus.succeeded),
        failed_count=sum(1 for log in logs if log.status == GenerationStatus.failed),
        # missing latency counts as 0 in the average
        avg_latency_ms=math.floor(sum(log.latency_ms or 0 for log in logs) / len(logs) + 0.5),
        total_tokens=sum(log.tokens or 0 for log in logs),
    )
