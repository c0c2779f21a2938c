"""
Completion detection for the batch "generate ideas" command.

The backend acknowledges the batch with a job id only. Completion is inferred
from two baselines captured at submit time, whichever fires first:
  - the project's idea count grew past the count seen before submit
  - a run log with operation=ideas and a terminal status appeared that was
    not in the set of log ids seen before submit

There is no timeout: `waiting_seconds` lets the caller apply its own cap.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Iterable

from ideas_lab.schemas import AiOperation, AiRunLog

logger = logging.getLogger(__name__)


class BatchCompletionDetector:
    def __init__(self, project_id: str = "") -> None:
        self.project_id = project_id
        self.waiting = False
        self.ideas_count_before: int | None = None
        self.log_ids_before: frozenset[str] | None = None
        self.started_at: float | None = None
        self.completed_by: str | None = None

    def begin(self, ideas_count: int, logs: Iterable[AiRunLog]) -> None:
        self.waiting = True
        self.ideas_count_before = ideas_count
        self.log_ids_before = frozenset(log.id for log in logs if log.operation == AiOperation.ideas)
        self.started_at = time.monotonic()
        self.completed_by = None
        logger.info(
            f"[batch] project={self.project_id} waiting: ideas_before={ideas_count} "
            f"logs_before={len(self.log_ids_before)}"
        )

    def reset(self) -> None:
        self.waiting = False
        self.ideas_count_before = None
        self.log_ids_before = None
        self.started_at = None

    @property
    def waiting_seconds(self) -> float:
        if not self.waiting or self.started_at is None:
            return 0.0
        return time.monotonic() - self.started_at

    def _complete(self, reason: str) -> bool:
        logger.info(f"[batch] project={self.project_id} completed by {reason} after {self.waiting_seconds:.1f}s")
        self.reset()
        self.completed_by = reason
        return True

    def observe_ideas(self, ideas_count: int) -> bool:
        """Feed the live idea count. True if this observation completed the batch."""
        if not self.waiting or self.ideas_count_before is None:
            return False
        if ideas_count > self.ideas_count_before:
            return self._complete("ideas_count")
        return False

    def observe_logs(self, logs: Iterable[AiRunLog]) -> bool:
        """Feed the live run logs. True if this observation completed the batch."""
        if not self.waiting or self.log_ids_before is None:
            return False
        for log in logs:
            if log.operation != AiOperation.ideas or log.id in self.log_ids_before:
                continue
            if log.status.is_terminal:
                return self._complete("terminal_log")
        return False

    def to_dict(self) -> dict:
        return {
            "projectId": self.project_id,
            "waiting": self.waiting,
            "waitingSeconds": round(self.waiting_seconds, 1),
            "ideasCountBefore": self.ideas_count_before,
            "completedBy": self.completed_by,
        }
