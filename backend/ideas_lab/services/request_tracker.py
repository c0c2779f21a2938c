"""
Pending stage commands, keyed by (idea, stage, regenerate).

Advisory state only: it tells the resolver which actions to show as loading /
disabled, it does not lock anything on the backend.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ideas_lab.schemas import Stage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingKey:
    idea_id: str
    stage: Stage
    regenerate: bool = False


class RequestTracker:
    def __init__(self) -> None:
        self._pending: dict[tuple[str, Stage], PendingKey] = {}

    def mark_pending(self, key: PendingKey) -> bool:
        """Record a command in flight. False if the same (idea, stage) already is."""
        slot = (key.idea_id, key.stage)
        if slot in self._pending:
            logger.debug(f"[tracker] already pending: {self._pending[slot]}")
            return False
        self._pending[slot] = key
        return True

    def is_pending(self, key: PendingKey) -> bool:
        return self._pending.get((key.idea_id, key.stage)) == key

    def is_stage_pending(self, idea_id: str, stage: Stage) -> bool:
        return (idea_id, stage) in self._pending

    def clear(self, key: PendingKey) -> bool:
        slot = (key.idea_id, key.stage)
        if self._pending.get(slot) != key:
            return False
        del self._pending[slot]
        return True

    def pending_for(self, idea_id: str) -> list[PendingKey]:
        return [key for (owner, _), key in self._pending.items() if owner == idea_id]

    def __len__(self) -> int:
        return len(self._pending)
