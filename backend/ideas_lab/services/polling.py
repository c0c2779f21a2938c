"""
Polling decisions and per-collection poll loops.

Each collection (idea list, idea detail, run logs) decides on its own after
every completed fetch whether to poll again. A decision is either an interval
in seconds or None, meaning stop. Loops never share a timer.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Generic, TypeVar

from ideas_lab.schemas import GenerationStatus, Idea, IdeaDetails

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTIVE_STATUSES = frozenset({GenerationStatus.queued, GenerationStatus.running})


def _is_active(status: GenerationStatus | None) -> bool:
    return status in ACTIVE_STATUSES


def idea_has_active_work(idea: Idea) -> bool:
    return any(
        _is_active(status)
        for status in (
            idea.status,
            idea.latest_script.status if idea.latest_script else None,
            idea.latest_caption.status if idea.latest_caption else None,
            idea.latest_image_status,
            idea.latest_video_status,
        )
    )


def ideas_have_active_work(ideas: Iterable[Idea]) -> bool:
    return any(idea_has_active_work(idea) for idea in ideas)


def details_have_active_work(details: IdeaDetails) -> bool:
    artifacts: list[Any] = [*details.scripts, *details.captions, *details.assets]
    return any(_is_active(item.status) for item in artifacts)


def next_ideas_interval(ideas: Iterable[Idea], waiting_for_batch: bool, interval: float) -> float | None:
    if waiting_for_batch or ideas_have_active_work(ideas):
        return interval
    return None


def next_details_interval(details: IdeaDetails | None, interval: float) -> float | None:
    if details is not None and details_have_active_work(details):
        return interval
    return None


def next_logs_interval(ideas: Iterable[Idea], waiting_for_batch: bool, interval: float) -> float | None:
    # run logs follow the idea list: new logs only appear while ideas have work
    return next_ideas_interval(ideas, waiting_for_batch, interval)


class CollectionPoller(Generic[T]):
    """fetch -> decide -> sleep or stop, as one asyncio task per collection.

    A failed fetch keeps the previous decision. With no previous decision
    (first fetch failed) the loop stops; ensure_running() starts it again.
    """

    def __init__(
        self,
        name: str,
        fetch: Callable[[], Awaitable[T]],
        decide: Callable[[T], float | None],
    ):
        self.name = name
        self._fetch = fetch
        self._decide = decide
        self._task: asyncio.Task | None = None
        self.last_interval: float | None = None
        self.fetch_count = 0
        self.error_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def ensure_running(self) -> bool:
        """Start the loop unless it is already running. True if started."""
        if self.running:
            return False
        self.last_interval = None
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=f"poller:{self.name}")
        logger.debug(f"[poller:{self.name}] started")
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"[poller:{self.name}] stopped")

    async def _loop(self) -> None:
        while True:
            try:
                snapshot = await self._fetch()
            except Exception as exc:
                self.error_count += 1
                logger.warning(f"[poller:{self.name}] fetch failed: {exc}")
            else:
                self.fetch_count += 1
                self.last_interval = self._decide(snapshot)
            if self.last_interval is None:
                logger.debug(f"[poller:{self.name}] no active work, stopping")
                return
            await asyncio.sleep(self.last_interval)
