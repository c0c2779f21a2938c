"""
In-process value broadcast.

Publishers set a value; subscribers get an asyncio.Queue that receives every
published value and, on subscribe, the current one. A subscriber that missed
events only needs the latest value, so a full queue drops the oldest entry.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)


class ValueChannel:
    def __init__(self, name: str, initial: Any = None, max_queue: int = 16):
        self.name = name
        self._value = initial
        self._version = 0
        self._max_queue = max_queue
        self._subscribers: list[asyncio.Queue] = []

    @property
    def value(self) -> Any:
        return self._value

    @property
    def version(self) -> int:
        return self._version

    def publish(self, value: Any) -> int:
        self._value = value
        self._version += 1
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(value)
        logger.debug(f"[broadcast:{self.name}] v{self._version} to {len(self._subscribers)} subscribers")
        return self._version

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        if self._version > 0:
            queue.put_nowait(self._value)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
