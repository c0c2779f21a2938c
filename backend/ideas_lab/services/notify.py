"""
Notification service: transient operator notifications with throttle.

Levels:
  error  failed submissions / transitions (message from the backend)
  warn   form validation
  info   accepted commands

Throttle: same (level, title, message) is not shown twice within
NOTIFICATION_THROTTLE_SEC. Entries expire after NOTIFICATION_TTL_SEC.
"""
from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ideas_lab.settings import get_settings

logger = logging.getLogger(__name__)

ERROR = "error"
WARN = "warn"
INFO = "info"


@dataclass
class Notification:
    id: int
    level: str
    title: str
    message: str
    created_at: float
    payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "level": self.level,
            "title": self.title,
            "message": self.message,
            "payload": self.payload,
        }


class NotificationChannel:
    def __init__(
        self,
        ttl_sec: float | None = None,
        throttle_sec: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.ttl_sec = settings.notification_ttl_sec if ttl_sec is None else ttl_sec
        self.throttle_sec = settings.notification_throttle_sec if throttle_sec is None else throttle_sec
        self._clock = clock
        self._ids = itertools.count(1)
        self._items: list[Notification] = []
        self._throttle: dict[str, float] = {}

    def _should_send(self, key: str) -> bool:
        now = self._clock()
        last = self._throttle.get(key)
        if last is not None and now - last < self.throttle_sec:
            return False
        self._throttle[key] = now
        return True

    def _push(self, level: str, title: str, message: str, payload: Any = None) -> Notification | None:
        if not self._should_send(f"{level}:{title}:{message}"):
            logger.debug(f"[notify] throttled {level}: {title}")
            return None
        item = Notification(
            id=next(self._ids),
            level=level,
            title=title,
            message=message,
            created_at=self._clock(),
            payload=payload,
        )
        self._items.append(item)
        log = logger.warning if level == ERROR else logger.info
        log(f"[notify] {level}: {title}: {message}")
        return item

    def error(self, title: str, message: str, payload: Any = None) -> Notification | None:
        return self._push(ERROR, title, message, payload)

    def warn(self, title: str, message: str, payload: Any = None) -> Notification | None:
        return self._push(WARN, title, message, payload)

    def info(self, title: str, message: str, payload: Any = None) -> Notification | None:
        return self._push(INFO, title, message, payload)

    def active(self) -> list[Notification]:
        now = self._clock()
        self._items = [n for n in self._items if now - n.created_at < self.ttl_sec]
        return list(self._items)

    def dismiss(self, notification_id: int) -> bool:
        before = len(self._items)
        self._items = [n for n in self._items if n.id != notification_id]
        return len(self._items) != before

    def clear(self) -> None:
        self._items.clear()
        self._throttle.clear()
