"""
Operator preferences: raw string values by key.

Stored values are written by this module only, but are still parsed
defensively: a missing or corrupt value reads as the empty default.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from ideas_lab.models import ConsolePreference

logger = logging.getLogger(__name__)

SELECTED_IDEA_BY_PROJECT_KEY = "ideas-lab:selected-idea-by-project"
LOGS_COLLAPSED_KEY = "ideas-lab:logs-collapsed"


class PreferenceStore(ABC):
    @abstractmethod
    def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class InMemoryPreferenceStore(PreferenceStore):
    def __init__(self, initial: dict[str, str] | None = None):
        self._values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


class SqlPreferenceStore(PreferenceStore):
    """console_preferences table, one short session per call."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get(self, key: str) -> str | None:
        with self._session_factory() as session:
            return session.scalar(select(ConsolePreference.value).where(ConsolePreference.key == key))

    def set(self, key: str, value: str) -> None:
        with self._session_factory() as session:
            row = session.get(ConsolePreference, key)
            if row is None:
                session.add(ConsolePreference(key=key, value=value))
            else:
                row.value = value
            session.commit()

    def delete(self, key: str) -> None:
        with self._session_factory() as session:
            row = session.get(ConsolePreference, key)
            if row is not None:
                session.delete(row)
                session.commit()


# ── Typed helpers ────────────────────────────────────────────


class SelectedIdeaBookmarks:
    """Last selected idea per project, stored as one JSON object."""

    def __init__(self, store: PreferenceStore, key: str = SELECTED_IDEA_BY_PROJECT_KEY):
        self._store = store
        self._key = key

    def read_all(self) -> dict[str, str]:
        raw = self._store.get(self._key)
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning(f"[preferences] corrupt value under {self._key}, ignoring")
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {k: v for k, v in parsed.items() if isinstance(k, str) and isinstance(v, str) and v}

    def get(self, project_id: str) -> str | None:
        return self.read_all().get(project_id)

    def set(self, project_id: str, idea_id: str | None) -> None:
        data = self.read_all()
        if idea_id:
            data[project_id] = idea_id
        else:
            data.pop(project_id, None)
        self._store.set(self._key, json.dumps(data))

    def forget(self, project_id: str) -> None:
        self.set(project_id, None)


def read_logs_collapsed(store: PreferenceStore) -> bool:
    return store.get(LOGS_COLLAPSED_KEY) == "1"


def write_logs_collapsed(store: PreferenceStore, collapsed: bool) -> None:
    store.set(LOGS_COLLAPSED_KEY, "1" if collapsed else "0")


# Singleton, swapped for a SqlPreferenceStore on app startup
_store: PreferenceStore = InMemoryPreferenceStore()


def get_preference_store() -> PreferenceStore:
    return _store


def set_preference_store(store: PreferenceStore) -> None:
    global _store
    _store = store
