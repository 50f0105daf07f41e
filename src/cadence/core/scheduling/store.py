"""Configuration store - persistence for schedule configurations.

Manifesto:
    The engine never owns persistence.  It talks to a ``ConfigurationStore``
    through four calls and survives restarts only because enabled
    configurations are written there.  Two stores ship with the package: an
    in-memory one for tests and embedding, and a SQLite one that keeps each
    configuration as a JSON document.

┌──────────────────────────────────────────────────────────────────────────────┐
│  CONFIGURATION STORE                                                          │
│                                                                               │
│   ConfigurationStore (Protocol)                                               │
│   ├── find(predicate, limit, offset) → list[ScheduleConfiguration]            │
│   ├── find_by_name(name)             → ScheduleConfiguration | None           │
│   ├── load(identity)                 → ScheduleConfiguration | None           │
│   └── save(configuration)            → ScheduleConfiguration (id assigned)    │
│                                                                               │
│   InMemoryConfigurationStore         SQLiteConfigurationStore                │
│   ┌───────────────────────────┐      ┌──────────────────────────────────┐    │
│   │ dict[id, document]        │      │ cadence_schedule_configurations  │    │
│   │ deep copies in and out    │      │  id | name | document | enabled  │    │
│   │ RLock                     │      │  created_at | updated_at         │    │
│   └───────────────────────────┘      └──────────────────────────────────┘    │
│                                                                               │
│  Every save is atomic per document and last-writer-wins.  Failures are       │
│  raised as StoreError.                                                        │
└──────────────────────────────────────────────────────────────────────────────┘

Tags:
    cadence, scheduling, store, repository, sqlite, persistence
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Protocol, runtime_checkable
from uuid import uuid4

from cadence.core.errors import StoreError
from cadence.core.logging import get_logger

from .models import ScheduleConfiguration, utc_now

logger = get_logger(__name__)

Predicate = Callable[[ScheduleConfiguration], bool]


@runtime_checkable
class ConfigurationStore(Protocol):
    """Persistence contract used by the coordinator and dispatch engine."""

    def find(
        self,
        predicate: Predicate | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ScheduleConfiguration]:
        """Configurations matching *predicate*, ordered by name, paged."""
        ...

    def find_by_name(self, name: str) -> ScheduleConfiguration | None: ...

    def load(self, identity: str) -> ScheduleConfiguration | None: ...

    def save(self, configuration: ScheduleConfiguration) -> ScheduleConfiguration:
        """Persist and return the stored copy (identity assigned on first save)."""
        ...


def _page(
    items: list[ScheduleConfiguration],
    predicate: Predicate | None,
    limit: int | None,
    offset: int,
) -> list[ScheduleConfiguration]:
    matched = [item for item in items if predicate is None or predicate(item)]
    end = None if limit is None else offset + limit
    return matched[offset:end]


class InMemoryConfigurationStore:
    """Dictionary-backed store.  Callers always receive deep copies."""

    def __init__(self) -> None:
        self._documents: dict[str, ScheduleConfiguration] = {}
        self._lock = threading.RLock()
        self.save_count = 0

    def find(
        self,
        predicate: Predicate | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ScheduleConfiguration]:
        with self._lock:
            ordered = sorted(self._documents.values(), key=lambda c: (c.name, c.id or ""))
            return [c.clone() for c in _page(ordered, predicate, limit, offset)]

    def find_by_name(self, name: str) -> ScheduleConfiguration | None:
        with self._lock:
            for configuration in self._documents.values():
                if configuration.name == name:
                    return configuration.clone()
        return None

    def load(self, identity: str) -> ScheduleConfiguration | None:
        with self._lock:
            configuration = self._documents.get(identity)
            return configuration.clone() if configuration else None

    def save(self, configuration: ScheduleConfiguration) -> ScheduleConfiguration:
        now = utc_now().isoformat()
        with self._lock:
            stored = configuration.clone()
            if not stored.id:
                stored.id = str(uuid4())
                stored.created_at = now
            elif not stored.created_at:
                existing = self._documents.get(stored.id)
                stored.created_at = existing.created_at if existing else now
            stored.updated_at = now
            self._documents[stored.id] = stored
            self.save_count += 1

        configuration.id = stored.id
        configuration.created_at = stored.created_at
        configuration.updated_at = stored.updated_at
        return stored.clone()

    def delete(self, identity: str) -> bool:
        with self._lock:
            return self._documents.pop(identity, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._documents)


class SQLiteConfigurationStore:
    """SQLite store keeping each configuration as a JSON document.

    The connection is opened with ``check_same_thread=False`` and guarded by
    a lock, because dispatch threads persist run outcomes concurrently.

    Example:
        >>> store = SQLiteConfigurationStore(":memory:")
        >>> saved = store.save(ScheduleConfiguration(name="nightly"))
        >>> store.load(saved.id).name
        'nightly'
    """

    TABLE = "cadence_schedule_configurations"

    _SCHEMA = f"""
        CREATE TABLE IF NOT EXISTS {TABLE} (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            document TEXT NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """

    def __init__(self, database: str | Path | sqlite3.Connection = ":memory:") -> None:
        if isinstance(database, sqlite3.Connection):
            self.conn = database
        else:
            if str(database) != ":memory:":
                Path(database).parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(database), check_same_thread=False)
        self._lock = threading.RLock()
        self._execute(self._SCHEMA)
        self.conn.commit()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StoreError(f"Configuration store query failed: {exc}", cause=exc) from exc

    def find(
        self,
        predicate: Predicate | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ScheduleConfiguration]:
        with self._lock:
            cursor = self._execute(f"SELECT document FROM {self.TABLE} ORDER BY name, id")
            configurations = [self._row_to_configuration(row) for row in cursor.fetchall()]
        return _page(configurations, predicate, limit, offset)

    def find_by_name(self, name: str) -> ScheduleConfiguration | None:
        with self._lock:
            cursor = self._execute(f"SELECT document FROM {self.TABLE} WHERE name = ?", (name,))
            row = cursor.fetchone()
        return self._row_to_configuration(row) if row else None

    def load(self, identity: str) -> ScheduleConfiguration | None:
        with self._lock:
            cursor = self._execute(f"SELECT document FROM {self.TABLE} WHERE id = ?", (identity,))
            row = cursor.fetchone()
        return self._row_to_configuration(row) if row else None

    def save(self, configuration: ScheduleConfiguration) -> ScheduleConfiguration:
        now = utc_now().isoformat()
        stored = configuration.clone()
        if not stored.id:
            stored.id = str(uuid4())
        if not stored.created_at:
            stored.created_at = now
        stored.updated_at = now

        document = json.dumps(stored.to_dict())
        with self._lock:
            try:
                self.conn.execute(
                    f"""
                    INSERT INTO {self.TABLE} (id, name, document, enabled, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        document = excluded.document,
                        enabled = excluded.enabled,
                        updated_at = excluded.updated_at
                    """,
                    (
                        stored.id,
                        stored.name,
                        document,
                        1 if stored.enabled else 0,
                        stored.created_at,
                        stored.updated_at,
                    ),
                )
                self.conn.commit()
            except sqlite3.Error as exc:
                self.conn.rollback()
                raise StoreError(
                    f"Failed to save configuration '{stored.name}': {exc}", cause=exc
                ).with_context(schedule_id=stored.id, schedule_name=stored.name) from exc

        configuration.id = stored.id
        configuration.created_at = stored.created_at
        configuration.updated_at = stored.updated_at
        return stored

    def delete(self, identity: str) -> bool:
        with self._lock:
            cursor = self._execute(f"DELETE FROM {self.TABLE} WHERE id = ?", (identity,))
            self.conn.commit()
        return cursor.rowcount > 0

    def close(self) -> None:
        self.conn.close()

    # === Private Helpers ===

    def _row_to_configuration(self, row: tuple) -> ScheduleConfiguration:
        try:
            return ScheduleConfiguration.from_dict(json.loads(row[0]))
        except (ValueError, TypeError) as exc:
            raise StoreError(f"Corrupt configuration document: {exc}", cause=exc) from exc


__all__ = [
    "ConfigurationStore",
    "InMemoryConfigurationStore",
    "Predicate",
    "SQLiteConfigurationStore",
]
