"""Registry of managed database instances.

The registry is the source of truth for which instances exist; the
container runtime only knows about containers. Two implementations:

- :class:`InMemoryDatabaseRegistry` for tests and throwaway setups,
- :class:`SqliteDatabaseRegistry` persisting to a ``databases`` table.

Both store the full record, password included. Redaction happens in the
provisioner's read paths.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from shipyard.core.errors import DuplicateNameError
from shipyard.databases.models import DatabaseInstance, DatabaseStatus


@runtime_checkable
class DatabaseRegistry(Protocol):
    def add(self, instance: DatabaseInstance) -> None: ...

    def get(self, instance_id: str) -> DatabaseInstance | None: ...

    def get_by_name(self, name: str, environment: str) -> DatabaseInstance | None: ...

    def get_by_container(self, container_name: str) -> DatabaseInstance | None: ...

    def list(self) -> list[DatabaseInstance]: ...

    def update_status(self, instance_id: str, status: DatabaseStatus) -> None: ...

    def remove(self, instance_id: str) -> bool: ...


class InMemoryDatabaseRegistry:
    def __init__(self) -> None:
        self._instances: dict[str, DatabaseInstance] = {}

    def add(self, instance: DatabaseInstance) -> None:
        if self.get_by_name(instance.name, instance.environment) is not None:
            raise DuplicateNameError(
                f'Database "{instance.name}" already exists in {instance.environment} environment'
            )
        if self.get_by_container(instance.container_name) is not None:
            raise DuplicateNameError(f"Container {instance.container_name} is already registered")
        self._instances[instance.id] = instance.model_copy()

    def get(self, instance_id: str) -> DatabaseInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy() if instance else None

    def get_by_name(self, name: str, environment: str) -> DatabaseInstance | None:
        for instance in self._instances.values():
            if instance.name == name and instance.environment == environment:
                return instance.model_copy()
        return None

    def get_by_container(self, container_name: str) -> DatabaseInstance | None:
        for instance in self._instances.values():
            if instance.container_name == container_name:
                return instance.model_copy()
        return None

    def list(self) -> list[DatabaseInstance]:
        return sorted(
            (i.model_copy() for i in self._instances.values()),
            key=lambda i: i.created_at,
            reverse=True,
        )

    def update_status(self, instance_id: str, status: DatabaseStatus) -> None:
        if instance_id in self._instances:
            self._instances[instance_id].status = status

    def remove(self, instance_id: str) -> bool:
        return self._instances.pop(instance_id, None) is not None


_SCHEMA = """
CREATE TABLE IF NOT EXISTS databases (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    environment TEXT NOT NULL,
    container_name TEXT NOT NULL UNIQUE,
    host TEXT NOT NULL,
    port INTEGER NOT NULL,
    username TEXT NOT NULL,
    password TEXT,
    database TEXT NOT NULL,
    storage_path TEXT NOT NULL,
    ssl_mode TEXT NOT NULL DEFAULT 'prefer',
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL,
    UNIQUE (name, environment)
)
"""

_COLUMNS = (
    "id", "name", "environment", "container_name", "host", "port", "username",
    "password", "database", "storage_path", "ssl_mode", "status", "created_at",
)


class SqliteDatabaseRegistry:
    """Registry persisted in a SQLite file (``:memory:`` works too)."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute(_SCHEMA)
        self._conn.commit()

    def _row_to_instance(self, row: sqlite3.Row) -> DatabaseInstance:
        data: dict[str, Any] = dict(row)
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        return DatabaseInstance.model_validate(data)

    def add(self, instance: DatabaseInstance) -> None:
        values = instance.model_dump()
        values["status"] = instance.status.value
        values["created_at"] = instance.created_at.isoformat()
        placeholders = ", ".join("?" for _ in _COLUMNS)
        try:
            self._conn.execute(
                f"INSERT INTO databases ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                tuple(values[c] for c in _COLUMNS),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as exc:
            self._conn.rollback()
            raise DuplicateNameError(
                f'Database "{instance.name}" already exists in {instance.environment} environment',
                cause=exc,
            ) from exc

    def get(self, instance_id: str) -> DatabaseInstance | None:
        row = self._conn.execute("SELECT * FROM databases WHERE id = ?", (instance_id,)).fetchone()
        return self._row_to_instance(row) if row else None

    def get_by_name(self, name: str, environment: str) -> DatabaseInstance | None:
        row = self._conn.execute(
            "SELECT * FROM databases WHERE name = ? AND environment = ?", (name, environment)
        ).fetchone()
        return self._row_to_instance(row) if row else None

    def get_by_container(self, container_name: str) -> DatabaseInstance | None:
        row = self._conn.execute(
            "SELECT * FROM databases WHERE container_name = ?", (container_name,)
        ).fetchone()
        return self._row_to_instance(row) if row else None

    def list(self) -> list[DatabaseInstance]:
        rows = self._conn.execute("SELECT * FROM databases ORDER BY created_at DESC").fetchall()
        return [self._row_to_instance(r) for r in rows]

    def update_status(self, instance_id: str, status: DatabaseStatus) -> None:
        self._conn.execute("UPDATE databases SET status = ? WHERE id = ?", (status.value, instance_id))
        self._conn.commit()

    def remove(self, instance_id: str) -> bool:
        cursor = self._conn.execute("DELETE FROM databases WHERE id = ?", (instance_id,))
        self._conn.commit()
        return cursor.rowcount > 0

    def close(self) -> None:
        self._conn.close()


__all__ = ["DatabaseRegistry", "InMemoryDatabaseRegistry", "SqliteDatabaseRegistry"]
