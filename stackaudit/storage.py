"""Persistent key/value stores backing sync state, job handles and triggers.

All values are JSON encoded strings. The typed repositories layered on top
(:mod:`stackaudit.sync_state`, :mod:`stackaudit.jobs`,
:mod:`stackaudit.scheduling`) own the key namespaces; nothing else should
compose keys by hand.
"""
from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from stackaudit import app_paths

KV_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""


class StorageError(Exception):
    """Raised when the underlying key/value store cannot be read or written."""


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def list_keys(self) -> List[str]:
        ...


class MemoryKeyValueStore:
    """Process-local store used by tests and dry runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


class SqliteKeyValueStore:
    """Store values in a single SQLite table keyed by string."""

    def __init__(self, path: Union[str, Path, None] = None) -> None:
        self._path = Path(path) if path else app_paths.data_path("state.sqlite3")
        self._lock = threading.Lock()
        if self._path.parent and not self._path.parent.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._execute(KV_TABLE_SQL)

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        try:
            connection = sqlite3.connect(str(self._path), timeout=10)
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to open state database {self._path}: {exc}") from exc
        connection.row_factory = sqlite3.Row
        return connection

    def _execute(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            connection = self._connect()
            try:
                with connection:
                    cursor = connection.execute(sql, params)
                    return cursor.fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"State database error: {exc}") from exc
            finally:
                connection.close()

    def get(self, key: str) -> Optional[str]:
        rows = self._execute("SELECT value FROM kv_store WHERE key = ?", (key,))
        if not rows:
            return None
        return rows[0]["value"]

    def set(self, key: str, value: str) -> None:
        self._execute(
            "INSERT INTO kv_store(key, value) VALUES(?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )

    def delete(self, key: str) -> None:
        self._execute("DELETE FROM kv_store WHERE key = ?", (key,))

    def list_keys(self) -> List[str]:
        rows = self._execute("SELECT key FROM kv_store ORDER BY key")
        return [row["key"] for row in rows]


__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqliteKeyValueStore",
    "StorageError",
]
