"""Durable storage backends for the offline cache.

A storage holds one serialized value per key. The offline store always writes
the whole queue, so backends only need whole-value replacement.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import duckdb

from monitor.errors import PersistenceFailure


class CacheStorage(Protocol):
    """A synchronous key/value store for serialized cache queues.

    Implementations raise `PersistenceFailure` when the backing store is unusable.
    """

    def read(self, key: str) -> str | None:
        """Return the stored value for `key`, or None if absent."""

    def write(self, key: str, data: str) -> None:
        """Replace the stored value for `key`."""

    def close(self) -> None:
        """Close any underlying resources."""


class InMemoryCacheStorage:
    """In-memory storage for tests and hosts without a writable disk."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        """Create a storage, optionally pre-populated (e.g. to simulate a restart)."""
        self._lock = threading.Lock()
        self._values: dict[str, str] = dict(initial or {})
        self.writes = 0

    def read(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def write(self, key: str, data: str) -> None:
        with self._lock:
            self._values[key] = data
            self.writes += 1

    def close(self) -> None:  # noqa: D401 - keep interface consistent
        """No-op."""


@dataclass(frozen=True)
class DuckDBOptions:
    path: Path
    table: str = "offline_cache"


class DuckDBCacheStorage:
    """DuckDB storage for durable local persistence across restarts."""

    def __init__(self, *, path: str | Path, table: str = "offline_cache") -> None:
        """Create (or open) a DuckDB-backed storage at the given path."""
        self._opts = DuckDBOptions(path=Path(path), table=table)
        self._lock = threading.Lock()
        try:
            self._conn = duckdb.connect(str(self._opts.path))
            self._ensure_schema()
        except duckdb.Error as exc:
            raise PersistenceFailure(f"Cannot open cache database at {self._opts.path}: {exc}") from exc

    def _ensure_schema(self) -> None:
        """Create the backing table if it does not exist yet."""
        create_sql = f"""
        create table if not exists {self._opts.table} (
          cache_key varchar primary key,
          payload_json varchar not null
        )
        """
        with self._lock:
            self._conn.execute(create_sql)

    def read(self, key: str) -> str | None:
        select_sql = f"select payload_json from {self._opts.table} where cache_key = ?"
        try:
            with self._lock:
                row = self._conn.execute(select_sql, [key]).fetchone()
        except duckdb.Error as exc:
            raise PersistenceFailure(f"Cannot read {key!r}: {exc}") from exc
        return None if row is None else row[0]

    def write(self, key: str, data: str) -> None:
        """Replace the row for `key` inside a single transaction."""
        try:
            with self._lock:
                self._conn.execute("begin transaction")
                try:
                    self._conn.execute(f"delete from {self._opts.table} where cache_key = ?", [key])
                    self._conn.execute(f"insert into {self._opts.table} (cache_key, payload_json) values (?, ?)", [key, data])
                except duckdb.Error:
                    self._conn.execute("rollback")
                    raise
                self._conn.execute("commit")
        except duckdb.Error as exc:
            raise PersistenceFailure(f"Cannot write {key!r}: {exc}") from exc

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        with self._lock:
            self._conn.close()
