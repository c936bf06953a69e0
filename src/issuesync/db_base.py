"""Shared SQLite plumbing for the record store and the document store."""

from __future__ import annotations

import contextlib
import sqlite3
import threading
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

from issuesync.errors import TransientBackendError

EPOCH_ISO = "1970-01-01T00:00:00.000000+00:00"


def _now_iso() -> str:
    # Fixed microsecond precision keeps lexicographic order == chronological order.
    return datetime.now(UTC).isoformat(timespec="microseconds")


def _normalize_iso(value: str | datetime) -> str:
    """Return *value* as a UTC ISO timestamp with microsecond precision."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _bump_iso(value: str) -> str:
    """Return the timestamp one microsecond after *value*."""
    return _normalize_iso(datetime.fromisoformat(value) + timedelta(microseconds=1))


class SQLiteBackend:
    """Lazily-connected SQLite database with WAL mode and user_version stamping.

    Subclasses set ``SCHEMA_SQL`` and ``SCHEMA_VERSION``. The connection is
    opened with ``check_same_thread=False`` by default because the sync
    scheduler writes from a background thread; ``self._lock`` serializes
    access to it.
    """

    SCHEMA_SQL = ""
    SCHEMA_VERSION = 1

    def __init__(self, db_path: str | Path, *, check_same_thread: bool = False) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._check_same_thread = check_same_thread
        self._lock = threading.RLock()

    def __enter__(self) -> SQLiteBackend:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(
                    str(self.db_path),
                    isolation_level="DEFERRED",
                    check_same_thread=self._check_same_thread,
                )
            except sqlite3.OperationalError as exc:
                raise TransientBackendError(f"Cannot open {self.db_path}: {exc}") from exc
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def initialize(self) -> None:
        """Create tables on a fresh database and stamp the schema version."""
        with self._lock:
            current_version = self.get_schema_version()
            if current_version == 0:
                self.conn.executescript(self.SCHEMA_SQL)
                self.conn.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            elif current_version > self.SCHEMA_VERSION:
                msg = f"{self.db_path} has schema v{current_version}, newer than supported v{self.SCHEMA_VERSION}"
                raise RuntimeError(msg)
            self.conn.commit()

    def get_schema_version(self) -> int:
        result: int = self.conn.execute("PRAGMA user_version").fetchone()[0]
        return result

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one transaction; roll back and surface backend failures."""
        with self._lock:
            conn = self.conn
            try:
                yield conn
                conn.commit()
            except sqlite3.OperationalError as exc:
                conn.rollback()
                raise TransientBackendError(str(exc)) from exc
            except Exception:
                conn.rollback()
                raise

    @contextlib.contextmanager
    def _reading(self, error_cls: type[Exception] = TransientBackendError) -> Iterator[sqlite3.Connection]:
        """Run a read-only block, surfacing locked/unreadable databases as *error_cls*."""
        with self._lock:
            try:
                yield self.conn
            except sqlite3.OperationalError as exc:
                raise error_cls(str(exc)) from exc
