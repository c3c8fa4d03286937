"""
SQLite connection, schema and transaction handling.

Zero external dependencies (stdlib sqlite3). Uses WAL mode for concurrent
read safety. One connection is shared across worker threads and guarded by a
re-entrant lock; ``transaction()`` holds that lock until commit or rollback,
so a write is never half visible through this connection.

Schema: 2 tables, rule types and rules. The rule's embedding lives in the
rules row (JSON array) so the row is the durable source for every index
backend.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Sequence

from vector_rules.errors import DuplicateEntry, InvalidInput, StorageUnavailable

LOG = logging.getLogger("storage.database")

_SCHEMA_SQL = """
-- Rule categories
CREATE TABLE IF NOT EXISTS rule_types (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Rules with their embedding
CREATE TABLE IF NOT EXISTS rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_type_id INTEGER NOT NULL REFERENCES rule_types(id) ON DELETE RESTRICT,
    content_json TEXT NOT NULL,
    embedding_json TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_rules_type ON rules(rule_type_id);
CREATE INDEX IF NOT EXISTS idx_rules_created ON rules(created_at);
"""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Map sqlite3 errors onto the service error taxonomy."""
    try:
        yield
    except sqlite3.IntegrityError as exc:
        message = str(exc)
        if "UNIQUE" in message:
            raise DuplicateEntry(f"{action}: duplicate entry") from exc
        if "FOREIGN KEY" in message:
            raise InvalidInput(f"{action}: referenced by existing rows") from exc
        raise StorageUnavailable(f"{action}: {message}") from exc
    except sqlite3.Error as exc:
        raise StorageUnavailable(f"{action}: {exc}") from exc


class Database:
    """SQLite database holding rule types and rules."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._depth = 0
        with translate_errors("open database"):
            # Autocommit mode; transaction() issues BEGIN/COMMIT itself.
            self._conn = sqlite3.connect(
                self._db_path, check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            if self._db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._init_schema()
        LOG.info("Database ready at %s", self._db_path)

    def _init_schema(self) -> None:
        """Create tables and indexes (idempotent)."""
        self._conn.executescript(_SCHEMA_SQL)

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically.

        Commits when the outermost block exits cleanly and rolls back on any
        exception. Nested blocks join the outer transaction.
        """
        with self._lock:
            outer = self._depth == 0
            if outer:
                with translate_errors("begin transaction"):
                    self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if outer:
                    self._rollback()
                raise
            self._depth -= 1
            if outer:
                try:
                    with translate_errors("commit transaction"):
                        self._conn.execute("COMMIT")
                except StorageUnavailable:
                    self._rollback()
                    raise

    @contextmanager
    def locked(self) -> Iterator[None]:
        """
        Hold the connection lock without opening a transaction.

        Blocks until any in-progress transaction has committed or rolled
        back, so state kept beside the database (an external vector index)
        is read consistently with the rows.
        """
        with self._lock:
            yield

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            LOG.error("Rollback failed on %s: %s", self._db_path, exc)

    def execute(self, sql: str, params: Sequence[Any] = (), action: str = "execute") -> sqlite3.Cursor:
        with self._lock, translate_errors(action):
            return self._conn.execute(sql, params)

    def fetchone(self, sql: str, params: Sequence[Any] = (), action: str = "query") -> sqlite3.Row | None:
        with self._lock, translate_errors(action):
            return self._conn.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Sequence[Any] = (), action: str = "query") -> list[sqlite3.Row]:
        with self._lock, translate_errors(action):
            return self._conn.execute(sql, params).fetchall()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
