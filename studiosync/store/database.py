"""SQLite storage shared by the entity store and the sync queue."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Union

from ..errors import PersistenceError
from .entities import ENTITY_TYPES

logger = logging.getLogger("studiosync.store.database")

SCHEMA_VERSION = 1
MEMORY_PATH = ":memory:"

_ENTITY_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS {table} (
        id TEXT PRIMARY KEY,
        payload TEXT NOT NULL,
        base_payload TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        sync_status TEXT NOT NULL,
        last_synced_at TEXT,
        sync_version INTEGER NOT NULL DEFAULT 1,
        remote_version INTEGER,
        deleted INTEGER NOT NULL DEFAULT 0
    )
"""

_SYNC_TABLES_SQL = (
    """
    CREATE TABLE IF NOT EXISTS sync_queue (
        op_id TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        payload TEXT NOT NULL,
        sync_version INTEGER NOT NULL,
        state TEXT NOT NULL,
        position REAL NOT NULL,
        enqueued_at TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sync_queue_position ON sync_queue(state, position)",
    "CREATE INDEX IF NOT EXISTS idx_sync_queue_entity ON sync_queue(entity_id)",
    """
    CREATE TABLE IF NOT EXISTS sync_conflicts (
        conflict_id TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        strategy TEXT NOT NULL,
        local TEXT NOT NULL,
        remote TEXT NOT NULL,
        remote_version INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_cursors (
        entity_type TEXT PRIMARY KEY,
        since TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER NOT NULL
    )
    """,
)


class Database:
    """Serialized access to a single SQLite connection.

    All reads and writes go through one re-entrant lock, so the foreground
    write path and the background sync thread never interleave statements.
    ``transaction()`` nests: only the outermost block commits or rolls back.
    """

    def __init__(self, path: Union[Path, str]):
        self.path = path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> "Database":
        if self._conn is not None:
            return self
        target = str(self.path)
        try:
            if target != MEMORY_PATH:
                Path(target).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(target, check_same_thread=False, isolation_level=None)
            conn.row_factory = sqlite3.Row
            if target != MEMORY_PATH:
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        except (sqlite3.Error, OSError) as exc:
            raise PersistenceError(f"Unable to open store at '{target}': {exc}") from exc
        self._conn = conn
        self._create_tables()
        logger.info("Opened store %s", target)
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.debug("Closed store %s", self.path)

    def _create_tables(self) -> None:
        with self.transaction() as conn:
            for entity_type in ENTITY_TYPES:
                conn.execute(_ENTITY_TABLE_SQL.format(table=entity_type))
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{entity_type}_status "
                    f"ON {entity_type}(sync_status)"
                )
            for statement in _SYNC_TABLES_SQL:
                conn.execute(statement)
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise PersistenceError("Store is not open.")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connection()
            outermost = self._depth == 0
            if outermost:
                try:
                    conn.execute("BEGIN IMMEDIATE")
                except sqlite3.Error as exc:
                    raise PersistenceError(f"Unable to start transaction: {exc}") from exc
            self._depth += 1
            try:
                yield conn
            except sqlite3.Error as exc:
                self._depth -= 1
                if outermost:
                    self._rollback(conn)
                raise PersistenceError(f"Storage failure: {exc}") from exc
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._rollback(conn)
                raise
            else:
                self._depth -= 1
                if outermost:
                    try:
                        conn.execute("COMMIT")
                    except sqlite3.Error as exc:
                        self._rollback(conn)
                        raise PersistenceError(f"Commit failed: {exc}") from exc

    def _rollback(self, conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as exc:  # pragma: no cover - connection already broken
            logger.critical("Rollback failed on %s: %s", self.path, exc)

    def fetchall(self, query: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._connection().execute(query, tuple(params)).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(f"Query failed: {exc}") from exc

    def fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            try:
                return self._connection().execute(query, tuple(params)).fetchone()
            except sqlite3.Error as exc:
                raise PersistenceError(f"Query failed: {exc}") from exc

    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        with self.transaction() as conn:
            return conn.execute(query, tuple(params)).rowcount

    def executemany(self, query: str, rows: Iterable[Sequence[Any]]) -> None:
        with self.transaction() as conn:
            conn.executemany(query, [tuple(row) for row in rows])


__all__ = ["Database", "MEMORY_PATH", "SCHEMA_VERSION"]
