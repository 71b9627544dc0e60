"""Durable, ordered queue of pending sync operations."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from ..store.database import Database
from ..store.entities import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger("studiosync.sync.queue")

DEFAULT_MAX_ATTEMPTS = 5


class OperationKind(str, Enum):
    """What a queued operation asks the remote to do."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationState(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    FAILED = "failed"    # retry ceiling hit or permanently rejected
    BLOCKED = "blocked"  # waiting on a manual conflict decision


def coalesce_kind(earlier: OperationKind, later: OperationKind) -> OperationKind:
    """Kind of the single operation left after merging two intents."""
    if later is OperationKind.DELETE or earlier is OperationKind.DELETE:
        return OperationKind.DELETE
    if earlier is OperationKind.CREATE:
        return OperationKind.CREATE
    return OperationKind.UPDATE


@dataclass
class SyncOperation:
    """A queued intent to propagate one entity's change."""

    op_id: str
    entity_type: str
    entity_id: str
    kind: OperationKind
    payload: Dict[str, Any]
    sync_version: int
    enqueued_at: datetime
    state: OperationState = OperationState.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    position: float = 0.0

    @classmethod
    def new(
        cls,
        entity_type: str,
        entity_id: str,
        kind: OperationKind,
        payload: Dict[str, Any],
        sync_version: int,
        enqueued_at: datetime,
    ) -> "SyncOperation":
        return cls(
            op_id=uuid.uuid4().hex,
            entity_type=entity_type,
            entity_id=entity_id,
            kind=kind,
            payload=dict(payload),
            sync_version=sync_version,
            enqueued_at=enqueued_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op_id": self.op_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "kind": self.kind.value,
            "payload": self.payload,
            "sync_version": self.sync_version,
            "enqueued_at": format_timestamp(self.enqueued_at),
            "state": self.state.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


def _row_to_operation(row: sqlite3.Row) -> SyncOperation:
    return SyncOperation(
        op_id=row["op_id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        kind=OperationKind(row["kind"]),
        payload=json.loads(row["payload"]),
        sync_version=int(row["sync_version"]),
        enqueued_at=parse_timestamp(row["enqueued_at"]),  # type: ignore[arg-type]
        state=OperationState(row["state"]),
        attempts=int(row["attempts"]),
        last_error=row["last_error"],
        position=float(row["position"]),
    )


class SyncBatch:
    """Handle over a dequeued batch; settles each operation exactly once."""

    def __init__(self, queue: "SyncQueue", operations: Sequence[SyncOperation]):
        self.queue = queue
        self.operations = list(operations)
        self._settled: set = set()

    def __iter__(self) -> Iterator[SyncOperation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def __bool__(self) -> bool:
        return bool(self.operations)

    def acknowledge(self, op_id: str) -> Optional[SyncOperation]:
        self._settled.add(op_id)
        return self.queue.acknowledge(op_id)

    def requeue(self, op_id: str, error: str) -> Optional[SyncOperation]:
        self._settled.add(op_id)
        return self.queue.requeue(op_id, error)

    def fail(self, op_id: str, error: str) -> Optional[SyncOperation]:
        self._settled.add(op_id)
        return self.queue.fail(op_id, error)

    def block(self, op: SyncOperation) -> int:
        self._settled.add(op.op_id)
        return self.queue.block(op.entity_id)

    def release_unsettled(self) -> int:
        """Return operations this run never attempted to the queue untouched."""
        remaining = [op.op_id for op in self.operations if op.op_id not in self._settled]
        self._settled.update(remaining)
        return self.queue.release(remaining)


class SyncQueue:
    """Durable FIFO of sync operations, persisted next to the entities.

    Operations keep their queue position when coalesced. A requeued operation
    moves to the front so retries run before newer work. Every method runs in
    a store transaction, so callers never lock anything themselves.
    """

    def __init__(
        self,
        db: Database,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.max_attempts = max(1, int(max_attempts))
        self.clock = clock

    # --- Lookups ---

    def get(self, op_id: str) -> Optional[SyncOperation]:
        row = self.db.fetchone("SELECT * FROM sync_queue WHERE op_id = ?", (op_id,))
        return _row_to_operation(row) if row else None

    def operations_for(self, entity_id: str) -> List[SyncOperation]:
        rows = self.db.fetchall(
            "SELECT * FROM sync_queue WHERE entity_id = ? ORDER BY position",
            (entity_id,),
        )
        return [_row_to_operation(row) for row in rows]

    def active_for(self, entity_id: str) -> Optional[SyncOperation]:
        """The pending (or conflict-blocked) operation new edits coalesce into."""
        row = self.db.fetchone(
            "SELECT * FROM sync_queue WHERE entity_id = ? AND state IN (?, ?) ORDER BY position LIMIT 1",
            (entity_id, OperationState.PENDING.value, OperationState.BLOCKED.value),
        )
        return _row_to_operation(row) if row else None

    def in_flight_for(self, entity_id: str) -> Optional[SyncOperation]:
        row = self.db.fetchone(
            "SELECT * FROM sync_queue WHERE entity_id = ? AND state = ? LIMIT 1",
            (entity_id, OperationState.SYNCING.value),
        )
        return _row_to_operation(row) if row else None

    def failed_for(self, entity_id: str) -> Optional[SyncOperation]:
        row = self.db.fetchone(
            "SELECT * FROM sync_queue WHERE entity_id = ? AND state = ? ORDER BY position LIMIT 1",
            (entity_id, OperationState.FAILED.value),
        )
        return _row_to_operation(row) if row else None

    def has_operations(self, entity_id: str) -> bool:
        """Whether work that will still be pushed is queued for the entity.

        Failed operations do not count; they wait for a retry or a new edit.
        """
        row = self.db.fetchone(
            "SELECT 1 FROM sync_queue WHERE entity_id = ? AND state != ? LIMIT 1",
            (entity_id, OperationState.FAILED.value),
        )
        return row is not None

    def pending(self, limit: Optional[int] = None) -> List[SyncOperation]:
        return self._by_state(OperationState.PENDING, limit)

    def failed(self) -> List[SyncOperation]:
        return self._by_state(OperationState.FAILED)

    def blocked(self) -> List[SyncOperation]:
        return self._by_state(OperationState.BLOCKED)

    def all(self) -> List[SyncOperation]:
        rows = self.db.fetchall("SELECT * FROM sync_queue ORDER BY position")
        return [_row_to_operation(row) for row in rows]

    def _by_state(self, state: OperationState, limit: Optional[int] = None) -> List[SyncOperation]:
        query = "SELECT * FROM sync_queue WHERE state = ? ORDER BY position"
        params: List[Any] = [state.value]
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        return [_row_to_operation(row) for row in self.db.fetchall(query, params)]

    def stats(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in OperationState}
        for row in self.db.fetchall("SELECT state, COUNT(*) AS n FROM sync_queue GROUP BY state"):
            counts[row["state"]] = int(row["n"])
        counts["total"] = sum(counts[state.value] for state in OperationState)
        return counts

    def __len__(self) -> int:
        row = self.db.fetchone("SELECT COUNT(*) AS n FROM sync_queue")
        return int(row["n"]) if row else 0

    # --- Writes used by the change tracker ---

    def enqueue(self, op: SyncOperation) -> SyncOperation:
        with self.db.transaction() as conn:
            op.position = self._back_position(conn)
            conn.execute(
                """
                INSERT INTO sync_queue
                    (op_id, entity_type, entity_id, kind, payload, sync_version,
                     state, position, enqueued_at, attempts, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    op.op_id,
                    op.entity_type,
                    op.entity_id,
                    op.kind.value,
                    json.dumps(op.payload, sort_keys=True),
                    op.sync_version,
                    op.state.value,
                    op.position,
                    format_timestamp(op.enqueued_at),
                    op.attempts,
                    op.last_error,
                ),
            )
        logger.debug("Enqueued %s %s/%s (%s)", op.kind.value, op.entity_type, op.entity_id, op.op_id)
        return op

    def coalesce(
        self,
        op: SyncOperation,
        kind: OperationKind,
        payload: Dict[str, Any],
        sync_version: int,
    ) -> SyncOperation:
        """Fold a newer intent into an existing pending operation in place."""
        op.kind = coalesce_kind(op.kind, kind)
        op.payload = dict(payload)
        op.sync_version = sync_version
        with self.db.transaction() as conn:
            self._write_body(conn, op)
        logger.debug("Coalesced %s into %s (%s)", kind.value, op.op_id, op.kind.value)
        return op

    def revive(
        self,
        op: SyncOperation,
        kind: OperationKind,
        payload: Dict[str, Any],
        sync_version: int,
    ) -> SyncOperation:
        """Fold a new edit into a failed operation and queue it again.

        The edit is the user's answer to the rejection, so the operation gets
        a fresh set of attempts at the back of the queue.
        """
        op.kind = coalesce_kind(op.kind, kind)
        op.payload = dict(payload)
        op.sync_version = sync_version
        op.attempts = 0
        op.last_error = None
        with self.db.transaction() as conn:
            op.position = self._back_position(conn)
            self._return_to_pending(conn, op)
        logger.info("Revived failed %s with a new %s", op.op_id, kind.value)
        return op

    def remove(self, op_id: str) -> bool:
        return self.db.execute("DELETE FROM sync_queue WHERE op_id = ?", (op_id,)) > 0

    def discard_for_entity(self, entity_id: str) -> int:
        """Drop every operation for an entity except one already in flight."""
        count = self.db.execute(
            "DELETE FROM sync_queue WHERE entity_id = ? AND state != ?",
            (entity_id, OperationState.SYNCING.value),
        )
        if count:
            logger.debug("Discarded %d operations for %s", count, entity_id)
        return count

    # --- Drain-side API ---

    def dequeue_batch(self, max_size: int) -> SyncBatch:
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE state = ? ORDER BY position LIMIT ?",
                (OperationState.PENDING.value, max(0, int(max_size))),
            ).fetchall()
            operations = [_row_to_operation(row) for row in rows]
            for op in operations:
                op.state = OperationState.SYNCING
                conn.execute(
                    "UPDATE sync_queue SET state = ? WHERE op_id = ?",
                    (op.state.value, op.op_id),
                )
        if operations:
            logger.debug("Dequeued %d operations", len(operations))
        return SyncBatch(self, operations)

    def acknowledge(self, op_id: str) -> Optional[SyncOperation]:
        """Remove a confirmed operation. Unknown ids are ignored."""
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE op_id = ?", (op_id,)).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM sync_queue WHERE op_id = ?", (op_id,))
        logger.debug("Acknowledged %s", op_id)
        return _row_to_operation(row)

    def requeue(self, op_id: str, error: str) -> Optional[SyncOperation]:
        """Count a failed attempt; back to the front, or failed at the ceiling."""
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE op_id = ?", (op_id,)).fetchone()
            if row is None:
                return None
            op = _row_to_operation(row)
            op.attempts += 1
            op.last_error = error
            if op.attempts >= self.max_attempts:
                op.state = OperationState.FAILED
                self._write_body(conn, op)
                logger.warning(
                    "Operation %s for %s/%s failed after %d attempts: %s",
                    op.op_id,
                    op.entity_type,
                    op.entity_id,
                    op.attempts,
                    error,
                )
                return op
            op.position = self._front_position(conn)
            self._return_to_pending(conn, op)
        logger.info("Requeued %s (attempt %d): %s", op.op_id, op.attempts, error)
        return op

    def release(self, op_ids: Sequence[str]) -> int:
        """Return in-flight operations to pending without counting an attempt."""
        released = 0
        with self.db.transaction() as conn:
            for op_id in op_ids:
                row = conn.execute("SELECT * FROM sync_queue WHERE op_id = ?", (op_id,)).fetchone()
                if row is None or row["state"] != OperationState.SYNCING.value:
                    continue
                self._return_to_pending(conn, _row_to_operation(row))
                released += 1
        return released

    def fail(self, op_id: str, error: str) -> Optional[SyncOperation]:
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE op_id = ?", (op_id,)).fetchone()
            if row is None:
                return None
            op = _row_to_operation(row)
            op.state = OperationState.FAILED
            op.last_error = error
            self._write_body(conn, op)
        return op

    def retry(self, op_id: str) -> Optional[SyncOperation]:
        """Give a failed operation a fresh set of attempts at the back."""
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE op_id = ?", (op_id,)).fetchone()
            if row is None:
                return None
            op = _row_to_operation(row)
            if op.state is not OperationState.FAILED:
                return op
            op.attempts = 0
            op.last_error = None
            op.position = self._back_position(conn)
            self._return_to_pending(conn, op)
        logger.info("Retrying %s", op_id)
        return op

    def block(self, entity_id: str) -> int:
        """Hold every operation for an entity until its conflict is decided."""
        return self.db.execute(
            "UPDATE sync_queue SET state = ? WHERE entity_id = ? AND state != ?",
            (OperationState.BLOCKED.value, entity_id, OperationState.BLOCKED.value),
        )

    def recover(self) -> int:
        """Revert in-flight operations after a restart; their outcome is unknown."""
        recovered = 0
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE state = ? ORDER BY position",
                (OperationState.SYNCING.value,),
            ).fetchall()
            for row in rows:
                self._return_to_pending(conn, _row_to_operation(row))
                recovered += 1
        if recovered:
            logger.info("Recovered %d interrupted operations", recovered)
        return recovered

    # --- Internals ---

    def _return_to_pending(self, conn: sqlite3.Connection, op: SyncOperation) -> None:
        """Mark ``op`` pending, absorbing any newer pending op for the entity."""
        layered = conn.execute(
            "SELECT * FROM sync_queue WHERE entity_id = ? AND state = ? AND op_id != ? ORDER BY position",
            (op.entity_id, OperationState.PENDING.value, op.op_id),
        ).fetchall()
        for row in layered:
            newer = _row_to_operation(row)
            op.kind = coalesce_kind(op.kind, newer.kind)
            op.payload = newer.payload
            op.sync_version = newer.sync_version
            conn.execute("DELETE FROM sync_queue WHERE op_id = ?", (newer.op_id,))
        op.state = OperationState.PENDING
        self._write_body(conn, op)

    def _write_body(self, conn: sqlite3.Connection, op: SyncOperation) -> None:
        conn.execute(
            """
            UPDATE sync_queue
               SET kind = ?, payload = ?, sync_version = ?, state = ?,
                   position = ?, attempts = ?, last_error = ?
             WHERE op_id = ?
            """,
            (
                op.kind.value,
                json.dumps(op.payload, sort_keys=True),
                op.sync_version,
                op.state.value,
                op.position,
                op.attempts,
                op.last_error,
                op.op_id,
            ),
        )

    @staticmethod
    def _back_position(conn: sqlite3.Connection) -> float:
        row = conn.execute("SELECT MAX(position) AS p FROM sync_queue").fetchone()
        return (row["p"] if row and row["p"] is not None else 0.0) + 1.0

    @staticmethod
    def _front_position(conn: sqlite3.Connection) -> float:
        row = conn.execute("SELECT MIN(position) AS p FROM sync_queue").fetchone()
        return (row["p"] if row and row["p"] is not None else 1.0) - 1.0


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "OperationKind",
    "OperationState",
    "SyncBatch",
    "SyncOperation",
    "SyncQueue",
    "coalesce_kind",
]
