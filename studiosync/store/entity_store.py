"""Entity store: the only read/write path for studio records."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
    Union,
)

from ..errors import ConcurrentModificationError, InputError, NotFoundError
from .database import Database
from .entities import (
    ENTITY_TYPES,
    EntityRecord,
    EntitySnapshot,
    SyncMetadata,
    SyncStatus,
    entity_class,
    format_timestamp,
    new_entity_id,
    parse_timestamp,
    utcnow,
)

if TYPE_CHECKING:  # pragma: no cover
    from ..sync.tracker import ChangeTracker

logger = logging.getLogger("studiosync.store")

R = TypeVar("R", bound=EntityRecord)
Mutator = Union[Callable[[Any], None], Mapping[str, Any]]
Predicate = Callable[[Any], bool]

_KEEP_STATUS = (SyncStatus.SYNCING, SyncStatus.CONFLICT)


def _row_to_record(entity_type: str, row: sqlite3.Row) -> EntityRecord:
    meta = SyncMetadata(
        id=row["id"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
        sync_status=SyncStatus(row["sync_status"]),
        last_synced_at=parse_timestamp(row["last_synced_at"]),
        sync_version=int(row["sync_version"]),
        remote_version=row["remote_version"],
        deleted=bool(row["deleted"]),
    )
    return entity_class(entity_type).from_payload(json.loads(row["payload"]), meta=meta)


def _table(entity_type: str) -> str:
    # Table names come from the closed entity registry, never from callers.
    entity_class(entity_type)
    return entity_type


class EntityStore:
    """Exclusive authority over entity reads and writes.

    Every write records a sync operation through the change tracker in the
    same transaction. Reads return copies, so callers never hold live rows.
    """

    def __init__(
        self,
        db: Database,
        tracker: "ChangeTracker",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.tracker = tracker
        self.clock = clock

    # --- Foreground write path ---

    def create(self, record: R) -> R:
        now = self.clock()
        stored = record.copy()
        stored.meta = SyncMetadata(
            id=record.meta.id or new_entity_id(),
            created_at=now,
            updated_at=now,
            sync_status=SyncStatus.PENDING,
            sync_version=1,
        )
        table = _table(stored.entity_type)
        with self.db.transaction() as conn:
            exists = conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (stored.id,)).fetchone()
            if exists:
                raise InputError(f"{stored.entity_type} '{stored.id}' already exists.")
            self._insert(conn, stored)
            self.tracker.record_create(stored)
        logger.debug("Created %s %s", stored.entity_type, stored.id)
        return stored.copy()

    def update(self, record: R, mutator: Optional[Mutator] = None) -> R:
        """Apply a field-level change to the entity ``record`` was read from.

        ``mutator`` is either a callable that edits a copy in place or a
        mapping of field values. Without one, the fields of ``record`` are
        taken as the new state.
        """
        cls = type(record)
        with self.db.transaction() as conn:
            current = self._load(conn, record.entity_type, record.id)
            if current is None or current.meta.deleted:
                raise NotFoundError(
                    "Cannot update a missing entity.",
                    entity_type=record.entity_type,
                    entity_id=record.id,
                )
            if current.meta.sync_version != record.meta.sync_version:
                raise ConcurrentModificationError(
                    f"Entity changed since it was read (stored v{current.meta.sync_version}, "
                    f"caller read v{record.meta.sync_version}).",
                    entity_type=record.entity_type,
                    entity_id=record.id,
                    expected_version=record.meta.sync_version,
                    actual_version=current.meta.sync_version,
                )

            updated = self._apply_mutation(cls, current, record, mutator)
            meta = current.meta
            meta.updated_at = self.clock()
            meta.sync_version += 1
            if meta.sync_status not in _KEEP_STATUS:
                meta.sync_status = SyncStatus.PENDING
            updated.meta = meta
            self._write(conn, updated)
            self.tracker.record_update(updated)
        logger.debug("Updated %s %s to v%d", updated.entity_type, updated.id, updated.meta.sync_version)
        return updated.copy()

    def delete(self, record: EntityRecord) -> bool:
        """Delete an entity; returns True when it was removed physically.

        Entities the remote never saw go away at once. Anything else becomes a
        tombstone with a queued delete, removed once the remote confirms.
        """
        with self.db.transaction() as conn:
            current = self._load(conn, record.entity_type, record.id)
            if current is None or current.meta.deleted:
                raise NotFoundError(
                    "Cannot delete a missing entity.",
                    entity_type=record.entity_type,
                    entity_id=record.id,
                )
            in_flight = self.tracker.queue.in_flight_for(current.id)
            if current.meta.last_synced_at is None and in_flight is None:
                self._purge(conn, current.entity_type, current.id)
                self.tracker.forget(current.id)
                logger.debug("Removed unsynced %s %s", current.entity_type, current.id)
                return True

            meta = current.meta
            meta.deleted = True
            meta.updated_at = self.clock()
            meta.sync_version += 1
            if meta.sync_status not in _KEEP_STATUS:
                meta.sync_status = SyncStatus.PENDING
            self._write(conn, current)
            self.tracker.record_delete(current)
        logger.debug("Tombstoned %s %s", current.entity_type, current.id)
        return False

    # --- Reads ---

    def get(
        self,
        entity_type: Union[str, Type[R]],
        entity_id: str,
        *,
        include_deleted: bool = False,
    ) -> Optional[R]:
        type_name = self._type_name(entity_type)
        row = self.db.fetchone(f"SELECT * FROM {_table(type_name)} WHERE id = ?", (entity_id,))
        if row is None:
            return None
        record = _row_to_record(type_name, row)
        if record.meta.deleted and not include_deleted:
            return None
        return record  # type: ignore[return-value]

    def require(self, entity_type: Union[str, Type[R]], entity_id: str) -> R:
        record = self.get(entity_type, entity_id)
        if record is None:
            raise NotFoundError(
                "Entity not found.",
                entity_type=self._type_name(entity_type),
                entity_id=entity_id,
            )
        return record

    def query(
        self,
        entity_type: Union[str, Type[R]],
        predicate: Optional[Predicate] = None,
        *,
        include_deleted: bool = False,
    ) -> List[R]:
        """Snapshot of matching entities, oldest first."""
        type_name = self._type_name(entity_type)
        sql = f"SELECT * FROM {_table(type_name)}"
        if not include_deleted:
            sql += " WHERE deleted = 0"
        sql += " ORDER BY created_at, id"
        records = [_row_to_record(type_name, row) for row in self.db.fetchall(sql)]
        if predicate is not None:
            records = [record for record in records if predicate(record)]
        return records  # type: ignore[return-value]

    def count(self, entity_type: Union[str, Type[EntityRecord]]) -> int:
        type_name = self._type_name(entity_type)
        row = self.db.fetchone(f"SELECT COUNT(*) AS n FROM {_table(type_name)} WHERE deleted = 0")
        return int(row["n"]) if row else 0

    def by_status(self, *statuses: SyncStatus) -> List[EntityRecord]:
        """Entities across all types in any of ``statuses`` (tombstones included)."""
        wanted = [status.value for status in statuses]
        placeholders = ", ".join("?" for _ in wanted)
        results: List[EntityRecord] = []
        for type_name in ENTITY_TYPES:
            rows = self.db.fetchall(
                f"SELECT * FROM {type_name} WHERE sync_status IN ({placeholders}) ORDER BY updated_at",
                wanted,
            )
            results.extend(_row_to_record(type_name, row) for row in rows)
        return results

    def status_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in SyncStatus}
        for type_name in ENTITY_TYPES:
            for row in self.db.fetchall(
                f"SELECT sync_status, COUNT(*) AS n FROM {type_name} GROUP BY sync_status"
            ):
                counts[row["sync_status"]] += int(row["n"])
        return counts

    def base_payload(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """The payload both sides last agreed on, if the entity was ever synced."""
        row = self.db.fetchone(
            f"SELECT base_payload FROM {_table(entity_type)} WHERE id = ?", (entity_id,)
        )
        if row is None or row["base_payload"] is None:
            return None
        return json.loads(row["base_payload"])

    def snapshot(self, record: EntityRecord) -> EntitySnapshot:
        return EntitySnapshot(
            entity_type=record.entity_type,
            entity_id=record.id,
            payload=record.to_payload(),
            updated_at=record.meta.updated_at,  # type: ignore[arg-type]
            sync_version=record.meta.sync_version,
            deleted=record.meta.deleted,
        )

    # --- Sync-side writes (no local version bump) ---

    def mark_syncing(self, entity_type: str, entity_id: str) -> None:
        self._set_status(entity_type, entity_id, SyncStatus.SYNCING)

    def mark_error(self, entity_type: str, entity_id: str) -> None:
        self._set_status(entity_type, entity_id, SyncStatus.ERROR)

    def mark_pending(self, entity_type: str, entity_id: str) -> None:
        self._set_status(entity_type, entity_id, SyncStatus.PENDING)

    def mark_conflict(self, entity_type: str, entity_id: str, seen_at: datetime) -> None:
        self.db.execute(
            f"UPDATE {_table(entity_type)} SET sync_status = ?, "
            "last_synced_at = COALESCE(last_synced_at, ?) WHERE id = ?",
            (SyncStatus.CONFLICT.value, format_timestamp(seen_at), entity_id),
        )

    def mark_synced(
        self,
        entity_type: str,
        entity_id: str,
        *,
        payload: Dict[str, Any],
        server_version: int,
        synced_at: datetime,
        still_pending: bool = False,
    ) -> Optional[EntityRecord]:
        """Record a confirmed push of ``payload``.

        ``still_pending`` keeps the entity pending because a newer local edit
        is queued behind the confirmed one.
        """
        status = SyncStatus.PENDING if still_pending else SyncStatus.SYNCED
        table = _table(entity_type)
        with self.db.transaction() as conn:
            current = self._load(conn, entity_type, entity_id)
            if current is None:
                return None
            conn.execute(
                f"""
                UPDATE {table}
                   SET sync_status = ?, last_synced_at = ?, remote_version = ?,
                       sync_version = MAX(sync_version, ?), base_payload = ?
                 WHERE id = ?
                """,
                (
                    status.value,
                    format_timestamp(synced_at),
                    server_version,
                    server_version,
                    json.dumps(payload, sort_keys=True),
                    entity_id,
                ),
            )
        return self.get(entity_type, entity_id, include_deleted=True)

    def apply_remote(
        self,
        entity_type: str,
        entity_id: str,
        payload: Dict[str, Any],
        *,
        sync_version: int,
        remote_version: int,
        updated_at: datetime,
        synced_at: datetime,
        status: SyncStatus = SyncStatus.SYNCED,
        base_payload: Optional[Dict[str, Any]] = None,
        deleted: bool = False,
    ) -> EntityRecord:
        """Write a remote (or resolved) version over the local row."""
        cls = entity_class(entity_type)
        body = dict(payload)
        body["id"] = entity_id
        record = cls.from_payload(body)
        with self.db.transaction() as conn:
            current = self._load(conn, entity_type, entity_id)
            record.meta = SyncMetadata(
                id=entity_id,
                created_at=current.meta.created_at if current else updated_at,
                updated_at=updated_at,
                sync_status=status,
                last_synced_at=synced_at,
                sync_version=sync_version,
                remote_version=remote_version,
                deleted=deleted,
            )
            base = base_payload if base_payload is not None else record.to_payload()
            if current is None:
                self._insert(conn, record, base_payload=base)
            else:
                self._write(conn, record, base_payload=base)
        logger.debug("Applied remote %s %s v%d", entity_type, entity_id, sync_version)
        return record.copy()

    def purge(self, entity_type: str, entity_id: str) -> bool:
        with self.db.transaction() as conn:
            return self._purge(conn, entity_type, entity_id)

    def recover(self) -> int:
        """Entities left mid-push by a crash go back to pending."""
        recovered = 0
        with self.db.transaction() as conn:
            for type_name in ENTITY_TYPES:
                cursor = conn.execute(
                    f"UPDATE {type_name} SET sync_status = ? WHERE sync_status = ?",
                    (SyncStatus.PENDING.value, SyncStatus.SYNCING.value),
                )
                recovered += cursor.rowcount
        return recovered

    # --- Internals ---

    @staticmethod
    def _type_name(entity_type: Union[str, Type[EntityRecord]]) -> str:
        if isinstance(entity_type, str):
            return entity_type
        return entity_type.entity_type

    @staticmethod
    def _apply_mutation(
        cls: Type[EntityRecord],
        current: EntityRecord,
        record: EntityRecord,
        mutator: Optional[Mutator],
    ) -> EntityRecord:
        working = current.copy()
        if mutator is None:
            for name in cls.field_names():
                setattr(working, name, getattr(record, name))
        elif callable(mutator):
            mutator(working)
        else:
            allowed = set(cls.field_names())
            unknown = [name for name in mutator if name not in allowed]
            if unknown:
                raise InputError(f"Unknown {cls.entity_type} fields: {', '.join(sorted(unknown))}")
            for name, value in mutator.items():
                setattr(working, name, value)
        # Round-trip through the payload to coerce enum and datetime values.
        return cls.from_payload(working.to_payload(), meta=working.meta)

    def _load(self, conn: sqlite3.Connection, entity_type: str, entity_id: str) -> Optional[EntityRecord]:
        row = conn.execute(f"SELECT * FROM {_table(entity_type)} WHERE id = ?", (entity_id,)).fetchone()
        return _row_to_record(entity_type, row) if row else None

    def _set_status(self, entity_type: str, entity_id: str, status: SyncStatus) -> None:
        self.db.execute(
            f"UPDATE {_table(entity_type)} SET sync_status = ? WHERE id = ?",
            (status.value, entity_id),
        )

    def _insert(
        self,
        conn: sqlite3.Connection,
        record: EntityRecord,
        base_payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        meta = record.meta
        conn.execute(
            f"""
            INSERT INTO {_table(record.entity_type)}
                (id, payload, base_payload, created_at, updated_at, sync_status,
                 last_synced_at, sync_version, remote_version, deleted)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                meta.id,
                json.dumps(record.to_payload(), sort_keys=True),
                json.dumps(base_payload, sort_keys=True) if base_payload is not None else None,
                format_timestamp(meta.created_at),
                format_timestamp(meta.updated_at),
                meta.sync_status.value,
                format_timestamp(meta.last_synced_at),
                meta.sync_version,
                meta.remote_version,
                int(meta.deleted),
            ),
        )

    def _write(
        self,
        conn: sqlite3.Connection,
        record: EntityRecord,
        base_payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        meta = record.meta
        params: List[Any] = [
            json.dumps(record.to_payload(), sort_keys=True),
            format_timestamp(meta.updated_at),
            meta.sync_status.value,
            format_timestamp(meta.last_synced_at),
            meta.sync_version,
            meta.remote_version,
            int(meta.deleted),
        ]
        base_clause = ""
        if base_payload is not None:
            base_clause = ", base_payload = ?"
            params.append(json.dumps(base_payload, sort_keys=True))
        params.append(meta.id)
        conn.execute(
            f"""
            UPDATE {_table(record.entity_type)}
               SET payload = ?, updated_at = ?, sync_status = ?, last_synced_at = ?,
                   sync_version = ?, remote_version = ?, deleted = ?{base_clause}
             WHERE id = ?
            """,
            params,
        )

    def _purge(self, conn: sqlite3.Connection, entity_type: str, entity_id: str) -> bool:
        cursor = conn.execute(f"DELETE FROM {_table(entity_type)} WHERE id = ?", (entity_id,))
        conn.execute("DELETE FROM sync_conflicts WHERE entity_id = ?", (entity_id,))
        return cursor.rowcount > 0


__all__ = ["EntityStore"]
