"""Sync engine: drains the queue to the remote and applies remote changes."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..connectivity import ConnectivityMonitor, ConnectivityState, NetworkQuality
from ..errors import (
    ConfigurationError,
    ConflictError,
    ErrorFeed,
    ErrorKind,
    NetworkError,
    NotFoundError,
    StudioSyncError,
    SyncIssue,
    ValidationError,
)
from ..store.entities import (
    ENTITY_TYPES,
    EntityRecord,
    SyncStatus,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from ..store.entity_store import EntityStore
from .conflict import ConflictRecord, ConflictResolver, ConflictStrategy
from .protocol import PushAck, RemoteRecord, SyncBackend
from .queue import OperationKind, OperationState, SyncBatch, SyncOperation, SyncQueue

logger = logging.getLogger("studiosync.sync.engine")


@dataclass
class SyncSettings:
    """Settings for sync runs."""

    enabled: bool = True
    auto_sync: bool = True
    batch_size: int = 50
    max_attempts: int = 5
    poll_interval: float = 60.0
    min_quality: NetworkQuality = NetworkQuality.GOOD
    conflict_strategy: ConflictStrategy = ConflictStrategy.LAST_WRITE_WINS
    backoff_base: float = 2.0
    backoff_max: float = 300.0
    entity_types: Tuple[str, ...] = tuple(ENTITY_TYPES)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        raw = config.get("sync", {}) if config else {}

        strategy_raw = str(raw.get("conflict_strategy", "last_write_wins"))
        try:
            strategy = ConflictStrategy(strategy_raw)
        except ValueError as exc:
            choices = ", ".join(item.value for item in ConflictStrategy)
            raise ConfigurationError(
                f"Unknown sync.conflict_strategy '{strategy_raw}' (expected one of: {choices})."
            ) from exc

        entity_types = tuple(raw.get("entity_types") or ENTITY_TYPES)
        unknown = [name for name in entity_types if name not in ENTITY_TYPES]
        if unknown:
            raise ConfigurationError(f"Unknown sync.entity_types: {', '.join(unknown)}.")

        return cls(
            enabled=bool(raw.get("enabled", True)),
            auto_sync=bool(raw.get("auto_sync", True)),
            batch_size=max(1, int(raw.get("batch_size", 50))),
            max_attempts=max(1, int(raw.get("max_attempts", 5))),
            poll_interval=max(0.1, float(raw.get("poll_interval", 60.0))),
            min_quality=NetworkQuality.parse(raw.get("min_quality", "good"), NetworkQuality.GOOD),
            conflict_strategy=strategy,
            backoff_base=max(0.0, float(raw.get("backoff_base", 2.0))),
            backoff_max=max(0.0, float(raw.get("backoff_max", 300.0))),
            entity_types=entity_types,
        )

    def backoff_delay(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        return min(self.backoff_max, self.backoff_base * (2 ** (failures - 1)))


class EngineState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"
    AWAITING_REMOTE = "awaiting_remote"
    APPLYING = "applying"


@dataclass
class SyncResult:
    """Result of one sync run."""

    success: bool = True
    skipped: bool = False
    pushed: int = 0
    pulled: int = 0
    requeued: int = 0
    failed: int = 0
    conflicts_resolved: int = 0
    conflicts_pending: int = 0
    errors: List[str] = field(default_factory=list)
    message: str = ""

    def summary(self) -> str:
        parts = []
        if self.pushed:
            parts.append(f"{self.pushed} pushed")
        if self.pulled:
            parts.append(f"{self.pulled} pulled")
        if self.conflicts_resolved:
            parts.append(f"{self.conflicts_resolved} conflicts resolved")
        if self.conflicts_pending:
            parts.append(f"{self.conflicts_pending} conflicts need a decision")
        if self.requeued:
            parts.append(f"{self.requeued} requeued")
        if self.failed:
            parts.append(f"{self.failed} failed")
        return ", ".join(parts) if parts else "nothing to sync"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "pushed": self.pushed,
            "pulled": self.pulled,
            "requeued": self.requeued,
            "failed": self.failed,
            "conflicts_resolved": self.conflicts_resolved,
            "conflicts_pending": self.conflicts_pending,
            "errors": self.errors,
            "message": self.message,
        }


class SyncEngine:
    """Reconciles the local store with a remote backend.

    A run goes IDLE -> DRAINING -> AWAITING_REMOTE -> APPLYING -> IDLE and is
    skipped while offline. Network calls happen outside the store lock, so
    foreground writes never wait on the remote. Problems on the sync path are
    published to the error feed and reflected in entity status; they are never
    raised to foreground callers.
    """

    def __init__(
        self,
        store: EntityStore,
        queue: SyncQueue,
        backend: SyncBackend,
        resolver: Optional[ConflictResolver] = None,
        *,
        settings: Optional[SyncSettings] = None,
        monitor: Optional[ConnectivityMonitor] = None,
        feed: Optional[ErrorFeed] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.queue = queue
        self.backend = backend
        self.settings = settings or SyncSettings()
        self.resolver = resolver or ConflictResolver(self.settings.conflict_strategy)
        self.monitor = monitor
        self.feed = feed or ErrorFeed()
        self.clock = clock

        self.state = EngineState.IDLE
        self.last_result: Optional[SyncResult] = None
        self._run_lock = threading.Lock()
        self._failures = 0
        self._backoff_until = 0.0
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # --- Runs ---

    def run_once(self, force: bool = False) -> SyncResult:
        """Perform one push/pull cycle. ``force`` ignores an active backoff."""
        if not self.settings.enabled:
            return SyncResult(skipped=True, message="Sync disabled via configuration")
        if not self._run_lock.acquire(blocking=False):
            return SyncResult(skipped=True, message="Sync already running")
        try:
            result = self._run(force)
        finally:
            self.state = EngineState.IDLE
            self._run_lock.release()
        self.last_result = result
        if not result.skipped:
            logger.info("Sync run finished: %s", result.message)
        return result

    def _run(self, force: bool) -> SyncResult:
        if self.monitor is not None and not self.monitor.current().is_online:
            return SyncResult(skipped=True, message="Offline; changes stay queued")

        remaining = self.backoff_remaining
        if remaining > 0 and not force:
            return SyncResult(skipped=True, message=f"Backing off for {remaining:.0f}s")

        result = SyncResult()
        reconciled: Set[str] = set()

        self.state = EngineState.DRAINING
        if not self._push(result, reconciled):
            self._register_failure(result)
            return result

        self.state = EngineState.AWAITING_REMOTE
        changes, complete = self._fetch(result)

        self.state = EngineState.APPLYING
        for entity_type, records in changes:
            self._apply_remote_changes(entity_type, records, result, reconciled)

        if not complete:
            self._register_failure(result)
            return result

        self._failures = 0
        self._backoff_until = 0.0
        result.message = result.summary()
        return result

    @property
    def backoff_remaining(self) -> float:
        return max(0.0, self._backoff_until - time.monotonic())

    def _register_failure(self, result: SyncResult) -> None:
        self._failures += 1
        delay = self.settings.backoff_delay(self._failures)
        self._backoff_until = time.monotonic() + delay
        result.success = False
        result.message = f"{result.summary()}; retrying in {delay:.0f}s"
        logger.warning("Sync interrupted (failure %d), backing off %.1fs", self._failures, delay)

    # --- Push path ---

    def _push(self, result: SyncResult, reconciled: Set[str]) -> bool:
        """Drain the queue; False when a transient failure cut the run short."""
        attempted: Set[str] = set()
        while True:
            batch = self.queue.dequeue_batch(self.settings.batch_size)
            if not batch:
                return True
            for op in batch:
                if op.op_id in attempted:
                    # Requeued this run; it waits for the next one.
                    batch.release_unsettled()
                    return True
                attempted.add(op.op_id)
                try:
                    pushed = self._push_operation(batch, op, result, reconciled)
                except Exception:
                    # Leave nothing stuck in syncing for the next run.
                    self.store.mark_pending(op.entity_type, op.entity_id)
                    batch.release_unsettled()
                    raise
                if not pushed:
                    released = batch.release_unsettled()
                    if released:
                        logger.debug("Released %d untried operations", released)
                    return False
            batch.release_unsettled()

    def _push_operation(
        self,
        batch: SyncBatch,
        op: SyncOperation,
        result: SyncResult,
        reconciled: Set[str],
    ) -> bool:
        self.store.mark_syncing(op.entity_type, op.entity_id)
        try:
            ack = self.backend.push(
                op.entity_type,
                op.entity_id,
                op.kind,
                op.payload,
                op.sync_version,
            )
        except NetworkError as exc:
            self._requeue(batch, op, exc, result)
            return False
        except ValidationError as exc:
            batch.fail(op.op_id, str(exc))
            self.store.mark_error(op.entity_type, op.entity_id)
            result.failed += 1
            result.errors.append(str(exc))
            self._publish(exc, op)
            return True
        except ConflictError as exc:
            self._push_conflict(batch, op, exc, result, reconciled)
            return True

        self._confirm(batch, op, ack)
        result.pushed += 1
        return True

    def _requeue(
        self,
        batch: SyncBatch,
        op: SyncOperation,
        error: StudioSyncError,
        result: SyncResult,
    ) -> None:
        updated = batch.requeue(op.op_id, str(error))
        if updated is not None and updated.state is OperationState.FAILED:
            self.store.mark_error(op.entity_type, op.entity_id)
            result.failed += 1
        else:
            self.store.mark_pending(op.entity_type, op.entity_id)
            result.requeued += 1
        result.errors.append(str(error))
        self._publish(error, op)

    def _confirm(self, batch: SyncBatch, op: SyncOperation, ack: PushAck) -> None:
        batch.acknowledge(op.op_id)
        layered = self.queue.has_operations(op.entity_id)
        if op.kind is OperationKind.DELETE:
            if not layered:
                self.store.purge(op.entity_type, op.entity_id)
                logger.debug("Delete of %s confirmed; purged", op.entity_id)
            return
        self.store.mark_synced(
            op.entity_type,
            op.entity_id,
            payload=op.payload,
            server_version=ack.server_version,
            synced_at=self.clock(),
            still_pending=layered,
        )

    def _push_conflict(
        self,
        batch: SyncBatch,
        op: SyncOperation,
        error: ConflictError,
        result: SyncResult,
        reconciled: Set[str],
    ) -> None:
        remote = error.remote
        if not isinstance(remote, RemoteRecord) or op.entity_id in reconciled:
            self._requeue(batch, op, error, result)
            return
        reconciled.add(op.entity_id)
        local = self.store.get(op.entity_type, op.entity_id, include_deleted=True)
        if local is None:
            batch.acknowledge(op.op_id)
            return
        self._reconcile(local, remote, result, batch=batch, op=op)

    # --- Pull path ---

    def _fetch(self, result: SyncResult) -> Tuple[List[Tuple[str, List[RemoteRecord]]], bool]:
        changes: List[Tuple[str, List[RemoteRecord]]] = []
        for entity_type in self.settings.entity_types:
            since = self.cursor(entity_type)
            try:
                records = self.backend.pull(entity_type, since=since)
            except (NetworkError, ValidationError) as exc:
                result.errors.append(str(exc))
                self.feed.publish(SyncIssue.from_error(exc, entity_type=entity_type))
                return changes, False
            changes.append((entity_type, records))
        return changes, True

    def _apply_remote_changes(
        self,
        entity_type: str,
        records: List[RemoteRecord],
        result: SyncResult,
        reconciled: Set[str],
    ) -> None:
        newest = self.cursor(entity_type)
        for remote in records:
            try:
                self._apply_remote(entity_type, remote, result, reconciled)
            except (TypeError, ValueError, KeyError) as exc:
                message = f"Malformed remote {entity_type} '{remote.id}': {exc}"
                result.errors.append(message)
                self.feed.publish(
                    SyncIssue(
                        kind=ErrorKind.DATA,
                        message=message,
                        entity_type=entity_type,
                        entity_id=remote.id,
                    )
                )
            if remote.server_timestamp and (newest is None or remote.server_timestamp > newest):
                newest = remote.server_timestamp
        if newest is not None:
            self._save_cursor(entity_type, newest)

    def _apply_remote(
        self,
        entity_type: str,
        remote: RemoteRecord,
        result: SyncResult,
        reconciled: Set[str],
    ) -> None:
        local = self.store.get(entity_type, remote.id, include_deleted=True)
        now = self.clock()
        updated_at = remote.server_timestamp or now

        if local is None:
            if remote.deleted:
                return
            self.store.apply_remote(
                entity_type,
                remote.id,
                remote.payload,
                sync_version=remote.server_version,
                remote_version=remote.server_version,
                updated_at=updated_at,
                synced_at=now,
            )
            result.pulled += 1
            return

        known = local.meta.remote_version
        if known is not None and remote.server_version <= known:
            return
        if local.id in reconciled:
            # Already reconciled against the remote this run.
            return

        if self.queue.has_operations(local.id) or local.sync_status is not SyncStatus.SYNCED:
            reconciled.add(local.id)
            self._reconcile(local, remote, result)
            return

        if remote.deleted:
            self.store.purge(entity_type, local.id)
            result.pulled += 1
            return

        if remote.server_version > local.sync_version:
            version = remote.server_version
        else:
            version = local.sync_version + 1
        self.store.apply_remote(
            entity_type,
            local.id,
            remote.payload,
            sync_version=version,
            remote_version=remote.server_version,
            updated_at=updated_at,
            synced_at=now,
        )
        result.pulled += 1

    # --- Conflicts ---

    def _reconcile(
        self,
        local: EntityRecord,
        remote: RemoteRecord,
        result: SyncResult,
        batch: Optional[SyncBatch] = None,
        op: Optional[SyncOperation] = None,
    ) -> ConflictRecord:
        if remote.server_timestamp is None:
            remote = replace(remote, server_timestamp=self.clock())
        record = self.resolver.resolve(
            self.store.snapshot(local),
            remote.snapshot(local.entity_type),
            base=self.store.base_payload(local.entity_type, local.id),
        )

        if record.pending:
            if batch is not None and op is not None:
                batch.block(op)
            else:
                self.queue.block(local.id)
            self._save_conflict(record)
            self.store.mark_conflict(local.entity_type, local.id, seen_at=self.clock())
            result.conflicts_pending += 1
            self.feed.publish(
                SyncIssue(
                    kind=ErrorKind.CONFLICT,
                    message=f"Conflict {record.conflict_id} needs a decision",
                    entity_type=local.entity_type,
                    entity_id=local.id,
                    op_id=op.op_id if op else None,
                )
            )
            return record

        if batch is not None and op is not None:
            batch.acknowledge(op.op_id)
        self._apply_resolution(record)
        result.conflicts_resolved += 1
        logger.info(
            "Resolved %s %s via %s: %s",
            record.entity_type,
            record.entity_id,
            record.strategy.value,
            record.message,
        )
        return record

    def _apply_resolution(self, record: ConflictRecord) -> None:
        outcome = record.result
        if outcome is None:
            raise ValueError(f"Conflict {record.conflict_id} has no outcome to apply.")
        entity_type, entity_id = record.entity_type, record.entity_id
        remote_version = record.remote.sync_version
        now = self.clock()

        with self.store.db.transaction():
            self.queue.discard_for_entity(entity_id)
            self.store.db.execute("DELETE FROM sync_conflicts WHERE entity_id = ?", (entity_id,))

            if record.needs_push:
                # The chosen state differs from the remote's; push it next.
                self.store.apply_remote(
                    entity_type,
                    entity_id,
                    outcome.payload,
                    sync_version=outcome.sync_version,
                    remote_version=remote_version,
                    updated_at=outcome.updated_at,
                    synced_at=now,
                    status=SyncStatus.PENDING,
                    base_payload=record.remote.payload,
                    deleted=outcome.deleted,
                )
                if outcome.deleted:
                    kind = OperationKind.DELETE
                elif record.remote.deleted:
                    kind = OperationKind.CREATE
                else:
                    kind = OperationKind.UPDATE
                self.queue.enqueue(
                    SyncOperation.new(
                        entity_type=entity_type,
                        entity_id=entity_id,
                        kind=kind,
                        payload=outcome.payload,
                        sync_version=outcome.sync_version,
                        enqueued_at=now,
                    )
                )
            elif outcome.deleted:
                self.store.purge(entity_type, entity_id)
            else:
                self.store.apply_remote(
                    entity_type,
                    entity_id,
                    outcome.payload,
                    sync_version=outcome.sync_version,
                    remote_version=remote_version,
                    updated_at=outcome.updated_at,
                    synced_at=now,
                    base_payload=outcome.payload,
                )

    def _save_conflict(self, record: ConflictRecord) -> None:
        with self.store.db.transaction() as conn:
            conn.execute("DELETE FROM sync_conflicts WHERE entity_id = ?", (record.entity_id,))
            conn.execute(
                """
                INSERT INTO sync_conflicts
                    (conflict_id, entity_type, entity_id, strategy, local, remote,
                     remote_version, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.conflict_id,
                    record.entity_type,
                    record.entity_id,
                    record.strategy.value,
                    json.dumps(record.local.to_dict(), sort_keys=True),
                    json.dumps(record.remote.to_dict(), sort_keys=True),
                    record.remote.sync_version,
                    format_timestamp(self.clock()),
                ),
            )

    def pending_conflicts(self) -> List[ConflictRecord]:
        rows = self.store.db.fetchall("SELECT * FROM sync_conflicts ORDER BY created_at, conflict_id")
        return [self._row_to_conflict(row) for row in rows]

    def get_conflict(self, conflict_id: str) -> Optional[ConflictRecord]:
        row = self.store.db.fetchone(
            "SELECT * FROM sync_conflicts WHERE conflict_id = ?", (conflict_id,)
        )
        return self._row_to_conflict(row) if row else None

    @staticmethod
    def _row_to_conflict(row: Any) -> ConflictRecord:
        return ConflictRecord.from_dict(
            {
                "conflict_id": row["conflict_id"],
                "local": json.loads(row["local"]),
                "remote": json.loads(row["remote"]),
                "strategy": row["strategy"],
            }
        )

    def resolve_conflict(self, conflict_id: str, choice: str) -> ConflictRecord:
        """Apply a user's decision ("local" or "remote") to a pending conflict."""
        record = self.get_conflict(conflict_id)
        if record is None:
            raise NotFoundError(f"No pending conflict '{conflict_id}'.")
        current = self.store.get(record.entity_type, record.entity_id, include_deleted=True)
        if current is not None:
            # Edits made while the conflict waited are part of the local side.
            record = replace(record, local=self.store.snapshot(current))
        resolved = self.resolver.resolve_manual(record, choice)
        self._apply_resolution(resolved)
        logger.info("Conflict %s resolved by user: %s", conflict_id, choice)
        self.trigger()
        return resolved

    # --- Failed operations ---

    def retry_failed(self, op_id: Optional[str] = None) -> int:
        """Give failed operations (all, or the one named) a fresh set of attempts."""
        failed = self.queue.failed()
        if op_id is not None:
            failed = [op for op in failed if op.op_id == op_id]
        for op in failed:
            self.queue.retry(op.op_id)
            self.store.mark_pending(op.entity_type, op.entity_id)
        if failed:
            self.trigger()
        return len(failed)

    # --- Cursors ---

    def cursor(self, entity_type: str) -> Optional[datetime]:
        row = self.store.db.fetchone(
            "SELECT since FROM sync_cursors WHERE entity_type = ?", (entity_type,)
        )
        return parse_timestamp(row["since"]) if row else None

    def _save_cursor(self, entity_type: str, since: datetime) -> None:
        self.store.db.execute(
            "INSERT OR REPLACE INTO sync_cursors (entity_type, since) VALUES (?, ?)",
            (entity_type, format_timestamp(since)),
        )

    # --- Recovery and status ---

    def recover(self) -> int:
        """Return work interrupted by a crash to pending."""
        operations = self.queue.recover()
        entities = self.store.recover()
        if operations or entities:
            logger.info("Recovered %d operations and %d entities", operations, entities)
        return operations

    def status(self) -> Dict[str, Any]:
        connectivity = self.monitor.current().to_dict() if self.monitor else None
        return {
            "enabled": self.settings.enabled,
            "auto_sync": self.settings.auto_sync,
            "state": self.state.value,
            "running": self.running,
            "strategy": self.resolver.strategy.value,
            "queue": self.queue.stats(),
            "entities": self.store.status_counts(),
            "conflicts": len(self.pending_conflicts()),
            "backoff_remaining": round(self.backoff_remaining, 1),
            "connectivity": connectivity,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    def _publish(self, error: StudioSyncError, op: SyncOperation) -> None:
        self.feed.publish(
            SyncIssue.from_error(
                error,
                entity_type=op.entity_type,
                entity_id=op.entity_id,
                op_id=op.op_id,
            )
        )

    # --- Background loop ---

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def should_auto_sync(self, state: Optional[ConnectivityState] = None) -> bool:
        if not (self.settings.enabled and self.settings.auto_sync):
            return False
        if state is None:
            if self.monitor is None:
                return True
            state = self.monitor.current()
        return state.is_online and state.quality.at_least(self.settings.min_quality)

    def trigger(self) -> None:
        """Wake the background loop for an early run."""
        self._wake.set()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        if self.monitor is not None and self._unsubscribe is None:
            self._unsubscribe = self.monitor.subscribe(self._on_connectivity)
        self._thread = threading.Thread(target=self._loop, name="studiosync-sync", daemon=True)
        self._thread.start()
        logger.info("Sync loop started (every %.1fs)", self.settings.poll_interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Sync loop stopped")

    def _on_connectivity(self, state: ConnectivityState) -> None:
        if self.should_auto_sync(state):
            self.trigger()

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(self.settings.poll_interval)
            self._wake.clear()
            if self._stop.is_set():
                break
            if not self.should_auto_sync():
                continue
            try:
                result = self.run_once()
            except StudioSyncError as exc:
                logger.error("Sync run aborted: %s", exc)
                self.feed.publish(SyncIssue.from_error(exc))
            except Exception:  # pragma: no cover - the loop must outlive one bad run
                logger.exception("Unexpected failure during sync run")
            else:
                if result.success and not result.skipped and self.queue.pending(limit=1):
                    self._wake.set()


__all__ = ["EngineState", "SyncEngine", "SyncResult", "SyncSettings"]
