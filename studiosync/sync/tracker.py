"""Turns entity store writes into queued sync operations."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..store.entities import EntityRecord, utcnow
from .queue import OperationKind, SyncOperation, SyncQueue

logger = logging.getLogger("studiosync.sync.tracker")


class ChangeTracker:
    """Records one operation per entity write, coalescing into queued work.

    The entity store calls these hooks inside its own transaction, so the
    entity row and its queue entry commit or roll back together. An operation
    already in flight is never rewritten; the new intent is layered after it.
    """

    def __init__(self, queue: SyncQueue, clock: Callable[[], datetime] = utcnow):
        self.queue = queue
        self.clock = clock

    def record_create(self, record: EntityRecord) -> SyncOperation:
        return self.track(OperationKind.CREATE, record)

    def record_update(self, record: EntityRecord) -> SyncOperation:
        return self.track(OperationKind.UPDATE, record)

    def record_delete(self, record: EntityRecord) -> SyncOperation:
        return self.track(OperationKind.DELETE, record)

    def track(
        self,
        kind: OperationKind,
        record: EntityRecord,
        payload: Optional[Dict[str, Any]] = None,
    ) -> SyncOperation:
        body = payload if payload is not None else record.to_payload()
        active = self.queue.active_for(record.id)
        if active is not None:
            return self.queue.coalesce(active, kind, body, record.sync_version)
        failed = self.queue.failed_for(record.id)
        if failed is not None:
            return self.queue.revive(failed, kind, body, record.sync_version)

        op = SyncOperation.new(
            entity_type=record.entity_type,
            entity_id=record.id,
            kind=kind,
            payload=body,
            sync_version=record.sync_version,
            enqueued_at=self.clock(),
        )
        if self.queue.in_flight_for(record.id) is not None:
            logger.debug("Layering %s for %s behind in-flight push", kind.value, record.id)
        return self.queue.enqueue(op)

    def forget(self, entity_id: str) -> int:
        """Drop queued work for an entity that never reached the remote."""
        return self.queue.discard_for_entity(entity_id)


__all__ = ["ChangeTracker"]
