"""Conflict resolution strategies for entity synchronization."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..store.entities import EntitySnapshot

logger = logging.getLogger("studiosync.sync.conflict")

WINNER_LOCAL = "local"
WINNER_REMOTE = "remote"
WINNER_MERGED = "merged"
WINNER_PENDING = "pending"


class ConflictStrategy(str, Enum):
    """Strategies for resolving sync conflicts."""
    LAST_WRITE_WINS = "last_write_wins"
    FIELD_MERGE = "field_merge"
    MANUAL = "manual"
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"


@dataclass
class ConflictRecord:
    """Outcome of adjudicating one local/remote pair.

    ``result`` is None while a manual decision is outstanding.
    """

    conflict_id: str
    local: EntitySnapshot
    remote: EntitySnapshot
    strategy: ConflictStrategy
    result: Optional[EntitySnapshot] = None
    winner: str = WINNER_PENDING
    message: str = ""

    @property
    def pending(self) -> bool:
        return self.result is None

    @property
    def entity_type(self) -> str:
        return self.local.entity_type

    @property
    def entity_id(self) -> str:
        return self.local.entity_id

    @property
    def needs_push(self) -> bool:
        """True when the chosen state differs from what the remote holds."""
        if self.result is None:
            return False
        return (
            self.result.deleted != self.remote.deleted
            or (not self.result.deleted and self.result.payload != self.remote.payload)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conflict_id": self.conflict_id,
            "local": self.local.to_dict(),
            "remote": self.remote.to_dict(),
            "strategy": self.strategy.value,
            "result": self.result.to_dict() if self.result else None,
            "winner": self.winner,
            "message": self.message,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConflictRecord":
        result = data.get("result")
        return cls(
            conflict_id=data["conflict_id"],
            local=EntitySnapshot.from_dict(data["local"]),
            remote=EntitySnapshot.from_dict(data["remote"]),
            strategy=ConflictStrategy(data["strategy"]),
            result=EntitySnapshot.from_dict(result) if result else None,
            winner=data.get("winner", WINNER_PENDING),
            message=data.get("message", ""),
        )


def conflict_id_for(local: EntitySnapshot, remote: EntitySnapshot) -> str:
    """Stable id derived from both inputs."""
    canonical = json.dumps([local.to_dict(), remote.to_dict()], sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


class ConflictResolver:
    """Resolves divergent local and remote entity versions.

    Resolution is a pure function of its inputs: the same pair and strategy
    always give the same record. The result carries a version one above both
    inputs.
    """

    def __init__(self, strategy: ConflictStrategy = ConflictStrategy.LAST_WRITE_WINS):
        self.strategy = strategy

    def resolve(
        self,
        local: EntitySnapshot,
        remote: EntitySnapshot,
        base: Optional[Mapping[str, Any]] = None,
        strategy: Optional[ConflictStrategy] = None,
    ) -> ConflictRecord:
        """Resolve a single conflict based on the configured strategy."""
        chosen = strategy or self.strategy
        record = ConflictRecord(
            conflict_id=conflict_id_for(local, remote),
            local=local,
            remote=remote,
            strategy=chosen,
        )

        if chosen == ConflictStrategy.LAST_WRITE_WINS:
            return self._resolve_last_write_wins(record)
        elif chosen == ConflictStrategy.FIELD_MERGE:
            return self._resolve_field_merge(record, base)
        elif chosen == ConflictStrategy.LOCAL_WINS:
            return self._select(record, WINNER_LOCAL, "Local wins strategy")
        elif chosen == ConflictStrategy.REMOTE_WINS:
            return self._select(record, WINNER_REMOTE, "Remote wins strategy")
        else:  # MANUAL
            record.message = "Marked for manual resolution"
            return record

    def resolve_manual(self, record: ConflictRecord, choice: str) -> ConflictRecord:
        """Complete a pending record with the user's choice of side."""
        if choice not in (WINNER_LOCAL, WINNER_REMOTE):
            raise ValueError(f"Conflict choice must be 'local' or 'remote', not '{choice}'.")
        return self._select(replace(record), choice, f"User chose {choice} version")

    def resolve_all(
        self,
        pairs: List[Tuple[EntitySnapshot, EntitySnapshot]],
    ) -> List[ConflictRecord]:
        """Resolve multiple conflicts."""
        return [self.resolve(local, remote) for local, remote in pairs]

    def _resolve_last_write_wins(self, record: ConflictRecord) -> ConflictRecord:
        """Use whichever version was modified later; ties go to local."""
        local_at = record.local.updated_at
        remote_at = record.remote.updated_at
        if remote_at > local_at:
            return self._select(
                record,
                WINNER_REMOTE,
                f"Remote is newer ({remote_at.isoformat()} > {local_at.isoformat()})",
            )
        return self._select(
            record,
            WINNER_LOCAL,
            f"Local is newer or tied ({local_at.isoformat()} >= {remote_at.isoformat()})",
        )

    def _resolve_field_merge(
        self,
        record: ConflictRecord,
        base: Optional[Mapping[str, Any]],
    ) -> ConflictRecord:
        """Three-way merge per field; fields both sides changed use last-write-wins."""
        local, remote = record.local, record.remote
        if local.deleted or remote.deleted:
            resolved = self._resolve_last_write_wins(record)
            resolved.message = f"Deletion cannot be merged; {resolved.message}"
            return resolved

        remote_newer = remote.updated_at > local.updated_at
        merged: Dict[str, Any] = {}
        contested: List[str] = []
        for key in sorted(set(local.payload) | set(remote.payload)):
            local_value = local.payload.get(key)
            remote_value = remote.payload.get(key)
            if local_value == remote_value:
                merged[key] = local_value
            elif base is not None and local_value == base.get(key):
                merged[key] = remote_value
            elif base is not None and remote_value == base.get(key):
                merged[key] = local_value
            else:
                contested.append(key)
                merged[key] = remote_value if remote_newer else local_value

        if merged == remote.payload:
            winner = WINNER_REMOTE
        elif merged == local.payload:
            winner = WINNER_LOCAL
        else:
            winner = WINNER_MERGED

        record.result = self._result(record, merged, max(local.updated_at, remote.updated_at), False)
        record.winner = winner
        if contested:
            record.message = f"Merged; last write decided {', '.join(contested)}"
        else:
            record.message = "Merged without contested fields"
        return record

    def _select(self, record: ConflictRecord, winner: str, message: str) -> ConflictRecord:
        source = record.local if winner == WINNER_LOCAL else record.remote
        record.result = self._result(record, dict(source.payload), source.updated_at, source.deleted)
        record.winner = winner
        record.message = message
        logger.debug("Conflict %s resolved: %s", record.conflict_id, message)
        return record

    @staticmethod
    def _result(
        record: ConflictRecord,
        payload: Dict[str, Any],
        updated_at,
        deleted: bool,
    ) -> EntitySnapshot:
        return EntitySnapshot(
            entity_type=record.local.entity_type,
            entity_id=record.local.entity_id,
            payload=payload,
            updated_at=updated_at,
            sync_version=max(record.local.sync_version, record.remote.sync_version) + 1,
            deleted=deleted,
        )


__all__ = [
    "ConflictRecord",
    "ConflictResolver",
    "ConflictStrategy",
    "WINNER_LOCAL",
    "WINNER_MERGED",
    "WINNER_PENDING",
    "WINNER_REMOTE",
    "conflict_id_for",
]
