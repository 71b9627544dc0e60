"""Sync protocol data structures and the backend contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..store.entities import EntitySnapshot, format_timestamp, parse_timestamp
from .queue import OperationKind


@dataclass
class PushAck:
    """The remote's confirmation of an accepted push."""

    server_version: int
    server_timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_version": self.server_version,
            "server_timestamp": format_timestamp(self.server_timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PushAck":
        return cls(
            server_version=int(data["server_version"]),
            server_timestamp=parse_timestamp(data["server_timestamp"]),  # type: ignore[arg-type]
        )


@dataclass
class RemoteRecord:
    """One entity version as the remote holds it."""

    id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    server_version: int = 1
    server_timestamp: Optional[datetime] = None
    deleted: bool = False

    def snapshot(self, entity_type: str) -> EntitySnapshot:
        return EntitySnapshot(
            entity_type=entity_type,
            entity_id=self.id,
            payload=dict(self.payload),
            updated_at=self.server_timestamp,  # type: ignore[arg-type]
            sync_version=self.server_version,
            deleted=self.deleted,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payload": self.payload,
            "server_version": self.server_version,
            "server_timestamp": format_timestamp(self.server_timestamp),
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteRecord":
        return cls(
            id=str(data["id"]),
            payload=dict(data.get("payload") or {}),
            server_version=int(data.get("server_version", 1)),
            server_timestamp=parse_timestamp(data.get("server_timestamp")),
            deleted=bool(data.get("deleted", False)),
        )


@dataclass
class PushRequest:
    """Body of a push call."""

    entity_id: str
    kind: OperationKind
    payload: Dict[str, Any]
    client_version: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.entity_id,
            "kind": self.kind.value,
            "payload": self.payload,
            "client_version": self.client_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PushRequest":
        return cls(
            entity_id=str(data["id"]),
            kind=OperationKind(data["kind"]),
            payload=dict(data.get("payload") or {}),
            client_version=int(data["client_version"]),
        )


class SyncBackend(ABC):
    """What the sync engine needs from any remote store.

    ``push`` returns a :class:`PushAck` or raises ``ConflictError`` (carrying
    the remote's :class:`RemoteRecord`), ``ValidationError`` for permanent
    rejections, and ``NetworkError`` for anything transient.
    """

    @abstractmethod
    def push(
        self,
        entity_type: str,
        entity_id: str,
        kind: OperationKind,
        payload: Dict[str, Any],
        client_version: int,
    ) -> PushAck:
        ...

    @abstractmethod
    def pull(self, entity_type: str, since: Optional[datetime] = None) -> List[RemoteRecord]:
        """Records of ``entity_type`` changed after ``since``, oldest first."""


__all__ = ["PushAck", "PushRequest", "RemoteRecord", "SyncBackend"]
