"""Offline-first synchronization for studiosync."""

from __future__ import annotations

from .queue import (
    OperationKind,
    OperationState,
    SyncBatch,
    SyncOperation,
    SyncQueue,
    coalesce_kind,
)
from .tracker import ChangeTracker
from .conflict import ConflictRecord, ConflictResolver, ConflictStrategy
from .protocol import PushAck, PushRequest, RemoteRecord, SyncBackend
from .remote import HttpSyncBackend, RemoteSettings
from .engine import EngineState, SyncEngine, SyncResult, SyncSettings

__all__ = [
    # Queue
    "OperationKind",
    "OperationState",
    "SyncBatch",
    "SyncOperation",
    "SyncQueue",
    "coalesce_kind",
    # Tracker
    "ChangeTracker",
    # Conflict
    "ConflictRecord",
    "ConflictResolver",
    "ConflictStrategy",
    # Protocol
    "PushAck",
    "PushRequest",
    "RemoteRecord",
    "SyncBackend",
    "HttpSyncBackend",
    "RemoteSettings",
    # Engine
    "EngineState",
    "SyncEngine",
    "SyncResult",
    "SyncSettings",
]
