"""Shared fixtures: an in-memory remote, a controllable clock, and wired components."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from studiosync.configuration import ConfigurationBundle
from studiosync.connectivity import ConnectionType, ConnectivityMonitor, ConnectivityState
from studiosync.context import build_context
from studiosync.errors import ConflictError, ErrorFeed
from studiosync.store.database import MEMORY_PATH, Database
from studiosync.store.entities import Member
from studiosync.store.entity_store import EntityStore
from studiosync.sync.conflict import ConflictResolver
from studiosync.sync.engine import SyncEngine, SyncSettings
from studiosync.sync.protocol import PushAck, RemoteRecord, SyncBackend
from studiosync.sync.queue import OperationKind, SyncQueue
from studiosync.sync.tracker import ChangeTracker

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class InMemoryBackend(SyncBackend):
    """Remote store double.

    A push conflicts when the stored version is at or above the client's;
    otherwise the client's version becomes the server version.
    """

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self.clock = clock
        self.records: Dict[str, Dict[str, RemoteRecord]] = {}
        self.push_failures: List[Exception] = []
        self.pull_failures: List[Exception] = []
        self.before_push: List[Callable[[], None]] = []
        self.pushes: List[Dict[str, Any]] = []

    def push(self, entity_type, entity_id, kind, payload, client_version) -> PushAck:
        if self.before_push:
            self.before_push.pop(0)()
        self.pushes.append(
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "kind": kind,
                "payload": dict(payload),
                "client_version": client_version,
            }
        )
        if self.push_failures:
            raise self.push_failures.pop(0)

        stored = self.records.get(entity_type, {}).get(entity_id)
        if stored is not None and stored.server_version >= client_version:
            raise ConflictError("stale push", remote=copy.deepcopy(stored))

        now = self.clock()
        self.records.setdefault(entity_type, {})[entity_id] = RemoteRecord(
            id=entity_id,
            payload=dict(payload),
            server_version=client_version,
            server_timestamp=now,
            deleted=kind is OperationKind.DELETE,
        )
        return PushAck(server_version=client_version, server_timestamp=now)

    def pull(self, entity_type, since=None) -> List[RemoteRecord]:
        if self.pull_failures:
            raise self.pull_failures.pop(0)
        records = [
            copy.deepcopy(record)
            for record in self.records.get(entity_type, {}).values()
            if since is None or record.server_timestamp > since
        ]
        return sorted(records, key=lambda record: record.server_timestamp)

    # --- Server-side edits ---

    def get(self, entity_type: str, entity_id: str) -> Optional[RemoteRecord]:
        return self.records.get(entity_type, {}).get(entity_id)

    def seed(self, entity_type: str, payload: Dict[str, Any], version: int = 1) -> RemoteRecord:
        record = RemoteRecord(
            id=payload["id"],
            payload=dict(payload),
            server_version=version,
            server_timestamp=self.clock(),
        )
        self.records.setdefault(entity_type, {})[record.id] = record
        return record

    def edit(self, entity_type: str, entity_id: str, **changes: Any) -> RemoteRecord:
        record = self.records[entity_type][entity_id]
        record.payload.update(changes)
        record.server_version += 1
        record.server_timestamp = self.clock()
        return record

    def delete(self, entity_type: str, entity_id: str) -> RemoteRecord:
        record = self.records[entity_type][entity_id]
        record.deleted = True
        record.server_version += 1
        record.server_timestamp = self.clock()
        return record


@dataclass
class Harness:
    clock: FakeClock
    db: Database
    queue: SyncQueue
    tracker: ChangeTracker
    store: EntityStore
    backend: InMemoryBackend
    monitor: ConnectivityMonitor
    feed: ErrorFeed
    engine: SyncEngine

    def add_member(self, first: str = "Ada", last: str = "Lovelace", email: str = "ada@example.com") -> Member:
        return self.store.create(Member(first_name=first, last_name=last, email=email))

    def member(self, member_id: str) -> Optional[Member]:
        return self.store.get(Member, member_id, include_deleted=True)


def build_harness(db: Database, clock: FakeClock, **settings: Any) -> Harness:
    sync_settings = SyncSettings(entity_types=("member",), **settings)
    queue = SyncQueue(db, max_attempts=sync_settings.max_attempts, clock=clock)
    tracker = ChangeTracker(queue, clock=clock)
    store = EntityStore(db, tracker, clock=clock)
    backend = InMemoryBackend(clock)
    monitor = ConnectivityMonitor(initial=ConnectivityState.online(ConnectionType.WIFI), clock=clock)
    feed = ErrorFeed()
    engine = SyncEngine(
        store,
        queue,
        backend,
        ConflictResolver(sync_settings.conflict_strategy),
        settings=sync_settings,
        monitor=monitor,
        feed=feed,
        clock=clock,
    )
    return Harness(clock, db, queue, tracker, store, backend, monitor, feed, engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db():
    database = Database(MEMORY_PATH).open()
    yield database
    database.close()


@pytest.fixture
def harness(db: Database, clock: FakeClock) -> Harness:
    return build_harness(db, clock)


@pytest.fixture
def make_harness(db: Database, clock: FakeClock):
    def _make(database: Optional[Database] = None, **settings: Any) -> Harness:
        return build_harness(database or db, clock, **settings)

    return _make




@pytest.fixture
def studio(tmp_path, clock: FakeClock):
    """A fully wired context over an in-memory store and remote."""
    bundle = ConfigurationBundle(
        home_dir=tmp_path,
        status="ready",
        merged={
            "store": {"path": MEMORY_PATH},
            "sync": {"conflict_strategy": "manual", "entity_types": ["member"]},
        },
    )
    context = build_context(
        bundle,
        backend=InMemoryBackend(clock),
        monitor=ConnectivityMonitor(initial=ConnectivityState.online(ConnectionType.WIRED), clock=clock),
        clock=clock,
    )
    yield context
    context.close()
