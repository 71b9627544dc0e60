"""Tests for the entity store write and read paths."""

from __future__ import annotations

from datetime import timedelta

import pytest

from studiosync.errors import ConcurrentModificationError, InputError, NotFoundError
from studiosync.store.entities import (
    ClassCategory,
    Member,
    SyncStatus,
    YogaClass,
)
from studiosync.sync.queue import OperationKind


def test_create_assigns_metadata_and_queues_operation(harness):
    member = harness.add_member()

    assert member.id
    assert member.sync_status is SyncStatus.PENDING
    assert member.sync_version == 1
    assert member.meta.created_at == harness.clock.now
    assert member.meta.last_synced_at is None

    ops = harness.queue.operations_for(member.id)
    assert len(ops) == 1
    assert ops[0].kind is OperationKind.CREATE
    assert ops[0].payload["email"] == "ada@example.com"


def test_create_rejects_duplicate_id(harness):
    member = harness.add_member()
    clone = Member(first_name="Ada", last_name="Clone", email="clone@example.com")
    clone.meta.id = member.id

    with pytest.raises(InputError):
        harness.store.create(clone)


def test_update_bumps_version_and_coalesces(harness):
    member = harness.add_member()
    harness.clock.advance(30)

    updated = harness.store.update(member, {"phone_number": "555-0100"})

    assert updated.sync_version == 2
    assert updated.phone_number == "555-0100"
    assert updated.meta.updated_at == harness.clock.now
    ops = harness.queue.operations_for(member.id)
    assert len(ops) == 1
    assert ops[0].kind is OperationKind.CREATE
    assert ops[0].sync_version == 2
    assert ops[0].payload["phone_number"] == "555-0100"


def test_update_accepts_callable_mutator(harness):
    member = harness.add_member()

    def _rename(target: Member) -> None:
        target.last_name = "King"

    updated = harness.store.update(member, _rename)

    assert updated.last_name == "King"
    assert harness.store.get(Member, member.id).last_name == "King"


def test_stale_update_raises_concurrent_modification(harness):
    member = harness.add_member()
    harness.store.update(member, {"phone_number": "555-0100"})

    with pytest.raises(ConcurrentModificationError) as excinfo:
        harness.store.update(member, {"phone_number": "555-0199"})

    assert excinfo.value.expected_version == 1
    assert excinfo.value.actual_version == 2
    assert harness.store.get(Member, member.id).phone_number == "555-0100"


def test_update_rejects_unknown_fields(harness):
    member = harness.add_member()

    with pytest.raises(InputError):
        harness.store.update(member, {"nickname": "Countess"})


def test_update_missing_entity_raises_not_found(harness):
    ghost = Member(first_name="No", last_name="Body", email="nobody@example.com")
    ghost.meta.id = "ghost"

    with pytest.raises(NotFoundError):
        harness.store.update(ghost, {"last_name": "One"})


def test_delete_unsynced_entity_removes_it_and_its_operations(harness):
    member = harness.add_member()

    assert harness.store.delete(member) is True

    assert harness.store.get(Member, member.id, include_deleted=True) is None
    assert harness.queue.operations_for(member.id) == []


def test_delete_synced_entity_leaves_tombstone(harness):
    member = harness.add_member()
    harness.engine.run_once()
    synced = harness.store.get(Member, member.id)

    assert harness.store.delete(synced) is False

    assert harness.store.get(Member, member.id) is None
    tombstone = harness.store.get(Member, member.id, include_deleted=True)
    assert tombstone.meta.deleted is True
    assert tombstone.sync_status is SyncStatus.PENDING
    assert tombstone.sync_version == 2
    ops = harness.queue.operations_for(member.id)
    assert [op.kind for op in ops] == [OperationKind.DELETE]

    with pytest.raises(NotFoundError):
        harness.store.delete(tombstone)


def test_write_rolls_back_when_tracking_fails(harness, monkeypatch):
    def _boom(record):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr(harness.tracker, "record_create", _boom)

    with pytest.raises(RuntimeError):
        harness.add_member()

    assert harness.store.count(Member) == 0
    assert len(harness.queue) == 0


def test_query_filters_and_orders_by_creation(harness):
    first = harness.add_member("Ada", "Lovelace", "ada@example.com")
    harness.clock.advance()
    second = harness.add_member("Grace", "Hopper", "grace@example.com")

    everyone = harness.store.query(Member)
    hoppers = harness.store.query(Member, lambda member: member.last_name == "Hopper")

    assert [member.id for member in everyone] == [first.id, second.id]
    assert [member.id for member in hoppers] == [second.id]
    assert harness.store.count(Member) == 2


def test_reads_return_copies(harness):
    member = harness.add_member()
    loaded = harness.store.get(Member, member.id)
    loaded.last_name = "Changed"

    assert harness.store.get(Member, member.id).last_name == "Lovelace"


def test_enum_and_datetime_fields_round_trip(harness):
    start = harness.clock.now + timedelta(days=1)
    created = harness.store.create(
        YogaClass(
            name="Morning Flow",
            description="",
            instructor_name="Iyengar",
            category=ClassCategory.VINYASA,
            capacity=12,
            duration=60,
            start_time=start,
        )
    )

    loaded = harness.store.require(YogaClass, created.id)

    assert loaded.category is ClassCategory.VINYASA
    assert loaded.start_time == start
    assert loaded.end_time == start + timedelta(minutes=60)


def test_status_counts_and_by_status(harness):
    harness.add_member()
    synced = harness.add_member("Grace", "Hopper", "grace@example.com")
    harness.store.mark_synced(
        "member",
        synced.id,
        payload=synced.to_payload(),
        server_version=1,
        synced_at=harness.clock.now,
    )

    counts = harness.store.status_counts()

    assert counts["pending"] == 1
    assert counts["synced"] == 1
    assert [record.id for record in harness.store.by_status(SyncStatus.SYNCED)] == [synced.id]
    assert harness.store.base_payload("member", synced.id)["email"] == "grace@example.com"


def test_apply_remote_inserts_and_overwrites(harness):
    payload = {"first_name": "Alan", "last_name": "Turing", "email": "alan@example.com"}
    inserted = harness.store.apply_remote(
        "member",
        "remote-1",
        payload,
        sync_version=4,
        remote_version=4,
        updated_at=harness.clock.now,
        synced_at=harness.clock.now,
    )

    assert inserted.sync_version == 4
    assert inserted.sync_status is SyncStatus.SYNCED
    assert harness.queue.operations_for("remote-1") == []

    harness.store.apply_remote(
        "member",
        "remote-1",
        dict(payload, last_name="Mathison"),
        sync_version=5,
        remote_version=5,
        updated_at=harness.clock.now,
        synced_at=harness.clock.now,
    )
    assert harness.store.get(Member, "remote-1").last_name == "Mathison"


def test_recover_returns_syncing_entities_to_pending(harness):
    member = harness.add_member()
    harness.store.mark_syncing("member", member.id)

    assert harness.store.recover() == 1
    assert harness.store.get(Member, member.id).sync_status is SyncStatus.PENDING


def test_unknown_entity_type_is_rejected(harness):
    with pytest.raises(ValueError):
        harness.store.get("instructor", "x")
