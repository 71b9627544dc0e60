"""Tests for the sync engine against an in-memory remote."""

from __future__ import annotations

import time
from pathlib import Path

import pytest

from studiosync.connectivity import ConnectionType, ConnectivityState
from studiosync.errors import ConfigurationError, ErrorKind, NetworkError, NotFoundError, ValidationError
from studiosync.store.database import Database
from studiosync.store.entities import Member, SyncStatus
from studiosync.sync.conflict import ConflictStrategy
from studiosync.sync.engine import EngineState, SyncSettings
from studiosync.sync.queue import OperationKind, OperationState


def _synced_member(harness):
    member = harness.add_member()
    result = harness.engine.run_once()
    assert result.pushed == 1
    harness.clock.advance()
    return harness.member(member.id)


def _diverge(harness, member, *, remote_first: bool):
    """Edit the same member on both sides; the later edit gets the later clock."""
    if remote_first:
        harness.backend.edit("member", member.id, last_name="Byron")
        harness.clock.advance()
        local = harness.store.update(member, {"phone_number": "555-0100"})
    else:
        local = harness.store.update(member, {"phone_number": "555-0100"})
        harness.clock.advance()
        harness.backend.edit("member", member.id, last_name="Byron")
    harness.clock.advance()
    return local


def test_push_create_marks_entity_synced(harness):
    member = harness.add_member()

    result = harness.engine.run_once()

    assert result.success is True
    assert result.pushed == 1
    stored = harness.member(member.id)
    assert stored.sync_status is SyncStatus.SYNCED
    assert stored.meta.remote_version == 1
    assert stored.meta.last_synced_at == harness.clock.now
    assert len(harness.queue) == 0
    remote = harness.backend.get("member", member.id)
    assert remote.payload["email"] == "ada@example.com"
    assert harness.backend.pushes[0]["kind"] is OperationKind.CREATE
    assert harness.engine.state is EngineState.IDLE


def test_local_edit_after_sync_is_pushed(harness):
    member = _synced_member(harness)
    harness.store.update(member, {"phone_number": "555-0100"})

    result = harness.engine.run_once()

    assert result.pushed == 1
    remote = harness.backend.get("member", member.id)
    assert remote.server_version == 2
    assert remote.payload["phone_number"] == "555-0100"
    stored = harness.member(member.id)
    assert stored.sync_status is SyncStatus.SYNCED
    assert stored.sync_version == 2


def test_pull_inserts_unknown_remote_entity(harness):
    harness.backend.seed(
        "member",
        {
            "id": "remote-1",
            "first_name": "Grace",
            "last_name": "Hopper",
            "email": "grace@example.com",
            "phone_number": None,
        },
    )

    result = harness.engine.run_once()

    assert result.pulled == 1
    stored = harness.member("remote-1")
    assert stored.full_name == "Grace Hopper"
    assert stored.sync_status is SyncStatus.SYNCED
    assert stored.sync_version == 1
    assert len(harness.queue) == 0


def test_pull_applies_remote_edit_to_synced_entity(harness):
    member = _synced_member(harness)
    harness.backend.edit("member", member.id, last_name="Byron")

    result = harness.engine.run_once()

    assert result.pulled == 1
    stored = harness.member(member.id)
    assert stored.last_name == "Byron"
    assert stored.sync_version == 2
    assert stored.meta.remote_version == 2
    assert stored.sync_status is SyncStatus.SYNCED


def test_pull_skips_versions_already_seen(harness):
    member = _synced_member(harness)
    harness.db.execute("DELETE FROM sync_cursors")

    result = harness.engine.run_once()

    assert result.pulled == 0
    assert harness.member(member.id).sync_version == 1


def test_pull_advances_cursor(harness):
    _synced_member(harness)
    first_cursor = harness.engine.cursor("member")
    assert first_cursor is not None

    harness.backend.seed(
        "member",
        {"id": "remote-2", "first_name": "Alan", "last_name": "Turing", "email": "alan@example.com"},
    )
    harness.engine.run_once()

    assert harness.engine.cursor("member") == harness.clock.now
    assert harness.engine.cursor("member") > first_cursor


def test_remote_delete_purges_synced_entity(harness):
    member = _synced_member(harness)
    harness.backend.delete("member", member.id)

    result = harness.engine.run_once()

    assert result.pulled == 1
    assert harness.member(member.id) is None


def test_local_delete_is_pushed_then_purged(harness):
    member = _synced_member(harness)

    assert harness.store.delete(member) is False
    assert harness.member(member.id).meta.deleted is True

    result = harness.engine.run_once()

    assert result.pushed == 1
    assert harness.backend.pushes[-1]["kind"] is OperationKind.DELETE
    assert harness.backend.get("member", member.id).deleted is True
    assert harness.member(member.id) is None
    assert len(harness.queue) == 0


def test_last_write_wins_keeps_newer_remote(harness):
    member = _synced_member(harness)
    _diverge(harness, member, remote_first=False)

    result = harness.engine.run_once()

    assert result.conflicts_resolved == 1
    assert result.pushed == 0
    stored = harness.member(member.id)
    assert stored.last_name == "Byron"
    assert stored.phone_number is None
    assert stored.sync_version == 3
    assert stored.sync_status is SyncStatus.SYNCED
    assert len(harness.queue) == 0


def test_last_write_wins_pushes_newer_local(harness):
    member = _synced_member(harness)
    _diverge(harness, member, remote_first=True)

    result = harness.engine.run_once()

    assert result.conflicts_resolved == 1
    assert result.pushed == 1
    remote = harness.backend.get("member", member.id)
    assert remote.server_version == 3
    assert remote.payload["phone_number"] == "555-0100"
    assert remote.payload["last_name"] == "Lovelace"
    stored = harness.member(member.id)
    assert stored.sync_status is SyncStatus.SYNCED
    assert stored.sync_version == 3


def test_field_merge_combines_disjoint_edits(make_harness):
    harness = make_harness(conflict_strategy=ConflictStrategy.FIELD_MERGE)
    member = _synced_member(harness)
    _diverge(harness, member, remote_first=True)

    result = harness.engine.run_once()

    assert result.conflicts_resolved == 1
    remote = harness.backend.get("member", member.id)
    assert remote.payload["last_name"] == "Byron"
    assert remote.payload["phone_number"] == "555-0100"
    stored = harness.member(member.id)
    assert stored.last_name == "Byron"
    assert stored.phone_number == "555-0100"
    assert stored.sync_status is SyncStatus.SYNCED


def test_manual_conflict_waits_for_decision(make_harness):
    harness = make_harness(conflict_strategy=ConflictStrategy.MANUAL)
    member = _synced_member(harness)
    _diverge(harness, member, remote_first=True)

    result = harness.engine.run_once()

    assert result.success is True
    assert result.conflicts_pending == 1
    assert harness.member(member.id).sync_status is SyncStatus.CONFLICT
    assert [op.state for op in harness.queue.all()] == [OperationState.BLOCKED]
    conflicts = harness.engine.pending_conflicts()
    assert len(conflicts) == 1
    assert conflicts[0].entity_id == member.id
    assert conflicts[0].pending is True
    assert any(issue.kind is ErrorKind.CONFLICT for issue in harness.feed.recent())

    again = harness.engine.run_once()
    assert again.pushed == 0
    assert again.conflicts_pending == 0


def test_manual_conflict_resolved_with_remote(make_harness):
    harness = make_harness(conflict_strategy=ConflictStrategy.MANUAL)
    member = _synced_member(harness)
    _diverge(harness, member, remote_first=True)
    harness.engine.run_once()
    conflict_id = harness.engine.pending_conflicts()[0].conflict_id

    record = harness.engine.resolve_conflict(conflict_id, "remote")

    assert record.winner == "remote"
    stored = harness.member(member.id)
    assert stored.last_name == "Byron"
    assert stored.phone_number is None
    assert stored.sync_status is SyncStatus.SYNCED
    assert len(harness.queue) == 0
    assert harness.engine.pending_conflicts() == []


def test_manual_conflict_resolved_with_local_is_pushed(make_harness):
    harness = make_harness(conflict_strategy=ConflictStrategy.MANUAL)
    member = _synced_member(harness)
    _diverge(harness, member, remote_first=True)
    harness.engine.run_once()
    conflict_id = harness.engine.pending_conflicts()[0].conflict_id

    harness.engine.resolve_conflict(conflict_id, "local")
    assert harness.member(member.id).sync_status is SyncStatus.PENDING

    result = harness.engine.run_once()

    assert result.pushed == 1
    remote = harness.backend.get("member", member.id)
    assert remote.payload["phone_number"] == "555-0100"
    assert remote.server_version == 3
    assert harness.member(member.id).sync_status is SyncStatus.SYNCED


def test_resolve_conflict_rejects_unknown_id_and_choice(make_harness):
    harness = make_harness(conflict_strategy=ConflictStrategy.MANUAL)
    member = _synced_member(harness)
    _diverge(harness, member, remote_first=True)
    harness.engine.run_once()
    conflict_id = harness.engine.pending_conflicts()[0].conflict_id

    with pytest.raises(NotFoundError):
        harness.engine.resolve_conflict("missing", "local")
    with pytest.raises(ValueError):
        harness.engine.resolve_conflict(conflict_id, "both")


def test_validation_error_fails_operation_until_retried(harness):
    member = harness.add_member()
    harness.backend.push_failures.append(ValidationError("email rejected", status=422))

    result = harness.engine.run_once()

    assert result.success is True
    assert result.failed == 1
    assert harness.member(member.id).sync_status is SyncStatus.ERROR
    assert len(harness.queue.failed()) == 1
    assert harness.feed.recent()[-1].kind is ErrorKind.VALIDATION

    assert harness.engine.retry_failed() == 1
    assert harness.member(member.id).sync_status is SyncStatus.PENDING

    retried = harness.engine.run_once()
    assert retried.pushed == 1
    assert harness.member(member.id).sync_status is SyncStatus.SYNCED


def test_network_error_requeues_and_backs_off(harness):
    first = harness.add_member()
    harness.add_member("Grace", "Hopper", "grace@example.com")
    harness.backend.push_failures.append(NetworkError("connection reset"))

    result = harness.engine.run_once()

    assert result.success is False
    assert result.requeued == 1
    pending = harness.queue.pending()
    assert len(pending) == 2
    assert pending[0].entity_id == first.id
    assert pending[0].attempts == 1
    assert pending[1].attempts == 0
    assert harness.engine.backoff_remaining > 0
    assert harness.feed.recent()[-1].kind is ErrorKind.NETWORK

    skipped = harness.engine.run_once()
    assert skipped.skipped is True

    forced = harness.engine.run_once(force=True)
    assert forced.success is True
    assert forced.pushed == 2
    assert harness.engine.backoff_remaining == 0


def test_retry_ceiling_marks_operation_failed(make_harness):
    harness = make_harness(max_attempts=2, backoff_base=0)
    member = harness.add_member()
    harness.backend.push_failures.extend([NetworkError("timeout"), NetworkError("timeout")])

    harness.engine.run_once()
    assert harness.queue.pending()[0].attempts == 1

    result = harness.engine.run_once()

    assert result.failed == 1
    failed = harness.queue.failed()
    assert len(failed) == 1
    assert failed[0].attempts == 2
    assert harness.member(member.id).sync_status is SyncStatus.ERROR
    assert harness.engine.run_once().pushed == 0


def test_pull_failure_keeps_cursor_and_backs_off(harness):
    harness.add_member()
    harness.backend.pull_failures.append(NetworkError("gateway timeout", status=504))

    result = harness.engine.run_once()

    assert result.pushed == 1
    assert result.success is False
    assert harness.engine.cursor("member") is None
    assert harness.engine.backoff_remaining > 0


def test_malformed_remote_record_is_reported(harness):
    harness.backend.seed("member", {"id": "broken"})

    result = harness.engine.run_once()

    assert result.pulled == 0
    assert harness.member("broken") is None
    assert result.errors
    assert harness.feed.recent()[-1].kind is ErrorKind.DATA


def test_edit_during_push_is_layered_and_sent_next(harness):
    member = harness.add_member()

    def _edit_while_in_flight():
        current = harness.store.get(Member, member.id)
        harness.store.update(current, {"phone_number": "555-0199"})

    harness.backend.before_push.append(_edit_while_in_flight)

    result = harness.engine.run_once()

    assert result.pushed == 2
    assert [push["client_version"] for push in harness.backend.pushes] == [1, 2]
    remote = harness.backend.get("member", member.id)
    assert remote.payload["phone_number"] == "555-0199"
    stored = harness.member(member.id)
    assert stored.sync_status is SyncStatus.SYNCED
    assert stored.sync_version == 2


def test_edit_after_rejection_replaces_failed_operation(harness):
    member = harness.add_member()
    harness.backend.push_failures.append(ValidationError("email rejected", status=422))
    harness.engine.run_once()
    assert harness.member(member.id).sync_status is SyncStatus.ERROR

    fixed = harness.store.update(harness.member(member.id), {"email": "ada@lovelace.org"})

    ops = harness.queue.operations_for(member.id)
    assert len(ops) == 1
    assert ops[0].state is OperationState.PENDING
    assert ops[0].kind is OperationKind.CREATE
    assert ops[0].attempts == 0
    assert ops[0].last_error is None

    result = harness.engine.run_once()

    assert result.pushed == 1
    last_push = harness.backend.pushes[-1]
    assert last_push["kind"] is OperationKind.CREATE
    assert last_push["client_version"] == fixed.sync_version == 2
    assert last_push["payload"]["email"] == "ada@lovelace.org"
    stored = harness.member(member.id)
    assert stored.sync_status is SyncStatus.SYNCED
    assert len(harness.queue) == 0


def test_unexpected_push_error_leaves_nothing_syncing(harness):
    member = harness.add_member()
    harness.add_member("Grace", "Hopper", "grace@example.com")
    harness.backend.push_failures.append(KeyError("server_version"))

    with pytest.raises(KeyError):
        harness.engine.run_once()

    assert harness.engine.state is EngineState.IDLE
    assert harness.queue.stats()["syncing"] == 0
    assert harness.queue.stats()["pending"] == 2
    assert harness.member(member.id).sync_status is SyncStatus.PENDING

    result = harness.engine.run_once()

    assert result.pushed == 2
    assert harness.member(member.id).sync_status is SyncStatus.SYNCED


def test_offline_edits_coalesce_into_one_push_when_back_online(harness):
    member = harness.add_member()
    harness.monitor.update(ConnectivityState.offline("airplane mode"))
    harness.clock.advance()
    updated = harness.store.update(member, {"phone_number": "555-0100"})
    assert harness.engine.run_once().skipped is True

    harness.monitor.update(ConnectivityState.online(ConnectionType.WIFI))
    result = harness.engine.run_once()

    assert result.pushed == 1
    assert len(harness.backend.pushes) == 1
    push = harness.backend.pushes[0]
    assert push["kind"] is OperationKind.CREATE
    assert push["client_version"] == 2
    assert push["payload"]["phone_number"] == "555-0100"
    stored = harness.member(member.id)
    assert stored.sync_version == updated.sync_version == 2
    assert stored.sync_status is SyncStatus.SYNCED
    assert stored.meta.last_synced_at == harness.clock.now


def test_newer_remote_wins_over_several_local_versions(harness):
    member = _synced_member(harness)
    local = harness.store.update(member, {"phone_number": "555-0100"})
    local = harness.store.update(local, {"phone_number": "555-0101"})
    assert local.sync_version == 3
    harness.clock.advance()
    harness.backend.edit("member", member.id, first_name="Augusta")
    harness.backend.edit("member", member.id, last_name="King")
    remote = harness.backend.edit("member", member.id, last_name="Byron")
    assert remote.server_version == 4
    harness.clock.advance()

    result = harness.engine.run_once()

    assert result.conflicts_resolved == 1
    assert result.pushed == 0
    stored = harness.member(member.id)
    assert stored.sync_version == 5
    assert stored.first_name == "Augusta"
    assert stored.last_name == "Byron"
    assert stored.phone_number is None
    assert stored.sync_status is SyncStatus.SYNCED
    assert len(harness.queue) == 0


def test_offline_run_is_skipped(harness):
    harness.add_member()
    harness.monitor.update(ConnectivityState.offline("airplane mode"))

    result = harness.engine.run_once()

    assert result.skipped is True
    assert "Offline" in result.message
    assert harness.backend.pushes == []
    assert len(harness.queue) == 1


def test_disabled_engine_skips(make_harness):
    harness = make_harness(enabled=False)
    harness.add_member()

    result = harness.engine.run_once()

    assert result.skipped is True
    assert len(harness.queue) == 1


def test_restart_recovers_interrupted_push(tmp_path: Path, make_harness):
    path = tmp_path / "studio.db"
    first = make_harness(Database(path).open())
    member = first.add_member()
    batch = first.queue.dequeue_batch(10)
    first.store.mark_syncing("member", member.id)
    first.db.close()

    second = make_harness(Database(path).open())
    try:
        assert second.queue.pending() == []
        assert second.engine.recover() == 1
        assert second.queue.pending()[0].op_id == batch.operations[0].op_id
        assert second.member(member.id).sync_status is SyncStatus.PENDING

        result = second.engine.run_once()
        assert result.pushed == 1
        assert second.member(member.id).sync_status is SyncStatus.SYNCED
    finally:
        second.db.close()


def test_should_auto_sync_respects_quality_floor(harness):
    assert harness.engine.should_auto_sync() is True
    cellular = ConnectivityState.online(ConnectionType.CELLULAR)
    assert harness.engine.should_auto_sync(cellular) is False
    assert harness.engine.should_auto_sync(ConnectivityState.offline()) is False


def test_background_loop_syncs_when_connectivity_returns(harness):
    harness.add_member()
    harness.monitor.update(ConnectivityState.offline())
    harness.engine.start()
    try:
        assert harness.engine.running is True
        harness.monitor.update(ConnectivityState.online(ConnectionType.WIRED, interface="eth0"))
        deadline = time.monotonic() + 5
        while len(harness.queue) and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        harness.engine.stop()

    assert len(harness.queue) == 0
    assert harness.engine.running is False


def test_status_reports_queue_and_connectivity(harness):
    harness.add_member()

    status = harness.engine.status()

    assert status["state"] == "idle"
    assert status["queue"]["pending"] == 1
    assert status["entities"]["pending"] == 1
    assert status["connectivity"]["connection"] == "wifi"
    assert status["conflicts"] == 0


def test_settings_backoff_is_exponential_and_capped():
    settings = SyncSettings(backoff_base=2, backoff_max=10)

    assert settings.backoff_delay(0) == 0
    assert settings.backoff_delay(1) == 2
    assert settings.backoff_delay(2) == 4
    assert settings.backoff_delay(5) == 10


def test_settings_from_config_validates_strategy_and_types():
    settings = SyncSettings.from_config(
        {"sync": {"conflict_strategy": "field_merge", "entity_types": ["member"], "min_quality": "poor"}}
    )
    assert settings.conflict_strategy is ConflictStrategy.FIELD_MERGE
    assert settings.entity_types == ("member",)

    with pytest.raises(ConfigurationError):
        SyncSettings.from_config({"sync": {"conflict_strategy": "coin_flip"}})
    with pytest.raises(ConfigurationError):
        SyncSettings.from_config({"sync": {"entity_types": ["instructor"]}})
