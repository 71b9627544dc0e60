"""Tests for startup wiring."""

from __future__ import annotations

from pathlib import Path

import pytest

from studiosync.configuration import ConfigurationBundle, Diagnostic
from studiosync.context import build_context, resolve_store_path
from studiosync.errors import ConfigurationError
from studiosync.store.entities import Member
from studiosync.sync.remote import HttpSyncBackend


def _bundle(home: Path, **sections) -> ConfigurationBundle:
    merged = {"store": {"path": ":memory:"}}
    merged.update(sections)
    return ConfigurationBundle(home_dir=home, status="ready", merged=merged)


def test_context_wires_every_component(studio):
    member = studio.members.create_member("Ada", "Lovelace", "ada@example.com")

    assert studio.store.get(Member, member.id) is not None
    assert len(studio.queue) == 1
    assert studio.engine.settings.entity_types == ("member",)
    assert studio.engine.settings.enabled is True


def test_missing_base_url_disables_sync(tmp_path: Path):
    context = build_context(_bundle(tmp_path))
    try:
        assert isinstance(context.backend, HttpSyncBackend)
        assert context.engine.settings.enabled is False
        assert context.engine.run_once().skipped is True
    finally:
        context.close()


def test_configured_remote_keeps_sync_enabled(tmp_path: Path):
    context = build_context(_bundle(tmp_path, remote={"base_url": "https://studio.example.com"}))
    try:
        assert context.engine.settings.enabled is True
    finally:
        context.close()


def test_invalid_bundle_is_rejected(tmp_path: Path):
    bundle = ConfigurationBundle(
        home_dir=tmp_path,
        status="invalid",
        diagnostics=[Diagnostic(level="error", message="bad yaml")],
    )

    with pytest.raises(ConfigurationError, match="bad yaml"):
        build_context(bundle)


def test_unknown_strategy_fails_at_startup(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        build_context(_bundle(tmp_path, sync={"conflict_strategy": "coin_flip"}))


def test_store_path_resolves_under_home(tmp_path: Path):
    assert resolve_store_path(_bundle(tmp_path)) == ":memory:"

    relative = ConfigurationBundle(home_dir=tmp_path, status="ready", merged={})
    assert resolve_store_path(relative) == str(tmp_path / "state" / "studiosync.db")


def test_file_store_recovers_queue_across_restart(tmp_path: Path):
    bundle = ConfigurationBundle(home_dir=tmp_path, status="ready", merged={})
    first = build_context(bundle)
    member = first.members.create_member("Ada", "Lovelace", "ada@example.com")
    first.queue.dequeue_batch(10)
    first.close()

    second = build_context(bundle)
    try:
        assert second.members.get_member(member.id).email == "ada@example.com"
        assert second.queue.stats()["pending"] == 1
        assert second.queue.stats()["syncing"] == 0
    finally:
        second.close()
