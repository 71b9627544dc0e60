"""Builds the fully wired runtime context at startup."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .configuration import ConfigurationBundle
from .connectivity import ConnectivityMonitor, ConnectivitySettings
from .errors import ConfigurationError, ErrorFeed, StudioSyncError
from .services import (
    AttendanceService,
    BookingService,
    ClassService,
    MemberService,
    PaymentService,
    StudioOwnerService,
    SubscriptionService,
)
from .store.database import MEMORY_PATH, Database
from .store.entities import utcnow
from .store.entity_store import EntityStore
from .sync.conflict import ConflictResolver
from .sync.engine import SyncEngine, SyncSettings
from .sync.protocol import SyncBackend
from .sync.queue import SyncQueue
from .sync.remote import HttpSyncBackend, RemoteSettings
from .sync.tracker import ChangeTracker

logger = logging.getLogger("studiosync.context")


@dataclass
class StudioContext:
    """Every runtime component, constructed once and passed explicitly."""

    bundle: ConfigurationBundle
    db: Database
    store: EntityStore
    queue: SyncQueue
    tracker: ChangeTracker
    resolver: ConflictResolver
    backend: SyncBackend
    monitor: ConnectivityMonitor
    engine: SyncEngine
    feed: ErrorFeed
    owners: StudioOwnerService
    members: MemberService
    classes: ClassService
    bookings: BookingService
    subscriptions: SubscriptionService
    payments: PaymentService
    attendance: AttendanceService

    def start(self) -> None:
        """Start connectivity polling and the background sync loop."""
        self.monitor.start()
        if self.engine.settings.enabled:
            self.engine.start()

    def close(self) -> None:
        self.engine.stop()
        self.monitor.stop()
        self.db.close()


def resolve_store_path(bundle: ConfigurationBundle) -> str:
    raw = str(bundle.section("store").get("path") or "state/studiosync.db")
    if raw == MEMORY_PATH:
        return raw
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = bundle.home_dir / path
    return str(path)


def build_context(
    bundle: ConfigurationBundle,
    backend: Optional[SyncBackend] = None,
    monitor: Optional[ConnectivityMonitor] = None,
    clock: Callable[[], datetime] = utcnow,
) -> StudioContext:
    """Wire every component or fail here, never mid-run."""

    if bundle.status == "invalid":
        problems = "; ".join(diag.message for diag in bundle.errors) or "invalid configuration"
        raise ConfigurationError(f"Configuration is invalid: {problems}")

    settings = SyncSettings.from_config(bundle.merged)
    remote_settings = RemoteSettings.from_config(bundle.merged)
    if backend is None:
        if settings.enabled and not remote_settings.configured:
            logger.warning("remote.base_url is not set; running offline-only with sync disabled.")
            settings = dataclasses.replace(settings, enabled=False)
        backend = HttpSyncBackend(remote_settings)

    store_path = resolve_store_path(bundle)
    db = Database(store_path)
    try:
        db.open()
    except StudioSyncError as exc:
        raise ConfigurationError(f"Unable to open the local store: {exc}") from exc

    try:
        queue = SyncQueue(db, max_attempts=settings.max_attempts, clock=clock)
        tracker = ChangeTracker(queue, clock=clock)
        store = EntityStore(db, tracker, clock=clock)
        resolver = ConflictResolver(settings.conflict_strategy)
        feed = ErrorFeed(max_entries=int(bundle.section("errors").get("feed_size", 1000)))
        if monitor is None:
            monitor = ConnectivityMonitor(ConnectivitySettings.from_bundle(bundle), clock=clock)
        engine = SyncEngine(
            store,
            queue,
            backend,
            resolver,
            settings=settings,
            monitor=monitor,
            feed=feed,
            clock=clock,
        )
        engine.recover()
    except StudioSyncError as exc:
        db.close()
        if isinstance(exc, ConfigurationError):
            raise
        raise ConfigurationError(f"Unable to prepare sync state: {exc}") from exc

    logger.info("Context ready (store=%s, sync=%s)", store_path, "on" if settings.enabled else "off")
    return StudioContext(
        bundle=bundle,
        db=db,
        store=store,
        queue=queue,
        tracker=tracker,
        resolver=resolver,
        backend=backend,
        monitor=monitor,
        engine=engine,
        feed=feed,
        owners=StudioOwnerService(store, clock),
        members=MemberService(store, clock),
        classes=ClassService(store, clock),
        bookings=BookingService(store, clock),
        subscriptions=SubscriptionService(store, clock),
        payments=PaymentService(store, clock),
        attendance=AttendanceService(store, clock),
    )


__all__ = ["StudioContext", "build_context", "resolve_store_path"]
