"""Connectivity monitor that classifies reachability and link quality."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import logging
import socket
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .configuration import (
    DEFAULT_CELLULAR_PREFIXES,
    DEFAULT_WIRED_PREFIXES,
    DEFAULT_WIRELESS_PREFIXES,
    ConfigurationBundle,
)
from .store.entities import format_timestamp, utcnow

try:  # pragma: no cover - exercised via tests using monkeypatch
    import psutil  # type: ignore
except ImportError:  # pragma: no cover
    psutil = None  # type: ignore

logger = logging.getLogger("studiosync.connectivity")

DEFAULT_CONNECTIVITY_TIMEOUT = 1.0
DEFAULT_POLL_INTERVAL = 15.0


class ConnectionType(str, Enum):
    WIRED = "wired"
    WIFI = "wifi"
    CELLULAR = "cellular"
    OTHER = "other"
    NONE = "none"


class NetworkQuality(str, Enum):
    """Link quality, ordered from unusable to best."""

    NONE = "none"
    POOR = "poor"
    GOOD = "good"
    EXCELLENT = "excellent"

    @property
    def rank(self) -> int:
        return _QUALITY_ORDER.index(self)

    def at_least(self, other: "NetworkQuality") -> bool:
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Any, default: "NetworkQuality") -> "NetworkQuality":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default


_QUALITY_ORDER = [
    NetworkQuality.NONE,
    NetworkQuality.POOR,
    NetworkQuality.GOOD,
    NetworkQuality.EXCELLENT,
]

_QUALITY_BY_TYPE = {
    ConnectionType.WIRED: NetworkQuality.EXCELLENT,
    ConnectionType.WIFI: NetworkQuality.GOOD,
    ConnectionType.CELLULAR: NetworkQuality.POOR,
    ConnectionType.OTHER: NetworkQuality.POOR,
    ConnectionType.NONE: NetworkQuality.NONE,
}


def quality_for(connection: ConnectionType) -> NetworkQuality:
    return _QUALITY_BY_TYPE[connection]


@dataclass(frozen=True)
class ConnectivityState:
    """A point-in-time view of reachability."""

    connection: ConnectionType = ConnectionType.NONE
    quality: NetworkQuality = NetworkQuality.NONE
    interface: Optional[str] = None
    checked_at: Optional[datetime] = None
    detail: str = ""

    @property
    def is_online(self) -> bool:
        return self.connection is not ConnectionType.NONE

    @classmethod
    def offline(cls, detail: str = "", checked_at: Optional[datetime] = None) -> "ConnectivityState":
        return cls(checked_at=checked_at, detail=detail)

    @classmethod
    def online(
        cls,
        connection: ConnectionType = ConnectionType.WIFI,
        interface: Optional[str] = None,
        checked_at: Optional[datetime] = None,
        detail: str = "",
    ) -> "ConnectivityState":
        return cls(
            connection=connection,
            quality=quality_for(connection),
            interface=interface,
            checked_at=checked_at,
            detail=detail,
        )

    def same_link(self, other: "ConnectivityState") -> bool:
        return (self.connection, self.quality, self.interface) == (
            other.connection,
            other.quality,
            other.interface,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection": self.connection.value,
            "quality": self.quality.value,
            "interface": self.interface,
            "online": self.is_online,
            "checked_at": format_timestamp(self.checked_at),
            "detail": self.detail,
        }


@dataclass
class ConnectivitySettings:
    """Runtime configuration for the connectivity monitor."""

    enabled: bool = True
    poll_interval: float = DEFAULT_POLL_INTERVAL
    connectivity_checks: Sequence[str] = ()
    connectivity_timeout: float = DEFAULT_CONNECTIVITY_TIMEOUT
    wired_prefixes: Sequence[str] = field(default_factory=lambda: tuple(DEFAULT_WIRED_PREFIXES))
    wireless_prefixes: Sequence[str] = field(default_factory=lambda: tuple(DEFAULT_WIRELESS_PREFIXES))
    cellular_prefixes: Sequence[str] = field(default_factory=lambda: tuple(DEFAULT_CELLULAR_PREFIXES))

    @classmethod
    def from_bundle(cls, bundle: ConfigurationBundle) -> "ConnectivitySettings":
        raw = bundle.merged.get("connectivity", {}) if bundle.merged else {}

        def _string_list(key: str, default: Sequence[str]) -> Tuple[str, ...]:
            values = raw.get(key, default)
            if isinstance(values, str):
                values = [values]
            normalized: List[str] = []
            if isinstance(values, Sequence):
                for item in values:
                    text = str(item).strip()
                    if text:
                        normalized.append(text)
            return tuple(normalized)

        def _positive(key: str, default: float) -> float:
            try:
                value = float(raw.get(key, default))
            except (TypeError, ValueError):
                return default
            return value if value > 0 else default

        return cls(
            enabled=bool(raw.get("enabled", True)),
            poll_interval=_positive("poll_interval", DEFAULT_POLL_INTERVAL),
            connectivity_checks=_string_list("connectivity_checks", ()),
            connectivity_timeout=_positive("connectivity_timeout", DEFAULT_CONNECTIVITY_TIMEOUT),
            wired_prefixes=_string_list("wired_prefixes", DEFAULT_WIRED_PREFIXES),
            wireless_prefixes=_string_list("wireless_prefixes", DEFAULT_WIRELESS_PREFIXES),
            cellular_prefixes=_string_list("cellular_prefixes", DEFAULT_CELLULAR_PREFIXES),
        )


StateListener = Callable[[ConnectivityState], None]


class ConnectivityMonitor:
    """Observes reachability and notifies subscribers of changes.

    The monitor never starts a sync itself. ``update`` accepts a state pushed
    by a platform reachability callback; ``start`` polls ``probe`` on a
    background thread instead.
    """

    def __init__(
        self,
        settings: Optional[ConnectivitySettings] = None,
        initial: Optional[ConnectivityState] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or ConnectivitySettings()
        self.clock = clock
        self._state = initial or ConnectivityState.offline("not yet probed")
        self._listeners: List[StateListener] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def current(self) -> ConnectivityState:
        with self._lock:
            return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def update(self, state: ConnectivityState) -> bool:
        """Record a new state; listeners hear about it only if the link changed."""
        with self._lock:
            previous = self._state
            self._state = state
            changed = not previous.same_link(state)
            listeners = list(self._listeners) if changed else []
        if changed:
            logger.info(
                "Connectivity changed: %s/%s -> %s/%s",
                previous.connection.value,
                previous.quality.value,
                state.connection.value,
                state.quality.value,
            )
        for listener in listeners:
            try:
                listener(state)
            except Exception:  # pragma: no cover - listener bugs must not stop polling
                logger.exception("Connectivity listener failed")
        return changed

    def refresh(self) -> ConnectivityState:
        state = self.probe()
        self.update(state)
        return state

    def probe(self) -> ConnectivityState:
        """Inspect interfaces (and optional reachability targets) once."""
        now = self.clock()
        if psutil is None:
            detail = "psutil is not installed; interface inspection unavailable."
            logger.error(detail)
            return ConnectivityState.offline(detail, checked_at=now)

        interfaces = _collect_up_interfaces()
        if not interfaces:
            return ConnectivityState.offline("no interfaces up", checked_at=now)

        classified = sorted(
            ((self.classify(name), name) for name in interfaces),
            key=lambda item: (-quality_for(item[0]).rank, item[1]),
        )
        connection, interface = classified[0]

        if self.settings.connectivity_checks:
            results = _run_connectivity_checks(
                self.settings.connectivity_checks,
                timeout=self.settings.connectivity_timeout,
            )
            reachable = sum(1 for entry in results if entry.get("reachable"))
            if not reachable:
                return ConnectivityState.offline(
                    f"{interface} up but 0/{len(results)} targets reachable",
                    checked_at=now,
                )
            detail = f"{reachable}/{len(results)} targets reachable"
        else:
            detail = f"{len(interfaces)} interfaces up"

        return ConnectivityState.online(connection, interface=interface, checked_at=now, detail=detail)

    def classify(self, name: str) -> ConnectionType:
        lowered = name.lower()
        if _has_prefix(lowered, self.settings.wired_prefixes):
            return ConnectionType.WIRED
        if _has_prefix(lowered, self.settings.wireless_prefixes):
            return ConnectionType.WIFI
        if _has_prefix(lowered, self.settings.cellular_prefixes):
            return ConnectionType.CELLULAR
        return ConnectionType.OTHER

    # --- Background polling ---

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if not self.settings.enabled or self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            name="studiosync-connectivity",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Connectivity polling every %.1fs", self.settings.poll_interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.refresh()
            except Exception:  # pragma: no cover - keep polling after probe failures
                logger.exception("Connectivity probe failed")
            self._stop.wait(self.settings.poll_interval)


def _has_prefix(name: str, prefixes: Sequence[str]) -> bool:
    return any(name.startswith(prefix.lower()) for prefix in prefixes)


def _collect_up_interfaces() -> List[str]:
    addrs = psutil.net_if_addrs()  # type: ignore[attr-defined]
    stats = psutil.net_if_stats()  # type: ignore[attr-defined]
    names: List[str] = []
    for name, entries in addrs.items():
        if _is_loopback(name, entries):
            continue
        entry_stats = stats.get(name)
        if not getattr(entry_stats, "isup", False):
            continue
        has_ip = any(
            getattr(addr, "family", None) in (socket.AF_INET, socket.AF_INET6)
            for addr in entries
        )
        if has_ip:
            names.append(name)
    return sorted(names)


def _is_loopback(name: str, entries: Sequence[Any]) -> bool:
    lowered = name.lower()
    if lowered.startswith("lo"):
        return True
    for addr in entries:
        address = getattr(addr, "address", "")
        if isinstance(address, str) and (
            address.startswith("127.") or address in {"::1", "0:0:0:0:0:0:0:1"}
        ):
            return True
    return False


def _run_connectivity_checks(
    targets: Sequence[str],
    *,
    timeout: float,
) -> List[Dict[str, Any]]:
    results: List[Dict[str, Any]] = []
    for target in targets:
        host, port = _parse_target(target)
        formatted = f"{host}:{port}"
        try:
            with socket.create_connection((host, port), timeout=timeout):
                results.append({"target": formatted, "reachable": True})
        except OSError as exc:
            results.append({"target": formatted, "reachable": False, "detail": str(exc)})
    return results


def _parse_target(target: str) -> Tuple[str, int]:
    default_port = 443
    stripped = target.strip()
    if not stripped:
        return ("localhost", default_port)
    if stripped.count(":") == 1 and stripped.split(":", 1)[1].isdigit():
        host, raw_port = stripped.split(":", 1)
        return (host or "localhost", int(raw_port))
    return (stripped, default_port)


__all__ = [
    "ConnectionType",
    "ConnectivityMonitor",
    "ConnectivitySettings",
    "ConnectivityState",
    "NetworkQuality",
    "quality_for",
]
