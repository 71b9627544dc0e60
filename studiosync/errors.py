"""Error taxonomy and the observable sync error feed."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger("studiosync.errors")


class ErrorKind(str, Enum):
    """Broad error categories surfaced to the UI layer."""

    NETWORK = "network"
    DATA = "data"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    SYSTEM = "system"
    UNKNOWN = "unknown"

    @property
    def display_title(self) -> str:
        return _DISPLAY_TITLES[self]

    @property
    def recovery_suggestion(self) -> str:
        return _RECOVERY_SUGGESTIONS[self]

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.NETWORK, ErrorKind.DATA)


_DISPLAY_TITLES = {
    ErrorKind.NETWORK: "Connection Error",
    ErrorKind.DATA: "Data Error",
    ErrorKind.VALIDATION: "Validation Error",
    ErrorKind.CONFLICT: "Sync Conflict",
    ErrorKind.SYSTEM: "System Error",
    ErrorKind.UNKNOWN: "Error",
}

_RECOVERY_SUGGESTIONS = {
    ErrorKind.NETWORK: "Check your internet connection and try again.",
    ErrorKind.DATA: "The data might be corrupted. Please try again or contact support.",
    ErrorKind.VALIDATION: "Please check your input and try again.",
    ErrorKind.CONFLICT: "Choose which version of the record to keep.",
    ErrorKind.SYSTEM: "Please restart the app and try again.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again.",
}


class StudioSyncError(Exception):
    """Base exception for studiosync errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str = "",
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.entity_type = entity_type
        self.entity_id = entity_id

    def __str__(self) -> str:
        base = super().__str__()
        details = []
        if self.entity_type:
            details.append(f"entity: {self.entity_type}")
        if self.entity_id:
            details.append(f"id: {self.entity_id}")
        return f"{base} ({', '.join(details)})" if details else base


class PersistenceError(StudioSyncError):
    """Local storage is unavailable (disk full, corruption, closed store)."""

    kind = ErrorKind.SYSTEM


class NotFoundError(StudioSyncError):
    """The requested entity does not exist or has been deleted."""

    kind = ErrorKind.DATA


class ConcurrentModificationError(StudioSyncError):
    """The stored sync_version no longer matches the caller's snapshot."""

    kind = ErrorKind.DATA

    def __init__(
        self,
        message: str = "",
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ) -> None:
        super().__init__(message, entity_type=entity_type, entity_id=entity_id)
        self.expected_version = expected_version
        self.actual_version = actual_version


class NetworkError(StudioSyncError):
    """Transient remote failure (timeout, connection error, 5xx)."""

    kind = ErrorKind.NETWORK

    def __init__(self, message: str = "", *, status: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status = status


class ValidationError(StudioSyncError):
    """Permanent rejection by the remote; needs user action."""

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str = "",
        *,
        status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.status = status
        self.details = details or {}


class ConflictError(StudioSyncError):
    """The remote holds a diverging version. Not a failure: resolve it."""

    kind = ErrorKind.CONFLICT

    def __init__(self, message: str = "", *, remote: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.remote = remote


class ConfigurationError(StudioSyncError):
    """The runtime context could not be wired at startup."""

    kind = ErrorKind.SYSTEM


class InputError(ValueError):
    """Local input validation failed before anything was written."""

    kind = ErrorKind.VALIDATION


def error_kind(error: BaseException) -> ErrorKind:
    return getattr(error, "kind", ErrorKind.UNKNOWN)


@dataclass
class SyncIssue:
    """A sync-path problem surfaced asynchronously to the UI layer."""

    kind: ErrorKind
    message: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    op_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_error(
        cls,
        error: BaseException,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        op_id: Optional[str] = None,
    ) -> "SyncIssue":
        return cls(
            kind=error_kind(error),
            message=str(error),
            entity_type=entity_type or getattr(error, "entity_type", None),
            entity_id=entity_id or getattr(error, "entity_id", None),
            op_id=op_id,
        )

    @property
    def display_title(self) -> str:
        return self.kind.display_title

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "op_id": self.op_id,
            "timestamp": self.timestamp.isoformat(),
        }


IssueListener = Callable[[SyncIssue], None]


class ErrorFeed:
    """Bounded, thread-safe feed of sync issues with subscriber callbacks."""

    def __init__(self, max_entries: int = 1000) -> None:
        self._issues: Deque[SyncIssue] = deque(maxlen=max(1, max_entries))
        self._listeners: List[IssueListener] = []
        self._lock = threading.Lock()
        self.total = 0

    def publish(self, issue: SyncIssue) -> None:
        with self._lock:
            self._issues.append(issue)
            self.total += 1
            listeners = list(self._listeners)
        logger.warning(
            "%s: %s (%s %s)",
            issue.display_title,
            issue.message,
            issue.entity_type or "-",
            issue.entity_id or "-",
        )
        for listener in listeners:
            try:
                listener(issue)
            except Exception:  # pragma: no cover - listener bugs must not stop sync
                logger.exception("Error feed listener failed")

    def subscribe(self, listener: IssueListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def recent(self, limit: Optional[int] = None) -> List[SyncIssue]:
        with self._lock:
            issues = list(self._issues)
        if limit is not None:
            return issues[-limit:]
        return issues

    def for_entity(self, entity_id: str) -> List[SyncIssue]:
        return [issue for issue in self.recent() if issue.entity_id == entity_id]

    def clear(self) -> None:
        with self._lock:
            self._issues.clear()


__all__ = [
    "ConcurrentModificationError",
    "ConfigurationError",
    "ConflictError",
    "ErrorFeed",
    "ErrorKind",
    "InputError",
    "NetworkError",
    "NotFoundError",
    "PersistenceError",
    "StudioSyncError",
    "SyncIssue",
    "ValidationError",
    "error_kind",
]
