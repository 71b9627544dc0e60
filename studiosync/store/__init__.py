"""Local-first persistence for studio records."""

from __future__ import annotations

from .database import Database, MEMORY_PATH
from .entities import (
    ENTITY_TYPES,
    AttendanceRecord,
    AttendanceStatus,
    Booking,
    BookingStatus,
    ClassCategory,
    EntityRecord,
    EntitySnapshot,
    Member,
    Payment,
    PaymentStatus,
    PaymentType,
    StudioOwner,
    Subscription,
    SubscriptionPlan,
    SyncMetadata,
    SyncStatus,
    YogaClass,
    entity_class,
)
from .entity_store import EntityStore

__all__ = [
    # Storage
    "Database",
    "EntityStore",
    "MEMORY_PATH",
    # Records
    "ENTITY_TYPES",
    "AttendanceRecord",
    "Booking",
    "EntityRecord",
    "EntitySnapshot",
    "Member",
    "Payment",
    "StudioOwner",
    "Subscription",
    "SyncMetadata",
    "YogaClass",
    "entity_class",
    # Enums
    "AttendanceStatus",
    "BookingStatus",
    "ClassCategory",
    "PaymentStatus",
    "PaymentType",
    "SubscriptionPlan",
    "SyncStatus",
]
