"""Studio domain records and the sync metadata envelope they carry."""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Type


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_entity_id() -> str:
    return uuid.uuid4().hex


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SyncStatus(str, Enum):
    """Sync state of a locally stored entity."""
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass
class SyncMetadata:
    """Envelope shared by every stored record."""

    id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced_at: Optional[datetime] = None
    sync_version: int = 1
    remote_version: Optional[int] = None  # last version the remote confirmed
    deleted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "sync_status": self.sync_status.value,
            "last_synced_at": format_timestamp(self.last_synced_at),
            "sync_version": self.sync_version,
            "remote_version": self.remote_version,
            "deleted": self.deleted,
        }


class EntityRecord:
    """Behaviour shared by the domain dataclasses below.

    Subclasses are dataclasses whose last field is ``meta``. Datetime and enum
    fields are listed so payloads stay plain JSON.
    """

    entity_type: ClassVar[str] = ""
    datetime_fields: ClassVar[Tuple[str, ...]] = ()
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {}

    meta: SyncMetadata

    @property
    def id(self) -> str:
        return self.meta.id

    @property
    def sync_status(self) -> SyncStatus:
        return self.meta.sync_status

    @property
    def sync_version(self) -> int:
        return self.meta.sync_version

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls) if f.name != "meta")  # type: ignore[arg-type]

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.meta.id}
        for name in self.field_names():
            value = getattr(self, name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = format_timestamp(value)
            payload[name] = value
        return payload

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        meta: Optional[SyncMetadata] = None,
    ):
        values: Dict[str, Any] = {}
        for name in cls.field_names():
            if name not in payload:
                continue
            value = payload[name]
            if value is not None and name in cls.datetime_fields:
                value = parse_timestamp(value)
            elif value is not None and name in cls.enum_fields:
                value = cls.enum_fields[name](value)
            values[name] = value
        record = cls(**values)  # type: ignore[call-arg]
        record.meta = meta or SyncMetadata(id=str(payload.get("id") or ""))
        return record

    def copy(self):
        return copy.deepcopy(self)


class ClassCategory(str, Enum):
    HATHA = "hatha"
    VINYASA = "vinyasa"
    YIN = "yin"
    RESTORATIVE = "restorative"
    POWER = "power"
    MEDITATION = "meditation"
    BEGINNER = "beginner"
    ADVANCED = "advanced"


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    WAITLIST = "waitlist"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class SubscriptionPlan(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    UNLIMITED = "unlimited"
    DROP_IN = "drop_in"


class PaymentType(str, Enum):
    SUBSCRIPTION = "subscription"
    DROP_IN = "drop_in"
    WORKSHOP = "workshop"
    MERCHANDISE = "merchandise"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    EXCUSED = "excused"


@dataclass
class StudioOwner(EntityRecord):
    entity_type: ClassVar[str] = "studio_owner"

    email: str
    first_name: str
    last_name: str
    studio_name: str
    meta: SyncMetadata = field(default_factory=SyncMetadata)


@dataclass
class Member(EntityRecord):
    entity_type: ClassVar[str] = "member"

    first_name: str
    last_name: str
    email: str
    phone_number: Optional[str] = None
    meta: SyncMetadata = field(default_factory=SyncMetadata)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class YogaClass(EntityRecord):
    entity_type: ClassVar[str] = "yoga_class"
    datetime_fields: ClassVar[Tuple[str, ...]] = ("start_time", "end_time")
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {"category": ClassCategory}

    name: str
    description: str
    instructor_name: str
    category: ClassCategory
    capacity: int
    duration: int  # minutes
    start_time: datetime
    end_time: Optional[datetime] = None
    meta: SyncMetadata = field(default_factory=SyncMetadata)

    def __post_init__(self) -> None:
        if self.end_time is None and self.start_time is not None:
            self.end_time = self.start_time + timedelta(minutes=self.duration)


@dataclass
class Booking(EntityRecord):
    entity_type: ClassVar[str] = "booking"
    datetime_fields: ClassVar[Tuple[str, ...]] = ("booked_at",)
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {"status": BookingStatus}

    member_id: str
    class_id: str
    status: BookingStatus = BookingStatus.CONFIRMED
    booked_at: Optional[datetime] = None
    notes: Optional[str] = None
    meta: SyncMetadata = field(default_factory=SyncMetadata)


@dataclass
class Subscription(EntityRecord):
    entity_type: ClassVar[str] = "subscription"
    datetime_fields: ClassVar[Tuple[str, ...]] = ("start_date", "end_date")
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {"plan": SubscriptionPlan}

    member_id: str
    plan: SubscriptionPlan
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    usage_count: int = 0
    max_usage: Optional[int] = None
    meta: SyncMetadata = field(default_factory=SyncMetadata)

    def is_current(self, at: datetime) -> bool:
        if not self.is_active or not (self.start_date <= at <= self.end_date):
            return False
        return self.max_usage is None or self.usage_count < self.max_usage


@dataclass
class Payment(EntityRecord):
    entity_type: ClassVar[str] = "payment"
    datetime_fields: ClassVar[Tuple[str, ...]] = ("paid_at",)
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {
        "payment_type": PaymentType,
        "status": PaymentStatus,
    }

    member_id: str
    amount: float
    payment_type: PaymentType
    currency: str = "USD"
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    meta: SyncMetadata = field(default_factory=SyncMetadata)


@dataclass
class AttendanceRecord(EntityRecord):
    entity_type: ClassVar[str] = "attendance_record"
    datetime_fields: ClassVar[Tuple[str, ...]] = ("checked_in_at",)
    enum_fields: ClassVar[Dict[str, Type[Enum]]] = {"status": AttendanceStatus}

    member_id: str
    class_id: str
    status: AttendanceStatus = AttendanceStatus.ABSENT
    checked_in_at: Optional[datetime] = None
    notes: Optional[str] = None
    meta: SyncMetadata = field(default_factory=SyncMetadata)


ENTITY_TYPES: Dict[str, Type[EntityRecord]] = {
    cls.entity_type: cls
    for cls in (
        StudioOwner,
        Member,
        YogaClass,
        Booking,
        Subscription,
        Payment,
        AttendanceRecord,
    )
}


def entity_class(entity_type: str) -> Type[EntityRecord]:
    try:
        return ENTITY_TYPES[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type '{entity_type}'.") from None


@dataclass
class EntitySnapshot:
    """A version of one entity as seen by one side of a sync."""

    entity_type: str
    entity_id: str
    payload: Dict[str, Any]
    updated_at: datetime
    sync_version: int
    deleted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "updated_at": format_timestamp(self.updated_at),
            "sync_version": self.sync_version,
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EntitySnapshot":
        return cls(
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            payload=dict(data.get("payload") or {}),
            updated_at=parse_timestamp(data["updated_at"]),  # type: ignore[arg-type]
            sync_version=int(data["sync_version"]),
            deleted=bool(data.get("deleted", False)),
        )


__all__ = [
    "AttendanceRecord",
    "AttendanceStatus",
    "Booking",
    "BookingStatus",
    "ClassCategory",
    "ENTITY_TYPES",
    "EntityRecord",
    "EntitySnapshot",
    "Member",
    "Payment",
    "PaymentStatus",
    "PaymentType",
    "StudioOwner",
    "Subscription",
    "SubscriptionPlan",
    "SyncMetadata",
    "SyncStatus",
    "YogaClass",
    "entity_class",
    "format_timestamp",
    "new_entity_id",
    "parse_timestamp",
    "utcnow",
]
