"""Studio services: validated operations over the entity store."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import InputError
from .store.entities import (
    AttendanceRecord,
    AttendanceStatus,
    Booking,
    BookingStatus,
    ClassCategory,
    Member,
    Payment,
    PaymentStatus,
    PaymentType,
    StudioOwner,
    Subscription,
    SubscriptionPlan,
    YogaClass,
    utcnow,
)
from .store.entity_store import EntityStore

logger = logging.getLogger("studiosync.services")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
LATE_GRACE = timedelta(minutes=10)
ACTIVE_BOOKING_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.WAITLIST)


def _require_text(value: Optional[str], field_name: str) -> str:
    text = (value or "").strip()
    if not text:
        raise InputError(f"{field_name} is required.")
    return text


def _require_email(value: Optional[str]) -> str:
    email = _require_text(value, "Email").lower()
    if not EMAIL_PATTERN.match(email):
        raise InputError(f"'{email}' is not a valid email address.")
    return email


def _require_positive(value: Any, field_name: str) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise InputError(f"{field_name} must be a positive number.")
    return value


class StudioService:
    """Shared plumbing for the domain services."""

    def __init__(self, store: EntityStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock


class StudioOwnerService(StudioService):
    def register_owner(
        self,
        email: str,
        first_name: str,
        last_name: str,
        studio_name: str,
    ) -> StudioOwner:
        email = _require_email(email)
        if self.store.query(StudioOwner, lambda owner: owner.email == email):
            raise InputError(f"A studio owner with email '{email}' already exists.")
        owner = StudioOwner(
            email=email,
            first_name=_require_text(first_name, "First name"),
            last_name=_require_text(last_name, "Last name"),
            studio_name=_require_text(studio_name, "Studio name"),
        )
        return self.store.create(owner)

    def current_owner(self) -> Optional[StudioOwner]:
        owners = self.store.query(StudioOwner)
        return owners[0] if owners else None

    def update_owner(self, owner: StudioOwner, changes: Optional[Mapping[str, Any]] = None) -> StudioOwner:
        return self.store.update(owner, changes)


class MemberService(StudioService):
    def create_member(
        self,
        first_name: str,
        last_name: str,
        email: str,
        phone_number: Optional[str] = None,
    ) -> Member:
        email = _require_email(email)
        if self.find_by_email(email) is not None:
            raise InputError(f"A member with email '{email}' already exists.")
        member = Member(
            first_name=_require_text(first_name, "First name"),
            last_name=_require_text(last_name, "Last name"),
            email=email,
            phone_number=(phone_number or "").strip() or None,
        )
        created = self.store.create(member)
        logger.info("Created member %s", created.id)
        return created

    def update_member(self, member: Member, changes: Optional[Mapping[str, Any]] = None) -> Member:
        if changes and "email" in changes:
            changes = dict(changes)
            changes["email"] = _require_email(changes["email"])
        return self.store.update(member, changes)

    def delete_member(self, member: Member) -> bool:
        return self.store.delete(member)

    def all_members(self) -> List[Member]:
        return self.store.query(Member)

    def get_member(self, member_id: str) -> Optional[Member]:
        return self.store.get(Member, member_id)

    def find_by_email(self, email: str) -> Optional[Member]:
        wanted = email.strip().lower()
        matches = self.store.query(Member, lambda member: member.email == wanted)
        return matches[0] if matches else None

    def search(self, text: str) -> List[Member]:
        needle = text.strip().lower()
        return self.store.query(
            Member,
            lambda member: needle in member.full_name.lower() or needle in member.email,
        )


class ClassService(StudioService):
    def create_class(
        self,
        name: str,
        description: str,
        instructor_name: str,
        category: ClassCategory,
        capacity: int,
        duration: int,
        start_time: datetime,
    ) -> YogaClass:
        yoga_class = YogaClass(
            name=_require_text(name, "Class name"),
            description=(description or "").strip(),
            instructor_name=_require_text(instructor_name, "Instructor"),
            category=ClassCategory(category),
            capacity=int(_require_positive(capacity, "Capacity")),
            duration=int(_require_positive(duration, "Duration")),
            start_time=start_time,
        )
        return self.store.create(yoga_class)

    def update_class(self, yoga_class: YogaClass, changes: Optional[Mapping[str, Any]] = None) -> YogaClass:
        def _mutate(target: YogaClass) -> None:
            source = changes if changes is not None else {
                name: getattr(yoga_class, name) for name in YogaClass.field_names()
            }
            for name, value in source.items():
                if name not in YogaClass.field_names():
                    raise InputError(f"Unknown yoga_class field: {name}")
                setattr(target, name, value)
            if "capacity" in source:
                _require_positive(target.capacity, "Capacity")
            if "duration" in source:
                _require_positive(target.duration, "Duration")
            if "end_time" not in source or changes is None:
                target.end_time = target.start_time + timedelta(minutes=target.duration)

        return self.store.update(yoga_class, _mutate)

    def delete_class(self, yoga_class: YogaClass) -> bool:
        return self.store.delete(yoga_class)

    def all_classes(self) -> List[YogaClass]:
        return self.store.query(YogaClass)

    def get_class(self, class_id: str) -> Optional[YogaClass]:
        return self.store.get(YogaClass, class_id)

    def upcoming_classes(self, at: Optional[datetime] = None) -> List[YogaClass]:
        now = at or self.clock()
        classes = self.store.query(YogaClass, lambda item: item.start_time >= now)
        return sorted(classes, key=lambda item: item.start_time)


class BookingService(StudioService):
    def create_booking(self, member: Member, yoga_class: YogaClass, notes: Optional[str] = None) -> Booking:
        """Book a member into a class; a full class puts them on the waitlist.

        The seat count and the insert share one transaction, so two writers
        cannot both take the last seat.
        """
        with self.store.db.transaction():
            self.store.require(Member, member.id)
            current_class = self.store.require(YogaClass, yoga_class.id)
            for booking in self.bookings_for_class(current_class):
                if booking.member_id == member.id and booking.status in ACTIVE_BOOKING_STATUSES:
                    raise InputError(f"{member.full_name} is already booked into {current_class.name}.")

            confirmed = self.confirmed_count(current_class)
            status = BookingStatus.CONFIRMED if confirmed < current_class.capacity else BookingStatus.WAITLIST
            booking = Booking(
                member_id=member.id,
                class_id=current_class.id,
                status=status,
                booked_at=self.clock(),
                notes=notes,
            )
            created = self.store.create(booking)
        logger.info("Booked %s into %s (%s)", member.id, current_class.id, status.value)
        return created

    def update_booking(self, booking: Booking, changes: Optional[Mapping[str, Any]] = None) -> Booking:
        return self.store.update(booking, changes)

    def cancel_booking(self, booking: Booking) -> Booking:
        """Cancel a booking and promote the oldest waitlisted one if a seat opened."""
        with self.store.db.transaction():
            current = self.store.require(Booking, booking.id)
            if current.status is BookingStatus.CANCELLED:
                return current
            freed_seat = current.status is BookingStatus.CONFIRMED
            cancelled = self.store.update(current, {"status": BookingStatus.CANCELLED})
            promoted = None
            if freed_seat:
                waitlist = [
                    item
                    for item in self.bookings_for_class(current.class_id)
                    if item.status is BookingStatus.WAITLIST
                ]
                if waitlist:
                    promoted = self.store.update(waitlist[0], {"status": BookingStatus.CONFIRMED})
        if promoted is not None:
            logger.info("Promoted booking %s from the waitlist", promoted.id)
        return cancelled

    def all_bookings(self) -> List[Booking]:
        return self.store.query(Booking)

    def bookings_for_member(self, member: Any) -> List[Booking]:
        member_id = member if isinstance(member, str) else member.id
        return self.store.query(Booking, lambda item: item.member_id == member_id)

    def bookings_for_class(self, yoga_class: Any) -> List[Booking]:
        class_id = yoga_class if isinstance(yoga_class, str) else yoga_class.id
        return self.store.query(Booking, lambda item: item.class_id == class_id)

    def confirmed_count(self, yoga_class: Any) -> int:
        return sum(
            1 for item in self.bookings_for_class(yoga_class) if item.status is BookingStatus.CONFIRMED
        )


class SubscriptionService(StudioService):
    def create_subscription(
        self,
        member: Member,
        plan: SubscriptionPlan,
        start_date: datetime,
        end_date: datetime,
        max_usage: Optional[int] = None,
    ) -> Subscription:
        self.store.require(Member, member.id)
        if end_date <= start_date:
            raise InputError("Subscription end date must be after its start date.")
        if max_usage is not None:
            _require_positive(max_usage, "Maximum usage")
        subscription = Subscription(
            member_id=member.id,
            plan=SubscriptionPlan(plan),
            start_date=start_date,
            end_date=end_date,
            max_usage=max_usage,
        )
        return self.store.create(subscription)

    def update_subscription(
        self,
        subscription: Subscription,
        changes: Optional[Mapping[str, Any]] = None,
    ) -> Subscription:
        return self.store.update(subscription, changes)

    def cancel_subscription(self, subscription: Subscription) -> Subscription:
        return self.store.update(subscription, {"is_active": False})

    def all_subscriptions(self) -> List[Subscription]:
        return self.store.query(Subscription)

    def active_subscriptions(self, at: Optional[datetime] = None) -> List[Subscription]:
        now = at or self.clock()
        return self.store.query(Subscription, lambda item: item.is_current(now))

    def subscriptions_for_member(self, member: Any) -> List[Subscription]:
        member_id = member if isinstance(member, str) else member.id
        return self.store.query(Subscription, lambda item: item.member_id == member_id)

    def record_usage(self, subscription: Subscription) -> Subscription:
        """Count one class against a subscription."""
        current = self.store.require(Subscription, subscription.id)
        if not current.is_current(self.clock()):
            raise InputError("Subscription is not active or has no remaining classes.")
        return self.store.update(current, {"usage_count": current.usage_count + 1})


class PaymentService(StudioService):
    def create_payment(
        self,
        member: Member,
        amount: float,
        payment_type: PaymentType,
        currency: str = "USD",
    ) -> Payment:
        self.store.require(Member, member.id)
        code = _require_text(currency, "Currency").upper()
        if len(code) != 3 or not code.isalpha():
            raise InputError(f"'{currency}' is not a three-letter currency code.")
        payment = Payment(
            member_id=member.id,
            amount=float(_require_positive(amount, "Amount")),
            payment_type=PaymentType(payment_type),
            currency=code,
        )
        return self.store.create(payment)

    def update_payment(self, payment: Payment, changes: Optional[Mapping[str, Any]] = None) -> Payment:
        return self.store.update(payment, changes)

    def process_payment(self, payment: Payment, transaction_id: Optional[str] = None) -> Payment:
        """Record a completed charge."""
        current = self.store.require(Payment, payment.id)
        if current.status is not PaymentStatus.PENDING:
            raise InputError(f"Payment is already {current.status.value}.")
        changes: Dict[str, Any] = {"status": PaymentStatus.COMPLETED, "paid_at": self.clock()}
        if transaction_id:
            changes["transaction_id"] = transaction_id
        return self.store.update(current, changes)

    def refund_payment(self, payment: Payment) -> Payment:
        current = self.store.require(Payment, payment.id)
        if current.status is not PaymentStatus.COMPLETED:
            raise InputError("Only completed payments can be refunded.")
        return self.store.update(current, {"status": PaymentStatus.REFUNDED})

    def all_payments(self) -> List[Payment]:
        return self.store.query(Payment)

    def payments_for_member(self, member: Any) -> List[Payment]:
        member_id = member if isinstance(member, str) else member.id
        return self.store.query(Payment, lambda item: item.member_id == member_id)


class AttendanceService(StudioService):
    def create_attendance_record(
        self,
        member: Member,
        yoga_class: YogaClass,
        status: AttendanceStatus = AttendanceStatus.ABSENT,
        notes: Optional[str] = None,
    ) -> AttendanceRecord:
        self.store.require(Member, member.id)
        self.store.require(YogaClass, yoga_class.id)
        record = AttendanceRecord(
            member_id=member.id,
            class_id=yoga_class.id,
            status=AttendanceStatus(status),
            notes=notes,
        )
        return self.store.create(record)

    def update_attendance_record(
        self,
        record: AttendanceRecord,
        changes: Optional[Mapping[str, Any]] = None,
    ) -> AttendanceRecord:
        return self.store.update(record, changes)

    def check_in(self, member: Member, yoga_class: YogaClass) -> AttendanceRecord:
        """Mark a member present, or late past the grace period."""
        current_class = self.store.require(YogaClass, yoga_class.id)
        now = self.clock()
        status = AttendanceStatus.LATE if now > current_class.start_time + LATE_GRACE else AttendanceStatus.PRESENT
        existing = [
            item
            for item in self.records_for_class(current_class)
            if item.member_id == member.id
        ]
        if existing:
            return self.store.update(existing[0], {"status": status, "checked_in_at": now})
        self.store.require(Member, member.id)
        record = AttendanceRecord(
            member_id=member.id,
            class_id=current_class.id,
            status=status,
            checked_in_at=now,
        )
        return self.store.create(record)

    def all_attendance_records(self) -> List[AttendanceRecord]:
        return self.store.query(AttendanceRecord)

    def records_for_member(self, member: Any) -> List[AttendanceRecord]:
        member_id = member if isinstance(member, str) else member.id
        return self.store.query(AttendanceRecord, lambda item: item.member_id == member_id)

    def records_for_class(self, yoga_class: Any) -> List[AttendanceRecord]:
        class_id = yoga_class if isinstance(yoga_class, str) else yoga_class.id
        return self.store.query(AttendanceRecord, lambda item: item.class_id == class_id)


__all__ = [
    "AttendanceService",
    "BookingService",
    "ClassService",
    "MemberService",
    "PaymentService",
    "StudioOwnerService",
    "StudioService",
    "SubscriptionService",
]
