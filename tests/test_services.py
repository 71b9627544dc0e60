"""Tests for the studio services layered over the entity store."""

from __future__ import annotations

from datetime import timedelta

import pytest

from studiosync.errors import InputError
from studiosync.services import (
    AttendanceService,
    BookingService,
    ClassService,
    MemberService,
    PaymentService,
    StudioOwnerService,
    SubscriptionService,
)
from studiosync.store.entities import (
    AttendanceStatus,
    BookingStatus,
    ClassCategory,
    PaymentStatus,
    PaymentType,
    SubscriptionPlan,
    SyncStatus,
)
from studiosync.sync.queue import OperationKind


def _class(harness, capacity: int = 1, starts_in: timedelta = timedelta(hours=1)):
    return ClassService(harness.store, clock=harness.clock).create_class(
        name="Sunrise Flow",
        description="Gentle start",
        instructor_name="Iyengar",
        category=ClassCategory.HATHA,
        capacity=capacity,
        duration=60,
        start_time=harness.clock.now + starts_in,
    )


def test_member_creation_normalizes_and_queues(harness):
    members = MemberService(harness.store, clock=harness.clock)

    member = members.create_member(" Ada ", "Lovelace", "ADA@Example.com", phone_number="  ")

    assert member.first_name == "Ada"
    assert member.email == "ada@example.com"
    assert member.phone_number is None
    assert member.sync_status is SyncStatus.PENDING
    assert [op.kind for op in harness.queue.operations_for(member.id)] == [OperationKind.CREATE]


def test_member_validation_errors(harness):
    members = MemberService(harness.store, clock=harness.clock)
    members.create_member("Ada", "Lovelace", "ada@example.com")

    with pytest.raises(InputError):
        members.create_member("Ada", "Lovelace", "not-an-email")
    with pytest.raises(InputError):
        members.create_member("", "Lovelace", "blank@example.com")
    with pytest.raises(InputError):
        members.create_member("Ada", "Again", "Ada@example.com")


def test_member_search_matches_name_and_email(harness):
    members = MemberService(harness.store, clock=harness.clock)
    ada = members.create_member("Ada", "Lovelace", "ada@example.com")
    members.create_member("Grace", "Hopper", "grace@navy.mil")

    assert [member.id for member in members.search("love")] == [ada.id]
    assert len(members.search("example")) == 1
    assert members.find_by_email("ADA@example.com").id == ada.id


def test_owner_registration_rejects_duplicates(harness):
    owners = StudioOwnerService(harness.store, clock=harness.clock)

    owner = owners.register_owner("owner@studio.com", "Pat", "Lee", "Lotus Studio")

    assert owners.current_owner().id == owner.id
    with pytest.raises(InputError):
        owners.register_owner("owner@studio.com", "Pat", "Lee", "Other Studio")


def test_class_end_time_follows_duration(harness):
    classes = ClassService(harness.store, clock=harness.clock)
    yoga_class = _class(harness)

    updated = classes.update_class(yoga_class, {"duration": 90})

    assert updated.end_time == updated.start_time + timedelta(minutes=90)
    with pytest.raises(InputError):
        classes.update_class(updated, {"capacity": 0})
    assert [item.id for item in classes.upcoming_classes()] == [yoga_class.id]


def test_full_class_waitlists_and_cancel_promotes(harness):
    members = MemberService(harness.store, clock=harness.clock)
    bookings = BookingService(harness.store, clock=harness.clock)
    yoga_class = _class(harness, capacity=1)
    ada = members.create_member("Ada", "Lovelace", "ada@example.com")
    grace = members.create_member("Grace", "Hopper", "grace@example.com")

    first = bookings.create_booking(ada, yoga_class)
    harness.clock.advance()
    second = bookings.create_booking(grace, yoga_class)

    assert first.status is BookingStatus.CONFIRMED
    assert second.status is BookingStatus.WAITLIST
    with pytest.raises(InputError):
        bookings.create_booking(ada, yoga_class)

    cancelled = bookings.cancel_booking(first)

    assert cancelled.status is BookingStatus.CANCELLED
    statuses = {item.member_id: item.status for item in bookings.bookings_for_class(yoga_class)}
    assert statuses[grace.id] is BookingStatus.CONFIRMED
    assert bookings.confirmed_count(yoga_class) == 1


def test_failed_promotion_rolls_back_the_cancellation(harness, monkeypatch):
    members = MemberService(harness.store, clock=harness.clock)
    bookings = BookingService(harness.store, clock=harness.clock)
    yoga_class = _class(harness, capacity=1)
    ada = members.create_member("Ada", "Lovelace", "ada@example.com")
    grace = members.create_member("Grace", "Hopper", "grace@example.com")
    first = bookings.create_booking(ada, yoga_class)
    bookings.create_booking(grace, yoga_class)
    queued = len(harness.queue)

    original_update = harness.store.update

    def update(record, mutator=None):
        if isinstance(mutator, dict) and mutator.get("status") is BookingStatus.CONFIRMED:
            raise RuntimeError("disk full")
        return original_update(record, mutator)

    monkeypatch.setattr(harness.store, "update", update)

    with pytest.raises(RuntimeError):
        bookings.cancel_booking(first)

    statuses = {item.member_id: item.status for item in bookings.bookings_for_class(yoga_class)}
    assert statuses[ada.id] is BookingStatus.CONFIRMED
    assert statuses[grace.id] is BookingStatus.WAITLIST
    assert len(harness.queue) == queued


def test_rejected_booking_leaves_nothing_behind(harness, monkeypatch):
    members = MemberService(harness.store, clock=harness.clock)
    bookings = BookingService(harness.store, clock=harness.clock)
    yoga_class = _class(harness, capacity=1)
    ada = members.create_member("Ada", "Lovelace", "ada@example.com")
    queued = len(harness.queue)

    def create(record):
        harness.store.update(harness.store.require(type(yoga_class), yoga_class.id), {"capacity": 2})
        raise RuntimeError("disk full")

    monkeypatch.setattr(harness.store, "create", create)

    with pytest.raises(RuntimeError):
        bookings.create_booking(ada, yoga_class)

    assert harness.store.require(type(yoga_class), yoga_class.id).capacity == 1
    assert bookings.bookings_for_class(yoga_class) == []
    assert len(harness.queue) == queued


def test_subscription_usage_respects_limit(harness):
    members = MemberService(harness.store, clock=harness.clock)
    subscriptions = SubscriptionService(harness.store, clock=harness.clock)
    ada = members.create_member("Ada", "Lovelace", "ada@example.com")
    start = harness.clock.now - timedelta(days=1)

    with pytest.raises(InputError):
        subscriptions.create_subscription(ada, SubscriptionPlan.BASIC, start, start)

    subscription = subscriptions.create_subscription(
        ada, SubscriptionPlan.BASIC, start, start + timedelta(days=30), max_usage=1
    )
    used = subscriptions.record_usage(subscription)

    assert used.usage_count == 1
    assert subscriptions.active_subscriptions() == []
    with pytest.raises(InputError):
        subscriptions.record_usage(used)


def test_payment_lifecycle(harness):
    members = MemberService(harness.store, clock=harness.clock)
    payments = PaymentService(harness.store, clock=harness.clock)
    ada = members.create_member("Ada", "Lovelace", "ada@example.com")

    with pytest.raises(InputError):
        payments.create_payment(ada, 20.0, PaymentType.DROP_IN, currency="dollars")
    with pytest.raises(InputError):
        payments.create_payment(ada, 0, PaymentType.DROP_IN)

    payment = payments.create_payment(ada, 20.0, PaymentType.DROP_IN, currency="eur")
    assert payment.currency == "EUR"

    with pytest.raises(InputError):
        payments.refund_payment(payment)

    paid = payments.process_payment(payment, transaction_id="tx-1")
    assert paid.status is PaymentStatus.COMPLETED
    assert paid.paid_at == harness.clock.now
    assert paid.transaction_id == "tx-1"

    refunded = payments.refund_payment(paid)
    assert refunded.status is PaymentStatus.REFUNDED


def test_check_in_marks_present_then_late(harness):
    members = MemberService(harness.store, clock=harness.clock)
    attendance = AttendanceService(harness.store, clock=harness.clock)
    yoga_class = _class(harness, starts_in=timedelta(minutes=5))
    ada = members.create_member("Ada", "Lovelace", "ada@example.com")
    grace = members.create_member("Grace", "Hopper", "grace@example.com")

    on_time = attendance.check_in(ada, yoga_class)
    assert on_time.status is AttendanceStatus.PRESENT

    harness.clock.advance(20 * 60)
    late = attendance.check_in(grace, yoga_class)
    assert late.status is AttendanceStatus.LATE

    again = attendance.check_in(ada, yoga_class)
    assert again.id == on_time.id
    assert again.status is AttendanceStatus.LATE
    assert len(attendance.records_for_class(yoga_class)) == 2
