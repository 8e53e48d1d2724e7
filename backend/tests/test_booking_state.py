"""Pure transition planners: no database, no emitter."""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from agrirent.errors import BookingError, ErrorCode
from agrirent.models.enums import BookingStatus, PaymentStatus, UserRole
from agrirent.utils import booking_state
from agrirent.utils.booking_state import (
    ADMIN_ROOM,
    ALLOWED_TRANSITIONS,
    apply_transition,
    booking_room,
    validate_transition,
)

NOW = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def _user(role: UserRole):
    return SimpleNamespace(id=uuid.uuid4(), role=role)


def _booking(farmer, owner, status=BookingStatus.REQUESTED, **fields):
    values = dict(
        id=uuid.uuid4(),
        farmer_id=farmer.id,
        owner_id=owner.id,
        machine_id=uuid.uuid4(),
        status=status.value,
        requested_start_at=NOW,
        timer_started_at=None,
        billing_scheme="time",
        billing_rate=Decimal("600.00"),
        area_units=None,
        calculated_amount=None,
        refunded_amount=Decimal("0.00"),
        dispute_code=None,
    )
    values.update(fields)
    return SimpleNamespace(**values)


@pytest.fixture
def farmer():
    return _user(UserRole.FARMER)


@pytest.fixture
def owner():
    return _user(UserRole.OWNER)


@pytest.fixture
def admin():
    return _user(UserRole.ADMIN)


def _rooms(transition, name):
    return {e.room for e in transition.events if e.name == name}


def test_terminal_statuses_have_no_exits():
    assert ALLOWED_TRANSITIONS[BookingStatus.CANCELLED] == set()
    assert ALLOWED_TRANSITIONS[BookingStatus.AUTO_CANCELLED] == set()


def test_validate_transition_rejects_illegal_move():
    with pytest.raises(BookingError) as exc:
        validate_transition("paid", BookingStatus.OWNER_CONFIRMED)
    assert exc.value.code == ErrorCode.INVALID_STATE


def test_confirm_sends_code_to_farmer_room_only(farmer, owner):
    booking = _booking(farmer, owner)
    transition = booking_state.plan_confirm(
        booking, owner, NOW, arrival_code="123456", otp_expires_at=NOW + timedelta(minutes=10), deadline_minutes=60
    )

    assert transition.status == BookingStatus.OWNER_CONFIRMED
    assert transition.changes["arrival_deadline_at"] == NOW + timedelta(minutes=60)
    with_code = [e for e in transition.events if "arrival_otp" in e.payload]
    assert [e.room for e in with_code] == [str(farmer.id)]
    assert _rooms(transition, "booking_confirmed") == {str(farmer.id), str(owner.id), booking_room(booking.id)}


def test_confirm_requires_owner(farmer, owner):
    booking = _booking(farmer, owner)
    with pytest.raises(BookingError) as exc:
        booking_state.plan_confirm(
            booking, farmer, NOW, arrival_code="1", otp_expires_at=NOW, deadline_minutes=60
        )
    assert exc.value.code == ErrorCode.FORBIDDEN


def test_confirm_twice_is_invalid_state(farmer, owner):
    booking = _booking(farmer, owner, BookingStatus.OWNER_CONFIRMED)
    with pytest.raises(BookingError) as exc:
        booking_state.plan_confirm(
            booking, owner, NOW, arrival_code="1", otp_expires_at=NOW, deadline_minutes=60
        )
    assert exc.value.code == ErrorCode.INVALID_STATE


def test_reject_only_from_requested(farmer, owner):
    transition = booking_state.plan_reject(_booking(farmer, owner), owner, NOW)
    assert transition.status == BookingStatus.CANCELLED
    assert transition.changes["cancelled_by"] == "owner"

    with pytest.raises(BookingError) as exc:
        booking_state.plan_reject(_booking(farmer, owner, BookingStatus.OWNER_CONFIRMED), owner, NOW)
    assert exc.value.code == ErrorCode.INVALID_STATE


def test_verify_arrival_starts_timer_and_hands_completion_code_to_owner(farmer, owner):
    booking = _booking(farmer, owner, BookingStatus.OWNER_CONFIRMED)
    transition = booking_state.plan_verify_arrival(
        booking, owner, NOW, completion_code="654321", otp_expires_at=NOW + timedelta(minutes=10)
    )

    assert transition.status == BookingStatus.ARRIVED_OTP_VERIFIED
    assert transition.changes["timer_started_at"] == NOW
    with_code = [e for e in transition.events if "completion_otp" in e.payload]
    assert [e.room for e in with_code] == [str(owner.id)]


def test_verify_arrival_rejects_outsider(farmer, owner):
    booking = _booking(farmer, owner, BookingStatus.OWNER_CONFIRMED)
    with pytest.raises(BookingError) as exc:
        booking_state.check_verify_arrival(booking, _user(UserRole.FARMER))
    assert exc.value.code == ErrorCode.FORBIDDEN


def test_verify_completion_before_arrival_is_invalid_state(farmer, owner):
    booking = _booking(farmer, owner, BookingStatus.OWNER_CONFIRMED)
    with pytest.raises(BookingError) as exc:
        booking_state.plan_verify_completion(booking, farmer, NOW)
    assert exc.value.code == ErrorCode.INVALID_STATE


def test_verify_completion_without_timer_is_invalid_state(farmer, owner):
    booking = _booking(farmer, owner, BookingStatus.ARRIVED_OTP_VERIFIED, timer_started_at=None)
    with pytest.raises(BookingError) as exc:
        booking_state.plan_verify_completion(booking, farmer, NOW)
    assert exc.value.code == ErrorCode.INVALID_STATE


def test_verify_completion_bills_elapsed_time(farmer, owner):
    booking = _booking(
        farmer, owner, BookingStatus.ARRIVED_OTP_VERIFIED, timer_started_at=NOW - timedelta(minutes=89, seconds=30)
    )
    transition = booking_state.plan_verify_completion(booking, farmer, NOW)

    assert transition.status == BookingStatus.COMPLETED_PENDING_PAYMENT
    assert transition.changes["duration_minutes"] == 90
    assert transition.changes["calculated_amount"] == Decimal(900)
    stopped = [e for e in transition.events if e.name == "timer_stopped"]
    assert {e.room for e in stopped} == {str(farmer.id), str(owner.id), booking_room(booking.id)}
    assert all(e.payload["calculated_amount"] == 900 for e in stopped)


def test_verify_completion_accepts_naive_timer_start(farmer, owner):
    booking = _booking(
        farmer,
        owner,
        BookingStatus.IN_PROGRESS,
        timer_started_at=(NOW - timedelta(minutes=30)).replace(tzinfo=None),
    )
    transition = booking_state.plan_verify_completion(booking, farmer, NOW)
    assert transition.changes["duration_minutes"] == 30


def test_verify_completion_by_owner_is_forbidden(farmer, owner):
    booking = _booking(farmer, owner, BookingStatus.ARRIVED_OTP_VERIFIED, timer_started_at=NOW)
    with pytest.raises(BookingError) as exc:
        booking_state.plan_verify_completion(booking, owner, NOW)
    assert exc.value.code == ErrorCode.FORBIDDEN


@pytest.mark.parametrize(
    "status",
    [
        BookingStatus.REQUESTED,
        BookingStatus.OWNER_CONFIRMED,
        BookingStatus.ARRIVED_OTP_VERIFIED,
        BookingStatus.IN_PROGRESS,
    ],
)
def test_cancel_from_active_statuses(farmer, owner, status):
    transition = booking_state.plan_cancel(_booking(farmer, owner, status), farmer, NOW, "Rain")
    assert transition.status == BookingStatus.CANCELLED
    assert transition.changes["cancelled_by"] == "farmer"


@pytest.mark.parametrize(
    "status",
    [BookingStatus.CANCELLED, BookingStatus.COMPLETED_PENDING_PAYMENT, BookingStatus.PAID],
)
def test_cancel_from_other_statuses_is_invalid_state(farmer, owner, status):
    with pytest.raises(BookingError) as exc:
        booking_state.plan_cancel(_booking(farmer, owner, status), owner, NOW)
    assert exc.value.code == ErrorCode.INVALID_STATE


def test_admin_may_cancel(farmer, owner, admin):
    transition = booking_state.plan_cancel(_booking(farmer, owner), admin, NOW)
    assert transition.changes["cancelled_by"] == "admin"


def test_every_transition_fails_on_cancelled_booking(farmer, owner, admin):
    booking = _booking(farmer, owner, BookingStatus.CANCELLED, timer_started_at=NOW)
    attempts = [
        lambda: booking_state.plan_confirm(booking, owner, NOW, "1", NOW, 60),
        lambda: booking_state.plan_verify_arrival(booking, owner, NOW, "1", NOW),
        lambda: booking_state.plan_verify_completion(booking, farmer, NOW),
        lambda: booking_state.plan_cancel(booking, farmer, NOW),
        lambda: booking_state.plan_dispute(booking, farmer, NOW, "no_show"),
        lambda: booking_state.plan_payment(booking, "txn", NOW),
        lambda: booking_state.plan_auto_cancel(booking, NOW, "late"),
    ]
    for attempt in attempts:
        with pytest.raises(BookingError) as exc:
            attempt()
        assert exc.value.code == ErrorCode.INVALID_STATE


def test_auto_cancel_only_before_arrival(farmer, owner):
    transition = booking_state.plan_auto_cancel(_booking(farmer, owner), NOW, "No response")
    assert transition.status == BookingStatus.AUTO_CANCELLED
    assert transition.changes["cancelled_by"] == "system"

    with pytest.raises(BookingError):
        booking_state.plan_auto_cancel(_booking(farmer, owner, BookingStatus.ARRIVED_OTP_VERIFIED), NOW, "late")


def test_dispute_reaches_admin_room_and_is_once_only(farmer, owner):
    booking = _booking(farmer, owner, BookingStatus.PAID)
    transition = booking_state.plan_dispute(booking, owner, NOW, "damage", "Broken hitch")

    assert transition.status == BookingStatus.DISPUTED
    assert ADMIN_ROOM in _rooms(transition, "booking_disputed")

    apply_transition(booking, transition)
    booking.status = BookingStatus.PAID.value
    with pytest.raises(BookingError) as exc:
        booking_state.plan_dispute(booking, farmer, NOW, "damage")
    assert exc.value.code == ErrorCode.INVALID_STATE


def test_dispute_by_outsider_is_forbidden(farmer, owner):
    with pytest.raises(BookingError) as exc:
        booking_state.plan_dispute(_booking(farmer, owner), _user(UserRole.OWNER), NOW, "other")
    assert exc.value.code == ErrorCode.FORBIDDEN


def test_payment_marks_paid(farmer, owner):
    booking = _booking(
        farmer, owner, BookingStatus.COMPLETED_PENDING_PAYMENT, calculated_amount=Decimal("900")
    )
    transition = booking_state.plan_payment(booking, "txn-1", NOW)

    assert transition.status == BookingStatus.PAID
    assert transition.changes["paid_amount"] == Decimal("900")
    assert transition.changes["payment_status"] == PaymentStatus.PAID
    assert transition.changes["payment_transaction_id"] == "txn-1"


def test_resolve_with_refund_cancels(farmer, owner, admin):
    booking = _booking(farmer, owner, BookingStatus.DISPUTED, dispute_code="damage")
    transition = booking_state.plan_resolve_dispute(booking, admin, NOW, "Partial refund", Decimal("50"))

    assert transition.status == BookingStatus.CANCELLED
    assert transition.changes["refunded_amount"] == Decimal("50")
    assert transition.changes["dispute_resolved_at"] == NOW


def test_resolve_without_refund_pays(farmer, owner, admin):
    booking = _booking(farmer, owner, BookingStatus.DISPUTED, dispute_code="damage")
    transition = booking_state.plan_resolve_dispute(booking, admin, NOW, "No fault found", Decimal("0"))

    assert transition.status == BookingStatus.PAID
    assert "refunded_amount" not in transition.changes


def test_resolve_non_disputed_is_invalid_state(farmer, owner, admin):
    with pytest.raises(BookingError) as exc:
        booking_state.plan_resolve_dispute(_booking(farmer, owner, BookingStatus.PAID), admin, NOW, "x", Decimal("0"))
    assert exc.value.code == ErrorCode.INVALID_STATE


def test_resolve_by_non_admin_is_forbidden(farmer, owner):
    booking = _booking(farmer, owner, BookingStatus.DISPUTED)
    with pytest.raises(BookingError) as exc:
        booking_state.plan_resolve_dispute(booking, owner, NOW, "x", Decimal("0"))
    assert exc.value.code == ErrorCode.FORBIDDEN
