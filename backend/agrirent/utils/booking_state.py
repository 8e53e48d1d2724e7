"""Booking lifecycle rules.

Every ``plan_*`` function is pure: it takes the current booking, the acting
user and the request inputs, checks the guards, and returns a ``Transition``
describing the field changes and the events to emit. Persistence, OTP
consumption and event delivery happen in ``services.booking_workflow``.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from agrirent.errors import BookingError, ErrorCode
from agrirent.models.enums import BookingStatus, CancelledBy, PaymentStatus, UserRole
from agrirent.services.billing import billed_minutes, compute_bill
from agrirent.utils.timeutils import ensure_utc

# Defines all valid status transitions for a booking
ALLOWED_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.REQUESTED: {
        BookingStatus.OWNER_CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.AUTO_CANCELLED,
        BookingStatus.DISPUTED,
    },
    BookingStatus.OWNER_CONFIRMED: {
        BookingStatus.ARRIVED_OTP_VERIFIED,
        BookingStatus.CANCELLED,
        BookingStatus.AUTO_CANCELLED,
        BookingStatus.DISPUTED,
    },
    BookingStatus.ARRIVED_OTP_VERIFIED: {
        BookingStatus.IN_PROGRESS,
        BookingStatus.COMPLETED_PENDING_PAYMENT,
        BookingStatus.CANCELLED,
        BookingStatus.DISPUTED,
    },
    BookingStatus.IN_PROGRESS: {
        BookingStatus.COMPLETED_PENDING_PAYMENT,
        BookingStatus.CANCELLED,
        BookingStatus.DISPUTED,
    },
    BookingStatus.COMPLETED_PENDING_PAYMENT: {
        BookingStatus.PAID,
        BookingStatus.DISPUTED,
    },
    BookingStatus.PAID: {
        BookingStatus.DISPUTED,
    },
    BookingStatus.DISPUTED: {
        BookingStatus.CANCELLED,  # Resolved with a refund
        BookingStatus.PAID,  # Resolved without a refund
    },
    BookingStatus.CANCELLED: set(),  # Terminal state
    BookingStatus.AUTO_CANCELLED: set(),  # Terminal state
}

CANCELLABLE_STATUSES = frozenset({
    BookingStatus.REQUESTED,
    BookingStatus.OWNER_CONFIRMED,
    BookingStatus.ARRIVED_OTP_VERIFIED,
    BookingStatus.IN_PROGRESS,
})

AUTO_CANCELLABLE_STATUSES = frozenset({
    BookingStatus.REQUESTED,
    BookingStatus.OWNER_CONFIRMED,
})


@dataclass(frozen=True)
class DomainEvent:
    name: str
    room: str
    payload: dict


@dataclass
class Transition:
    changes: dict
    events: list[DomainEvent] = field(default_factory=list)

    @property
    def status(self) -> BookingStatus | None:
        return self.changes.get("status")


def user_room(user_id) -> str:
    return str(user_id)


def booking_room(booking_id) -> str:
    return f"booking_{booking_id}"


ADMIN_ROOM = "admin_room"


def validate_transition(current, new: BookingStatus, action: str | None = None) -> None:
    """Raise INVALID_STATE unless ``current -> new`` is a legal move."""
    current = BookingStatus(current)
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if new not in allowed:
        verb = f" ({action})" if action else ""
        raise BookingError(
            ErrorCode.INVALID_STATE,
            f"Cannot transition from '{current.value}' to '{new.value}'{verb}",
        )


def _fan_out(name: str, rooms, payload: dict) -> list[DomainEvent]:
    return [DomainEvent(name, room, dict(payload)) for room in rooms]


def _base_payload(booking, status: BookingStatus) -> dict:
    return {"booking_id": str(booking.id), "status": status.value}


def _require_owner(booking, actor) -> None:
    if actor.id != booking.owner_id:
        raise BookingError(ErrorCode.FORBIDDEN, "Only the machine owner can do this")


def _require_farmer(booking, actor) -> None:
    if actor.id != booking.farmer_id:
        raise BookingError(ErrorCode.FORBIDDEN, "Only the farmer who booked can do this")


def _require_party(booking, actor, allow_admin: bool = False) -> None:
    if allow_admin and actor.role == UserRole.ADMIN:
        return
    if actor.id not in (booking.farmer_id, booking.owner_id):
        raise BookingError(ErrorCode.FORBIDDEN, "Not authorized for this booking")


def _cancelled_by(actor) -> CancelledBy:
    if actor.role == UserRole.ADMIN:
        return CancelledBy.ADMIN
    if actor.role == UserRole.OWNER:
        return CancelledBy.OWNER
    return CancelledBy.FARMER


def request_events(booking) -> list[DomainEvent]:
    payload = {
        **_base_payload(booking, BookingStatus.REQUESTED),
        "machine_id": str(booking.machine_id),
        "farmer_id": str(booking.farmer_id),
        "requested_start_at": booking.requested_start_at.isoformat(),
    }
    return _fan_out("booking_requested", [user_room(booking.owner_id), booking_room(booking.id)], payload)


def plan_confirm(
    booking,
    actor,
    now: datetime,
    arrival_code: str,
    otp_expires_at: datetime,
    deadline_minutes: int,
) -> Transition:
    _require_owner(booking, actor)
    validate_transition(booking.status, BookingStatus.OWNER_CONFIRMED, action="confirm")

    deadline = now + timedelta(minutes=deadline_minutes)
    changes = {
        "status": BookingStatus.OWNER_CONFIRMED,
        "arrival_deadline_at": deadline,
        "otp_expires_at": otp_expires_at,
    }
    payload = {
        **_base_payload(booking, BookingStatus.OWNER_CONFIRMED),
        "arrival_deadline_at": deadline.isoformat(),
    }
    # The arrival code only ever goes to the farmer's own room
    events = [DomainEvent("booking_confirmed", user_room(booking.farmer_id), {**payload, "arrival_otp": arrival_code})]
    events += _fan_out("booking_confirmed", [user_room(booking.owner_id), booking_room(booking.id)], payload)
    return Transition(changes, events)


def plan_reject(booking, actor, now: datetime, reason: str | None = None) -> Transition:
    _require_owner(booking, actor)
    if BookingStatus(booking.status) != BookingStatus.REQUESTED:
        raise BookingError(
            ErrorCode.INVALID_STATE,
            f"Cannot reject a booking in status '{BookingStatus(booking.status).value}'",
        )

    changes = {
        "status": BookingStatus.CANCELLED,
        "cancellation_reason": reason or "Rejected by owner",
        "cancelled_by": CancelledBy.OWNER.value,
        "cancelled_at": now,
    }
    payload = {**_base_payload(booking, BookingStatus.CANCELLED), "reason": changes["cancellation_reason"]}
    events = _fan_out("booking_rejected", [user_room(booking.farmer_id), booking_room(booking.id)], payload)
    return Transition(changes, events)


def check_verify_arrival(booking, actor) -> None:
    _require_party(booking, actor)
    validate_transition(booking.status, BookingStatus.ARRIVED_OTP_VERIFIED, action="verify arrival")


def plan_verify_arrival(
    booking,
    actor,
    now: datetime,
    completion_code: str,
    otp_expires_at: datetime,
) -> Transition:
    """Arrival code accepted: start the timer and hand the completion code to the owner."""
    check_verify_arrival(booking, actor)
    if booking.timer_started_at is not None:
        raise BookingError(ErrorCode.INVALID_STATE, "Timer already started")

    changes = {
        "status": BookingStatus.ARRIVED_OTP_VERIFIED,
        "arrival_verified_at": now,
        "timer_started_at": now,
        "otp_expires_at": otp_expires_at,
    }
    payload = {
        **_base_payload(booking, BookingStatus.ARRIVED_OTP_VERIFIED),
        "timer_started_at": now.isoformat(),
    }
    events = [DomainEvent("timer_started", user_room(booking.owner_id), {**payload, "completion_otp": completion_code})]
    events += _fan_out("timer_started", [user_room(booking.farmer_id), booking_room(booking.id)], payload)
    return Transition(changes, events)


def check_verify_completion(booking, actor) -> None:
    _require_farmer(booking, actor)
    validate_transition(booking.status, BookingStatus.COMPLETED_PENDING_PAYMENT, action="verify completion")
    if booking.timer_started_at is None:
        raise BookingError(ErrorCode.INVALID_STATE, "Timer was never started")


def plan_verify_completion(booking, actor, now: datetime) -> Transition:
    check_verify_completion(booking, actor)

    minutes = billed_minutes(ensure_utc(booking.timer_started_at), now)
    amount = compute_bill(booking.billing_scheme, booking.billing_rate, minutes, booking.area_units)
    changes = {
        "status": BookingStatus.COMPLETED_PENDING_PAYMENT,
        "completion_verified_at": now,
        "timer_stopped_at": now,
        "duration_minutes": minutes,
        "calculated_amount": Decimal(amount),
        "otp_expires_at": None,
    }
    payload = {
        **_base_payload(booking, BookingStatus.COMPLETED_PENDING_PAYMENT),
        "timer_stopped_at": now.isoformat(),
        "duration_minutes": minutes,
        "calculated_amount": amount,
    }
    events = _fan_out(
        "timer_stopped",
        [user_room(booking.farmer_id), user_room(booking.owner_id), booking_room(booking.id)],
        payload,
    )
    return Transition(changes, events)


def plan_cancel(booking, actor, now: datetime, reason: str | None = None) -> Transition:
    _require_party(booking, actor, allow_admin=True)
    status = BookingStatus(booking.status)
    if status not in CANCELLABLE_STATUSES:
        raise BookingError(ErrorCode.INVALID_STATE, f"Cannot cancel a booking in status '{status.value}'")

    cancelled_by = _cancelled_by(actor)
    changes = {
        "status": BookingStatus.CANCELLED,
        "cancellation_reason": reason,
        "cancelled_by": cancelled_by.value,
        "cancelled_at": now,
        "otp_expires_at": None,
    }
    payload = {
        **_base_payload(booking, BookingStatus.CANCELLED),
        "cancelled_by": cancelled_by.value,
        "reason": reason,
    }
    events = _fan_out(
        "booking_cancelled",
        [user_room(booking.farmer_id), user_room(booking.owner_id), booking_room(booking.id)],
        payload,
    )
    return Transition(changes, events)


def plan_auto_cancel(booking, now: datetime, reason: str) -> Transition:
    status = BookingStatus(booking.status)
    if status not in AUTO_CANCELLABLE_STATUSES:
        raise BookingError(ErrorCode.INVALID_STATE, f"Cannot auto-cancel a booking in status '{status.value}'")

    changes = {
        "status": BookingStatus.AUTO_CANCELLED,
        "cancellation_reason": reason,
        "cancelled_by": CancelledBy.SYSTEM.value,
        "cancelled_at": now,
        "otp_expires_at": None,
    }
    payload = {**_base_payload(booking, BookingStatus.AUTO_CANCELLED), "reason": reason}
    events = _fan_out(
        "booking_auto_cancelled",
        [user_room(booking.farmer_id), user_room(booking.owner_id), booking_room(booking.id)],
        payload,
    )
    return Transition(changes, events)


def plan_dispute(booking, actor, now: datetime, code: str, description: str | None = None) -> Transition:
    _require_party(booking, actor)
    if booking.dispute_code is not None:
        raise BookingError(ErrorCode.INVALID_STATE, "A dispute was already raised for this booking")
    validate_transition(booking.status, BookingStatus.DISPUTED, action="raise dispute")

    changes = {
        "status": BookingStatus.DISPUTED,
        "dispute_code": code,
        "dispute_description": description,
        "dispute_raised_by": actor.id,
        "dispute_raised_at": now,
    }
    payload = {
        **_base_payload(booking, BookingStatus.DISPUTED),
        "dispute_code": code,
        "raised_by": str(actor.id),
    }
    rooms = [user_room(booking.farmer_id), user_room(booking.owner_id), booking_room(booking.id), ADMIN_ROOM]
    return Transition(changes, _fan_out("booking_disputed", rooms, payload))


def plan_payment(booking, transaction_ref: str, now: datetime) -> Transition:
    """Gateway confirmed the charge for a finished job."""
    if BookingStatus(booking.status) != BookingStatus.COMPLETED_PENDING_PAYMENT:
        raise BookingError(
            ErrorCode.INVALID_STATE,
            f"Cannot settle a booking in status '{BookingStatus(booking.status).value}'",
        )
    if booking.calculated_amount is None:
        raise BookingError(ErrorCode.INVALID_STATE, "Booking has no calculated amount")

    changes = {
        "status": BookingStatus.PAID,
        "payment_transaction_id": transaction_ref,
        "payment_status": PaymentStatus.PAID,
        "paid_at": now,
        "paid_amount": booking.calculated_amount,
    }
    payload = {
        **_base_payload(booking, BookingStatus.PAID),
        "amount": int(booking.calculated_amount),
        "transaction_id": transaction_ref,
    }
    events = _fan_out(
        "payment_completed",
        [user_room(booking.farmer_id), user_room(booking.owner_id), booking_room(booking.id)],
        payload,
    )
    return Transition(changes, events)


def plan_resolve_dispute(booking, actor, now: datetime, resolution: str, refund_amount: Decimal) -> Transition:
    if actor.role != UserRole.ADMIN:
        raise BookingError(ErrorCode.FORBIDDEN, "Only an admin can resolve disputes")
    if BookingStatus(booking.status) != BookingStatus.DISPUTED:
        raise BookingError(ErrorCode.INVALID_STATE, "Booking is not disputed")
    if refund_amount < 0:
        raise BookingError(ErrorCode.INVALID_STATE, "Refund amount cannot be negative")

    refunded = refund_amount > 0
    new_status = BookingStatus.CANCELLED if refunded else BookingStatus.PAID
    validate_transition(booking.status, new_status, action="resolve dispute")

    changes = {
        "status": new_status,
        "dispute_resolution": resolution,
        "dispute_resolved_at": now,
    }
    if refunded:
        changes["refunded_amount"] = (booking.refunded_amount or Decimal("0")) + refund_amount
        changes["payment_status"] = PaymentStatus.REFUNDED
        changes["cancelled_by"] = CancelledBy.ADMIN.value
        changes["cancelled_at"] = now
        changes["cancellation_reason"] = resolution

    payload = {
        **_base_payload(booking, new_status),
        "resolution": resolution,
        "refund_amount": str(refund_amount),
    }
    events = _fan_out(
        "dispute_resolved",
        [user_room(booking.farmer_id), user_room(booking.owner_id), booking_room(booking.id)],
        payload,
    )
    return Transition(changes, events)


def apply_transition(booking, transition: Transition) -> None:
    for name, value in transition.changes.items():
        setattr(booking, name, value)
