"""Booking operations: lock, reload, plan, consume codes, persist, notify.

Status changes are decided by the pure planners in ``utils.booking_state``.
This module owns everything with side effects around them.
"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from agrirent.config import settings
from agrirent.errors import BookingError, ErrorCode
from agrirent.metrics import BOOKING_TRANSITIONS, BOOKINGS_CANCELLED, BOOKINGS_CREATED, OTP_VERIFICATIONS
from agrirent.models.booking import Booking
from agrirent.models.enums import BillingScheme, BillingUnit, BookingStatus, NotificationType, OTPPurpose, UserRole
from agrirent.models.machine import Machine
from agrirent.services.events import EventEmitter
from agrirent.services.notifications import create_notification
from agrirent.services.otp import OTPAuthority
from agrirent.utils import booking_state
from agrirent.utils.booking_state import DomainEvent, Transition, user_room
from agrirent.utils.locks import booking_lock
from agrirent.utils.timeutils import utcnow

logger = structlog.get_logger()

_OTP_FAILURE_MESSAGES = {
    "NOT_FOUND": "No active code for this booking. Ask for a new one.",
    "EXPIRED": "Code has expired. Ask for a new one.",
    "MISMATCH": "Incorrect code.",
    "MAX_ATTEMPTS_EXCEEDED": "Too many incorrect attempts. Ask for a new code.",
}


async def load_booking(db: AsyncSession, booking_id: uuid.UUID, for_update: bool = False) -> Booking:
    stmt = select(Booking).where(Booking.id == booking_id)
    if for_update:
        # Refresh whatever the identity map holds; another request may have moved it on
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    booking = result.scalar_one_or_none()
    if booking is None:
        raise BookingError(ErrorCode.NOT_FOUND, "Booking not found")
    return booking


async def commit_transition(
    db: AsyncSession,
    booking: Booking,
    transition: Transition,
) -> None:
    """Apply the planned changes and push them through the ``version`` check."""
    booking_id = booking.id
    from_status = BookingStatus(booking.status)
    booking_state.apply_transition(booking, transition)
    try:
        await db.flush()
    except StaleDataError:
        # The session is unusable until the caller rolls back; only log captured values
        logger.warning("booking_version_conflict", booking_id=str(booking_id), from_status=from_status.value)
        raise BookingError(ErrorCode.INVALID_STATE, "Booking was modified concurrently, reload and retry") from None

    if transition.status is not None:
        BOOKING_TRANSITIONS.labels(from_status=from_status.value, to_status=transition.status.value).inc()
        logger.info(
            "booking_status_changed",
            booking_id=str(booking_id),
            from_status=from_status.value,
            to_status=transition.status.value,
        )


async def publish_committed(db: AsyncSession, transition: Transition, emitter: EventEmitter | None) -> None:
    """Commit while the booking lock is still held, then announce the change."""
    await db.commit()
    if emitter is not None:
        emitter.publish(transition.events)


def _verify_code(otp: OTPAuthority, booking: Booking, purpose: OTPPurpose, code) -> None:
    verification = otp.verify(booking.id, purpose, code)
    OTP_VERIFICATIONS.labels(
        purpose=purpose.value, outcome="valid" if verification.valid else verification.reason
    ).inc()
    if not verification.valid:
        logger.info("otp_rejected", booking_id=str(booking.id), purpose=purpose.value, reason=verification.reason)
        raise BookingError(ErrorCode.OTP_INVALID, _OTP_FAILURE_MESSAGES.get(verification.reason, "Invalid code"))


async def create_booking(
    db: AsyncSession,
    farmer,
    machine_id: uuid.UUID,
    requested_start_at: datetime,
    area_units: Decimal | None = None,
    emitter: EventEmitter | None = None,
) -> Booking:
    """A farmer requests an available machine; pricing is copied from the listing."""
    if farmer.role != UserRole.FARMER:
        raise BookingError(ErrorCode.FORBIDDEN, "Only farmers can request bookings")

    machine = await db.get(Machine, machine_id)
    if machine is None:
        raise BookingError(ErrorCode.NOT_FOUND, "Machine not found")
    if not machine.is_available:
        raise BookingError(ErrorCode.INVALID_STATE, "Machine is not available")
    if machine.owner_id == farmer.id:
        raise BookingError(ErrorCode.FORBIDDEN, "You cannot book your own machine")

    booking = Booking(
        farmer_id=farmer.id,
        owner_id=machine.owner_id,
        machine_id=machine.id,
        status=BookingStatus.REQUESTED,
        requested_start_at=requested_start_at,
        billing_scheme=BillingScheme(machine.billing_scheme).value,
        billing_rate=machine.rate,
        billing_unit=BillingUnit(machine.unit).value,
        area_units=area_units if machine.billing_scheme == BillingScheme.AREA else None,
    )
    db.add(booking)
    await db.flush()

    BOOKINGS_CREATED.labels(billing_scheme=BillingScheme(machine.billing_scheme).value).inc()
    logger.info("booking_created", booking_id=str(booking.id), machine_id=str(machine.id))

    if emitter is not None:
        emitter.publish(booking_state.request_events(booking))
    await create_notification(
        db,
        emitter,
        user_id=booking.owner_id,
        notification_type=NotificationType.BOOKING_REQUESTED,
        title="New booking request",
        body=f"A farmer wants to book {machine.name}.",
        data={"booking_id": str(booking.id)},
    )
    return booking


async def notify_parties(
    db: AsyncSession,
    emitter: EventEmitter | None,
    user_ids,
    notification_type: NotificationType,
    title: str,
    body: str,
    data: dict,
) -> None:
    for user_id in user_ids:
        await create_notification(
            db,
            emitter,
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            body=body,
            data=data,
        )


async def confirm_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    actor,
    accept: bool,
    otp: OTPAuthority,
    emitter: EventEmitter | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """Owner accepts (arrival code goes to the farmer) or rejects a request."""
    async with booking_lock(booking_id):
        booking = await load_booking(db, booking_id, for_update=True)
        now = now or utcnow()

        if not accept:
            transition = booking_state.plan_reject(booking, actor, now, reason)
            await commit_transition(db, booking, transition)
            await notify_parties(
                db,
                emitter,
                [booking.farmer_id],
                NotificationType.BOOKING_REJECTED,
                "Booking rejected",
                "The owner declined your booking request.",
                {"booking_id": str(booking.id), "reason": booking.cancellation_reason},
            )
            await publish_committed(db, transition, emitter)
            return booking

        ttl = settings.OTP_TTL_MINUTES
        code = otp.generate()
        transition = booking_state.plan_confirm(
            booking,
            actor,
            now,
            arrival_code=code,
            otp_expires_at=now + timedelta(minutes=ttl),
            deadline_minutes=settings.ARRIVAL_DEADLINE_MINUTES,
        )
        await commit_transition(db, booking, transition)
        # Only a request that won the version check may replace the farmer's code
        otp.issue(booking.id, OTPPurpose.ARRIVAL, code, ttl_minutes=ttl)
        await notify_parties(
            db,
            emitter,
            [booking.farmer_id],
            NotificationType.BOOKING_CONFIRMED,
            "Booking confirmed",
            "The owner confirmed your booking. Share your arrival code when the machine reaches your field.",
            {"booking_id": str(booking.id)},
        )
        await publish_committed(db, transition, emitter)
    return booking


async def verify_arrival(
    db: AsyncSession,
    booking_id: uuid.UUID,
    actor,
    code,
    otp: OTPAuthority,
    emitter: EventEmitter | None = None,
    now: datetime | None = None,
) -> Booking:
    """Arrival code checked: timer starts and the owner receives the completion code."""
    async with booking_lock(booking_id):
        booking = await load_booking(db, booking_id, for_update=True)
        # State first so a code is never burnt on a booking that cannot move
        booking_state.check_verify_arrival(booking, actor)
        _verify_code(otp, booking, OTPPurpose.ARRIVAL, code)

        now = now or utcnow()
        ttl = settings.OTP_TTL_MINUTES
        completion_code = otp.generate()
        transition = booking_state.plan_verify_arrival(
            booking,
            actor,
            now,
            completion_code=completion_code,
            otp_expires_at=now + timedelta(minutes=ttl),
        )
        await commit_transition(db, booking, transition)
        otp.issue(booking.id, OTPPurpose.COMPLETION, completion_code, ttl_minutes=ttl)
        await notify_parties(
            db,
            emitter,
            [booking.farmer_id, booking.owner_id],
            NotificationType.WORK_STARTED,
            "Work started",
            "Arrival verified, the timer is running.",
            {"booking_id": str(booking.id)},
        )
        await publish_committed(db, transition, emitter)
    return booking


async def verify_completion(
    db: AsyncSession,
    booking_id: uuid.UUID,
    actor,
    code,
    otp: OTPAuthority,
    emitter: EventEmitter | None = None,
    now: datetime | None = None,
) -> Booking:
    """Farmer enters the completion code: timer stops and the bill is computed."""
    async with booking_lock(booking_id):
        booking = await load_booking(db, booking_id, for_update=True)
        booking_state.check_verify_completion(booking, actor)
        _verify_code(otp, booking, OTPPurpose.COMPLETION, code)

        transition = booking_state.plan_verify_completion(booking, actor, now or utcnow())
        await commit_transition(db, booking, transition)

        amount = int(booking.calculated_amount)
        await notify_parties(
            db,
            emitter,
            [booking.farmer_id, booking.owner_id],
            NotificationType.WORK_COMPLETED,
            "Work completed",
            f"{booking.duration_minutes} min billed, amount due {amount}.",
            {"booking_id": str(booking.id), "calculated_amount": amount},
        )
        await publish_committed(db, transition, emitter)
    return booking


async def cancel_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    actor,
    otp: OTPAuthority,
    emitter: EventEmitter | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> Booking:
    async with booking_lock(booking_id):
        booking = await load_booking(db, booking_id, for_update=True)
        transition = booking_state.plan_cancel(booking, actor, now or utcnow(), reason)
        await commit_transition(db, booking, transition)
        for purpose in OTPPurpose:
            otp.discard(booking.id, purpose)

        BOOKINGS_CANCELLED.labels(cancelled_by=booking.cancelled_by).inc()
        await notify_parties(
            db,
            emitter,
            [uid for uid in (booking.farmer_id, booking.owner_id) if uid != actor.id],
            NotificationType.BOOKING_CANCELLED,
            "Booking cancelled",
            reason or "The booking was cancelled.",
            {"booking_id": str(booking.id), "cancelled_by": booking.cancelled_by},
        )
        await publish_committed(db, transition, emitter)
    return booking


async def auto_cancel_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    reason: str,
    otp: OTPAuthority | None = None,
    emitter: EventEmitter | None = None,
    now: datetime | None = None,
) -> Booking:
    """Scheduler path: the request or the arrival deadline lapsed."""
    async with booking_lock(booking_id):
        booking = await load_booking(db, booking_id, for_update=True)
        transition = booking_state.plan_auto_cancel(booking, now or utcnow(), reason)
        await commit_transition(db, booking, transition)
        if otp is not None:
            otp.discard(booking.id, OTPPurpose.ARRIVAL)

        BOOKINGS_CANCELLED.labels(cancelled_by="system").inc()
        await notify_parties(
            db,
            emitter,
            [booking.farmer_id, booking.owner_id],
            NotificationType.BOOKING_CANCELLED,
            "Booking expired",
            reason,
            {"booking_id": str(booking.id), "cancelled_by": "system"},
        )
        await publish_committed(db, transition, emitter)
    return booking


async def raise_dispute(
    db: AsyncSession,
    booking_id: uuid.UUID,
    actor,
    code: str,
    description: str | None = None,
    emitter: EventEmitter | None = None,
    now: datetime | None = None,
) -> Booking:
    async with booking_lock(booking_id):
        booking = await load_booking(db, booking_id, for_update=True)
        transition = booking_state.plan_dispute(booking, actor, now or utcnow(), code, description)
        await commit_transition(db, booking, transition)

        other_party = booking.owner_id if actor.id == booking.farmer_id else booking.farmer_id
        await notify_parties(
            db,
            emitter,
            [other_party],
            NotificationType.BOOKING_DISPUTED,
            "Dispute opened",
            f"A dispute was raised on your booking ({code}).",
            {"booking_id": str(booking.id), "dispute_code": code},
        )
        await publish_committed(db, transition, emitter)
    return booking


async def resend_otp(
    db: AsyncSession,
    booking_id: uuid.UUID,
    actor,
    purpose: OTPPurpose,
    otp: OTPAuthority,
    emitter: EventEmitter | None = None,
    now: datetime | None = None,
) -> Booking:
    """Replace the active code; it is only ever delivered to the party who must present it."""
    async with booking_lock(booking_id):
        booking = await load_booking(db, booking_id, for_update=True)
        if not booking.is_party(actor.id):
            raise BookingError(ErrorCode.FORBIDDEN, "Not authorized for this booking")

        status = BookingStatus(booking.status)
        if purpose == OTPPurpose.ARRIVAL:
            allowed = status == BookingStatus.OWNER_CONFIRMED
            holder = booking.farmer_id
        else:
            allowed = status in (BookingStatus.ARRIVED_OTP_VERIFIED, BookingStatus.IN_PROGRESS)
            holder = booking.owner_id
        if not allowed:
            raise BookingError(
                ErrorCode.INVALID_STATE,
                f"No {purpose.value} code can be issued in status '{status.value}'",
            )

        now = now or utcnow()
        ttl = settings.OTP_TTL_MINUTES
        code = otp.generate()
        transition = Transition(
            changes={"otp_expires_at": now + timedelta(minutes=ttl)},
            events=[
                DomainEvent(
                    "otp_resent",
                    user_room(holder),
                    {"booking_id": str(booking.id), "purpose": purpose.value, "otp": code},
                )
            ],
        )
        await commit_transition(db, booking, transition)
        otp.issue(booking.id, purpose, code, ttl_minutes=ttl)
        await publish_committed(db, transition, emitter)

    logger.info("otp_resent", booking_id=str(booking.id), purpose=purpose.value)
    return booking
