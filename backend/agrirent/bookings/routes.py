import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agrirent.database import get_db
from agrirent.dependencies import get_current_farmer, get_current_user, get_event_emitter, get_otp_authority
from agrirent.errors import BookingError, ErrorCode
from agrirent.models.booking import Booking
from agrirent.models.enums import BookingStatus, OTPPurpose, UserRole
from agrirent.models.user import User
from agrirent.schemas.booking import (
    BookingCreateRequest,
    BookingResponse,
    CancelRequest,
    ConfirmRequest,
    DisputeRequest,
    OTPRequest,
    ResendOTPRequest,
)
from agrirent.services import booking_workflow
from agrirent.services.events import EventEmitter
from agrirent.services.otp import OTPAuthority
from agrirent.utils.rate_limit import LIST_RATE_LIMIT, MUTATION_RATE_LIMIT, OTP_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()

# Which code is live in which status, and who is meant to hold it
_ACTIVE_CODE = {
    BookingStatus.OWNER_CONFIRMED: (OTPPurpose.ARRIVAL, "farmer_id"),
    BookingStatus.ARRIVED_OTP_VERIFIED: (OTPPurpose.COMPLETION, "owner_id"),
    BookingStatus.IN_PROGRESS: (OTPPurpose.COMPLETION, "owner_id"),
}


def _serialize_booking(booking: Booking, user: User, otp: OTPAuthority) -> dict[str, Any]:
    """Booking as seen by ``user``. Code metadata is only shown to the party holding the code."""
    data = BookingResponse.model_validate(booking).model_dump(mode="json")
    active = _ACTIVE_CODE.get(BookingStatus(booking.status))
    if active is not None:
        purpose, holder_field = active
        if getattr(booking, holder_field) == user.id:
            data["active_otp"] = {
                "purpose": purpose.value,
                "expires_in_seconds": otp.remaining_seconds(booking.id, purpose),
            }
    return data


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit(MUTATION_RATE_LIMIT)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    farmer: User = Depends(get_current_farmer),
    db: AsyncSession = Depends(get_db),
    otp: OTPAuthority = Depends(get_otp_authority),
    emitter: EventEmitter = Depends(get_event_emitter),
):
    """Request a machine (farmer only)."""
    booking = await booking_workflow.create_booking(
        db,
        farmer,
        body.machine_id,
        body.requested_start_at,
        area_units=body.area_units,
        emitter=emitter,
    )
    return _serialize_booking(booking, farmer, otp)


@router.patch("/{booking_id}/confirm")
@limiter.limit(MUTATION_RATE_LIMIT)
async def confirm_booking(
    request: Request,
    booking_id: uuid.UUID,
    body: ConfirmRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    otp: OTPAuthority = Depends(get_otp_authority),
    emitter: EventEmitter = Depends(get_event_emitter),
):
    """Owner accepts or rejects a request. The arrival code is pushed to the farmer only."""
    booking = await booking_workflow.confirm_booking(
        db,
        booking_id,
        user,
        accept=body.action == "accept",
        otp=otp,
        emitter=emitter,
        reason=body.reason,
    )
    return _serialize_booking(booking, user, otp)


@router.patch("/{booking_id}/verify-arrival")
@limiter.limit(OTP_RATE_LIMIT)
async def verify_arrival(
    request: Request,
    booking_id: uuid.UUID,
    body: OTPRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    otp: OTPAuthority = Depends(get_otp_authority),
    emitter: EventEmitter = Depends(get_event_emitter),
):
    booking = await booking_workflow.verify_arrival(db, booking_id, user, body.otp, otp, emitter)
    return _serialize_booking(booking, user, otp)


@router.patch("/{booking_id}/verify-completion")
@limiter.limit(OTP_RATE_LIMIT)
async def verify_completion(
    request: Request,
    booking_id: uuid.UUID,
    body: OTPRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    otp: OTPAuthority = Depends(get_otp_authority),
    emitter: EventEmitter = Depends(get_event_emitter),
):
    booking = await booking_workflow.verify_completion(db, booking_id, user, body.otp, otp, emitter)
    return _serialize_booking(booking, user, otp)


@router.patch("/{booking_id}/cancel")
@limiter.limit(MUTATION_RATE_LIMIT)
async def cancel_booking(
    request: Request,
    booking_id: uuid.UUID,
    body: CancelRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    otp: OTPAuthority = Depends(get_otp_authority),
    emitter: EventEmitter = Depends(get_event_emitter),
):
    booking = await booking_workflow.cancel_booking(db, booking_id, user, otp, emitter, reason=body.reason)
    return _serialize_booking(booking, user, otp)


@router.post("/{booking_id}/dispute")
@limiter.limit(MUTATION_RATE_LIMIT)
async def raise_dispute(
    request: Request,
    booking_id: uuid.UUID,
    body: DisputeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    otp: OTPAuthority = Depends(get_otp_authority),
    emitter: EventEmitter = Depends(get_event_emitter),
):
    booking = await booking_workflow.raise_dispute(
        db, booking_id, user, body.code.value, body.description, emitter
    )
    return _serialize_booking(booking, user, otp)


@router.post("/{booking_id}/resend-otp")
@limiter.limit(OTP_RATE_LIMIT)
async def resend_otp(
    request: Request,
    booking_id: uuid.UUID,
    body: ResendOTPRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    otp: OTPAuthority = Depends(get_otp_authority),
    emitter: EventEmitter = Depends(get_event_emitter),
):
    """Issue a fresh code. It is delivered over the live channel, never in this response."""
    booking = await booking_workflow.resend_otp(db, booking_id, user, body.type, otp, emitter)
    return {
        "status": "sent",
        "purpose": body.type.value,
        "expires_in_seconds": otp.remaining_seconds(booking.id, body.type),
    }


@router.get("/me")
@limiter.limit(LIST_RATE_LIMIT)
async def list_my_bookings(
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    otp: OTPAuthority = Depends(get_otp_authority),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Bookings for the current user: farmers see theirs, owners theirs, admins all."""
    stmt = select(Booking)
    if user.role == UserRole.FARMER:
        stmt = stmt.where(Booking.farmer_id == user.id)
    elif user.role == UserRole.OWNER:
        stmt = stmt.where(Booking.owner_id == user.id)
    result = await db.execute(stmt.order_by(Booking.created_at.desc()).limit(limit).offset(offset))
    return [_serialize_booking(b, user, otp) for b in result.scalars().all()]


@router.get("/{booking_id}")
async def get_booking(
    booking_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    otp: OTPAuthority = Depends(get_otp_authority),
):
    booking = await booking_workflow.load_booking(db, booking_id)
    if user.role != UserRole.ADMIN and not booking.is_party(user.id):
        raise BookingError(ErrorCode.FORBIDDEN, "Not your booking")
    return _serialize_booking(booking, user, otp)
