import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agrirent.database import get_db
from agrirent.dependencies import get_current_farmer, get_current_user, get_event_emitter
from agrirent.errors import BookingError, ErrorCode
from agrirent.models.enums import BookingStatus, NotificationType, UserRole
from agrirent.models.review import Review
from agrirent.models.user import User
from agrirent.schemas.review import ReviewCreateRequest, ReviewResponse
from agrirent.services.booking_workflow import load_booking, notify_parties
from agrirent.services.events import EventEmitter
from agrirent.utils.rate_limit import limiter

logger = structlog.get_logger()
router = APIRouter()


@router.post("", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def create_review(
    request: Request,
    body: ReviewCreateRequest,
    farmer: User = Depends(get_current_farmer),
    db: AsyncSession = Depends(get_db),
    emitter: EventEmitter = Depends(get_event_emitter),
):
    """Rate the owner and machine of a paid booking. One review per booking."""
    booking = await load_booking(db, body.booking_id)
    if booking.farmer_id != farmer.id:
        raise BookingError(ErrorCode.FORBIDDEN, "Not a participant of this booking")
    if BookingStatus(booking.status) != BookingStatus.PAID:
        raise BookingError(ErrorCode.INVALID_STATE, "Can only review paid bookings")

    existing = await db.execute(select(Review.id).where(Review.booking_id == booking.id))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Already reviewed this booking")

    review = Review(
        booking_id=booking.id,
        reviewer_id=farmer.id,
        reviewee_id=booking.owner_id,
        machine_id=booking.machine_id,
        rating=body.rating,
        comment=body.comment,
    )
    db.add(review)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Already reviewed this booking")

    logger.info("review_created", review_id=str(review.id), booking_id=str(booking.id))
    await notify_parties(
        db, emitter, [booking.owner_id], NotificationType.NEW_REVIEW,
        "New review", f"You received a {body.rating}-star review.", {"booking_id": str(booking.id)},
    )
    return ReviewResponse.model_validate(review)


@router.get("/booking/{booking_id}", response_model=ReviewResponse)
async def get_booking_review(
    booking_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await load_booking(db, booking_id)
    if user.role != UserRole.ADMIN and not booking.is_party(user.id):
        raise BookingError(ErrorCode.FORBIDDEN, "Not your booking")
    result = await db.execute(select(Review).where(Review.booking_id == booking.id))
    review = result.scalar_one_or_none()
    if review is None:
        raise BookingError(ErrorCode.NOT_FOUND, "Review not found")
    return review
