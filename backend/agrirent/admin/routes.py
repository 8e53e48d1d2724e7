import uuid

import structlog
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agrirent.database import get_db
from agrirent.dependencies import get_current_admin, get_event_emitter
from agrirent.models.audit_log import AuditLog
from agrirent.models.booking import Booking
from agrirent.models.enums import BookingStatus
from agrirent.models.user import User
from agrirent.schemas.booking import BookingResponse
from agrirent.schemas.payment import DisputeResolveRequest
from agrirent.services.disputes import resolve_dispute
from agrirent.services.events import EventEmitter
from agrirent.utils.rate_limit import limiter

logger = structlog.get_logger()
router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/disputes")
@limiter.limit("30/minute")
async def list_open_disputes(
    request: Request,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Bookings waiting on an admin decision, oldest dispute first."""
    result = await db.execute(
        select(Booking)
        .where(Booking.status == BookingStatus.DISPUTED)
        .order_by(Booking.dispute_raised_at.asc())
        .limit(limit)
        .offset(offset)
    )
    return [BookingResponse.model_validate(b).model_dump(mode="json") for b in result.scalars().all()]


@router.patch("/disputes/{booking_id}/resolve")
@limiter.limit("30/minute")
async def resolve_booking_dispute(
    request: Request,
    booking_id: uuid.UUID,
    body: DisputeResolveRequest,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
    emitter: EventEmitter = Depends(get_event_emitter),
):
    booking = await resolve_dispute(
        db, booking_id, admin, body.resolution, body.refund_amount, emitter
    )
    return BookingResponse.model_validate(booking).model_dump(mode="json")


@router.get("/audit-logs")
@limiter.limit("30/minute")
async def list_audit_logs(
    request: Request,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
    booking_id: uuid.UUID | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
):
    stmt = select(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit)
    if booking_id is not None:
        stmt = stmt.where(AuditLog.booking_id == booking_id)
    result = await db.execute(stmt)
    return [
        {
            "id": str(log.id),
            "action": log.action,
            "admin_user_id": str(log.admin_user_id),
            "booking_id": str(log.booking_id) if log.booking_id else None,
            "detail": log.detail,
            "metadata": log.metadata_json,
            "created_at": log.created_at.isoformat() if log.created_at else None,
        }
        for log in result.scalars().all()
    ]
