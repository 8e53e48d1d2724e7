import uuid

import structlog
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agrirent.database import get_db
from agrirent.dependencies import get_current_user
from agrirent.errors import BookingError, ErrorCode
from agrirent.models.notification import Notification
from agrirent.models.user import User
from agrirent.schemas.notification import NotificationListResponse, NotificationResponse
from agrirent.utils.rate_limit import LIST_RATE_LIMIT, MUTATION_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()


@router.get("", response_model=NotificationListResponse)
@limiter.limit(LIST_RATE_LIMIT)
async def list_notifications(
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    unread_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0, le=10000),
):
    """The caller's inbox, newest first, with the unread count."""
    query = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712
    result = await db.execute(
        query.order_by(Notification.created_at.desc(), Notification.id).limit(limit).offset(offset)
    )

    unread = await db.execute(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user.id, Notification.is_read == False)  # noqa: E712
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in result.scalars().all()],
        unread_count=unread.scalar_one(),
    )


@router.patch("/read-all")
@limiter.limit(MUTATION_RATE_LIMIT)
async def mark_all_read(
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.is_read == False)  # noqa: E712
        .values(is_read=True)
    )
    await db.flush()
    logger.info("notifications_all_marked_read", user_id=str(user.id))
    return {"status": "ok"}


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
@limiter.limit(MUTATION_RATE_LIMIT)
async def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    # Someone else's notification is reported as missing
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user.id,
        )
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        raise BookingError(ErrorCode.NOT_FOUND, "Notification not found")

    notification.is_read = True
    await db.flush()
    logger.info("notification_marked_read", notification_id=str(notification_id))
    return NotificationResponse.model_validate(notification)
