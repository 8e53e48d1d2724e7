import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from agrirent.models.notification import Notification
from agrirent.services.events import EventEmitter
from agrirent.utils.booking_state import user_room

logger = structlog.get_logger()


async def create_notification(
    db: AsyncSession,
    emitter: EventEmitter | None,
    user_id: uuid.UUID,
    notification_type: str,
    title: str,
    body: str,
    data: dict | None = None,
) -> Notification:
    """Persist a notification and push it to the user's live connections."""
    payload = dict(data) if data else {}
    # notification_type can be a string or an enum with a .value attribute
    type_value = notification_type.value if hasattr(notification_type, "value") else notification_type
    payload.setdefault("type", type_value)

    notification = Notification(
        user_id=user_id,
        type=type_value,
        title=title,
        body=body,
        data=payload,
    )
    db.add(notification)
    await db.flush()

    if emitter is not None:
        emitter.emit(
            user_room(user_id),
            "notification",
            {
                "id": str(notification.id),
                "type": type_value,
                "title": title,
                "body": body,
                "data": payload,
            },
        )
    logger.info("notification_created", user_id=str(user_id), notification_type=type_value)
    return notification
