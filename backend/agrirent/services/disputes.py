import uuid
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agrirent.errors import BookingError, ErrorCode
from agrirent.metrics import PAYMENTS_REFUNDED
from agrirent.models.audit_log import AuditLog
from agrirent.models.booking import Booking
from agrirent.models.enums import NotificationType, TransactionStatus, TransactionType
from agrirent.models.transaction import Transaction
from agrirent.models.user import User
from agrirent.services import stripe_service
from agrirent.services.booking_workflow import commit_transition, load_booking, notify_parties, publish_committed
from agrirent.services.events import EventEmitter
from agrirent.utils import booking_state
from agrirent.utils.locks import booking_lock
from agrirent.utils.timeutils import utcnow

logger = structlog.get_logger()


async def _settled_order_ref(db: AsyncSession, booking_id: uuid.UUID) -> str | None:
    result = await db.execute(
        select(Transaction.gateway_order_id).where(
            Transaction.booking_id == booking_id,
            Transaction.type == TransactionType.PAYMENT,
            Transaction.status == TransactionStatus.COMPLETED,
        )
    )
    return result.scalars().first()


async def resolve_dispute(
    db: AsyncSession,
    booking_id: uuid.UUID,
    admin: User,
    resolution: str,
    refund_amount: Decimal = Decimal("0"),
    emitter: EventEmitter | None = None,
    now: datetime | None = None,
) -> Booking:
    """Close a dispute. A positive refund cancels the booking, otherwise it stands as paid.

    The refund is recorded as a ``refund`` ledger row and, when the farmer paid
    through the gateway, pushed back to the gateway as well.
    """
    refund_amount = Decimal(str(refund_amount))
    async with booking_lock(booking_id):
        booking = await load_booking(db, booking_id, for_update=True)
        transition = booking_state.plan_resolve_dispute(booking, admin, now or utcnow(), resolution, refund_amount)

        order_ref = None
        if refund_amount > 0:
            order_ref = await _settled_order_ref(db, booking.id)
            db.add(
                Transaction(
                    type=TransactionType.REFUND,
                    amount=refund_amount,
                    status=TransactionStatus.REFUNDED,
                    booking_id=booking.id,
                    farmer_id=booking.farmer_id,
                    owner_id=booking.owner_id,
                    gateway="stripe" if order_ref else "system",
                    gateway_order_id=order_ref,
                    created_by=admin.id,
                    notes=resolution,
                )
            )

        await commit_transition(db, booking, transition)

        db.add(
            AuditLog(
                action="DISPUTE_RESOLVE",
                admin_user_id=admin.id,
                booking_id=booking.id,
                detail=resolution,
                metadata_json={
                    "refund_amount": str(refund_amount),
                    "new_status": transition.status.value,
                    "dispute_code": booking.dispute_code,
                },
            )
        )
        await db.flush()

        # Money moves only once the booking and ledger rows are written; a gateway error rolls them back
        if order_ref:
            await stripe_service.refund_payment(
                order_ref, refund_amount, idempotency_key=f"dispute_refund_{booking.id}"
            )
        if refund_amount > 0:
            PAYMENTS_REFUNDED.inc()

        logger.info(
            "dispute_resolved",
            booking_id=str(booking.id),
            admin_id=str(admin.id),
            refund_amount=str(refund_amount),
            new_status=transition.status.value,
        )
        await notify_parties(
            db,
            emitter,
            [booking.farmer_id, booking.owner_id],
            NotificationType.DISPUTE_RESOLVED,
            "Dispute resolved",
            resolution,
            {"booking_id": str(booking.id), "refund_amount": str(refund_amount)},
        )
        await publish_committed(db, transition, emitter)
    return booking
