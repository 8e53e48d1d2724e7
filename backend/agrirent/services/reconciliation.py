"""Settle finished bookings once the gateway confirms payment.

``finalize_payment`` is safe to re-run: a booking that is already paid and has
its release leg recorded is returned unchanged, and a paid booking missing the
leg gets only the leg.
"""
import uuid
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from agrirent.config import settings
from agrirent.errors import BookingError, ErrorCode
from agrirent.metrics import PAYMENTS_FINALIZED
from agrirent.models.booking import Booking
from agrirent.models.enums import (
    BookingStatus,
    NotificationType,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from agrirent.models.transaction import Transaction
from agrirent.models.user import User
from agrirent.services import stripe_service
from agrirent.services.booking_workflow import commit_transition, load_booking, notify_parties, publish_committed
from agrirent.services.events import EventEmitter
from agrirent.utils import booking_state
from agrirent.utils.locks import booking_lock
from agrirent.utils.timeutils import utcnow

logger = structlog.get_logger()

# pending is the only status a ledger row may leave
_TERMINAL_FROM_PENDING = {TransactionStatus.COMPLETED, TransactionStatus.FAILED}


def clamp_trust_score(score: int) -> int:
    return max(settings.TRUST_SCORE_MIN, min(settings.TRUST_SCORE_MAX, score))


def advance_transaction_status(txn: Transaction, new_status: TransactionStatus) -> bool:
    """Move a pending row to completed/failed. Returns False when it is already there."""
    current = TransactionStatus(txn.status)
    if current == new_status:
        return False
    if current != TransactionStatus.PENDING or new_status not in _TERMINAL_FROM_PENDING:
        raise BookingError(
            ErrorCode.INVALID_STATE,
            f"Transaction cannot move from '{current.value}' to '{new_status.value}'",
        )
    txn.status = new_status
    return True


async def _release_leg(db: AsyncSession, booking_id: uuid.UUID) -> Transaction | None:
    result = await db.execute(
        select(Transaction).where(
            Transaction.booking_id == booking_id,
            Transaction.type == TransactionType.RELEASE,
        )
    )
    return result.scalars().first()


def _new_release_leg(booking: Booking) -> Transaction:
    return Transaction(
        type=TransactionType.RELEASE,
        amount=booking.calculated_amount,
        status=TransactionStatus.RELEASED,
        booking_id=booking.id,
        farmer_id=booking.farmer_id,
        owner_id=booking.owner_id,
        gateway="system",
        notes="Auto Payout",
    )


async def _adjust_trust(db: AsyncSession, user_id: uuid.UUID, delta: int) -> None:
    user = await db.get(User, user_id)
    if user is None:
        logger.warning("trust_adjust_user_missing", user_id=str(user_id))
        return
    user.trust_score = clamp_trust_score(user.trust_score + delta)


async def finalize_payment(
    db: AsyncSession,
    booking_id: uuid.UUID,
    settlement_ref: str,
    emitter: EventEmitter | None = None,
    now: datetime | None = None,
) -> Booking:
    """Mark the booking paid, reward both parties and record the payout leg."""
    async with booking_lock(booking_id):
        booking = await load_booking(db, booking_id, for_update=True)

        if BookingStatus(booking.status) == BookingStatus.PAID and booking.payment_transaction_id:
            if await _release_leg(db, booking.id) is None:
                logger.warning("release_leg_backfilled", booking_id=str(booking.id))
                db.add(_new_release_leg(booking))
                await db.flush()
            else:
                logger.info("payment_already_finalized", booking_id=str(booking.id))
            return booking

        transition = booking_state.plan_payment(booking, settlement_ref, now or utcnow())
        await commit_transition(db, booking, transition)

        await _adjust_trust(db, booking.owner_id, settings.OWNER_TRUST_BONUS)
        await _adjust_trust(db, booking.farmer_id, settings.FARMER_TRUST_BONUS)
        db.add(_new_release_leg(booking))
        await db.flush()

        PAYMENTS_FINALIZED.inc()
        logger.info(
            "payment_finalized",
            booking_id=str(booking.id),
            amount=str(booking.paid_amount),
            settlement_ref=settlement_ref,
        )

        amount = int(booking.paid_amount)
        await notify_parties(
            db, emitter, [booking.farmer_id], NotificationType.PAYMENT_RECEIVED,
            "Payment successful", f"You paid {amount}.", {"booking_id": str(booking.id)},
        )
        await notify_parties(
            db, emitter, [booking.owner_id], NotificationType.PAYMENT_RECEIVED,
            "Payment received", f"Received {amount} for your booking.", {"booking_id": str(booking.id)},
        )
        await publish_committed(db, transition, emitter)
    return booking


async def open_payment(db: AsyncSession, booking_id: uuid.UUID, farmer: User) -> Transaction:
    """Create (or reuse) the pending gateway order for a completed booking."""
    booking = await load_booking(db, booking_id)
    if booking.farmer_id != farmer.id:
        raise BookingError(ErrorCode.FORBIDDEN, "Only the farmer who booked can pay")
    if BookingStatus(booking.status) != BookingStatus.COMPLETED_PENDING_PAYMENT:
        raise BookingError(
            ErrorCode.INVALID_STATE,
            f"Cannot pay for a booking in status '{BookingStatus(booking.status).value}'",
        )

    result = await db.execute(
        select(Transaction).where(
            Transaction.booking_id == booking.id,
            Transaction.type == TransactionType.PAYMENT,
        )
    )
    attempts = list(result.scalars().all())
    for existing in attempts:
        if TransactionStatus(existing.status) == TransactionStatus.PENDING:
            return existing

    # A failed attempt must not replay into the same gateway order
    order = await stripe_service.initiate_payment(
        str(booking.id),
        booking.calculated_amount,
        idempotency_key=f"booking_payment_{booking.id}_{len(attempts) + 1}",
    )
    txn = Transaction(
        type=TransactionType.PAYMENT,
        amount=booking.calculated_amount,
        status=TransactionStatus.PENDING,
        booking_id=booking.id,
        farmer_id=booking.farmer_id,
        owner_id=booking.owner_id,
        gateway="mock_gateway" if stripe_service.is_mock_reference(order["id"]) else "stripe",
        gateway_order_id=order["id"],
        created_by=farmer.id,
    )
    db.add(txn)
    await db.flush()
    logger.info("payment_initiated", booking_id=str(booking.id), order_id=order["id"])
    return txn


def _pick_payment_row(rows: list[Transaction]) -> Transaction | None:
    """The open attempt for an order, else the settled one so redeliveries stay no-ops."""
    for wanted in (TransactionStatus.PENDING, TransactionStatus.COMPLETED):
        for row in rows:
            if TransactionStatus(row.status) == wanted:
                return row
    return rows[0] if rows else None


async def settle_order(
    db: AsyncSession,
    order_ref: str,
    succeeded: bool,
    emitter: EventEmitter | None = None,
    gateway_payment_id: str | None = None,
) -> Transaction:
    """Apply a gateway outcome to the pending payment row, then settle the booking."""
    result = await db.execute(
        select(Transaction).where(
            Transaction.gateway_order_id == order_ref,
            Transaction.type == TransactionType.PAYMENT,
        )
    )
    txn = _pick_payment_row(list(result.scalars().all()))
    if txn is None:
        raise BookingError(ErrorCode.NOT_FOUND, "Payment order not found")

    new_status = TransactionStatus.COMPLETED if succeeded else TransactionStatus.FAILED
    if advance_transaction_status(txn, new_status) and gateway_payment_id:
        txn.gateway_payment_id = gateway_payment_id
    await db.flush()

    if succeeded:
        txn_id, booking_id = txn.id, txn.booking_id
        try:
            await finalize_payment(db, booking_id, str(txn_id), emitter)
        except BookingError as e:
            # The capture stays recorded; a refund has to go through dispute resolution
            logger.warning(
                "payment_captured_booking_unsettled",
                transaction_id=str(txn_id),
                booking_id=str(booking_id),
                order_id=order_ref,
                reason=e.message,
            )
            raise
    else:
        logger.warning("payment_failed", booking_id=str(txn.booking_id), order_id=order_ref)
    return txn


async def user_transactions(db: AsyncSession, user: User) -> tuple[list[Transaction], Decimal]:
    """The caller's ledger rows and their total completed payment volume."""
    if user.role == UserRole.FARMER:
        scope = Transaction.farmer_id == user.id
    elif user.role == UserRole.OWNER:
        scope = Transaction.owner_id == user.id
    else:
        scope = or_(Transaction.farmer_id == user.id, Transaction.owner_id == user.id)

    rows = await db.execute(select(Transaction).where(scope).order_by(Transaction.created_at.desc()))
    total = await db.execute(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            scope,
            Transaction.type == TransactionType.PAYMENT,
            Transaction.status == TransactionStatus.COMPLETED,
        )
    )
    return list(rows.scalars().all()), Decimal(str(total.scalar_one()))
