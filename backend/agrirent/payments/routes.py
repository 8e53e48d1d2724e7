import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agrirent.config import settings
from agrirent.database import get_db
from agrirent.dependencies import get_current_farmer, get_current_user, get_event_emitter
from agrirent.errors import BookingError, ErrorCode
from agrirent.models.enums import TransactionType
from agrirent.models.transaction import Transaction
from agrirent.models.user import User
from agrirent.models.webhook_event import ProcessedWebhookEvent
from agrirent.schemas.payment import (
    PaymentConfirmRequest,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    TransactionListResponse,
    TransactionResponse,
)
from agrirent.services import reconciliation, stripe_service
from agrirent.services.events import EventEmitter
from agrirent.utils.rate_limit import MUTATION_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()

MAX_WEBHOOK_PAYLOAD_BYTES = 65_536


@router.post("/initiate", response_model=PaymentInitiateResponse)
@limiter.limit(MUTATION_RATE_LIMIT)
async def initiate_payment(
    request: Request,
    body: PaymentInitiateRequest,
    farmer: User = Depends(get_current_farmer),
    db: AsyncSession = Depends(get_db),
):
    """Open (or reuse) the gateway order for a finished booking."""
    txn = await reconciliation.open_payment(db, body.booking_id, farmer)
    return PaymentInitiateResponse(
        transaction_id=txn.id,
        order_id=txn.gateway_order_id,
        amount=txn.amount,
        currency=settings.PAYMENT_CURRENCY,
        is_mock=stripe_service.is_mock_reference(txn.gateway_order_id),
    )


@router.post("/confirm")
@limiter.limit(MUTATION_RATE_LIMIT)
async def confirm_payment(
    request: Request,
    body: PaymentConfirmRequest,
    farmer: User = Depends(get_current_farmer),
    db: AsyncSession = Depends(get_db),
    emitter: EventEmitter = Depends(get_event_emitter),
):
    """Ask the gateway whether the order settled and close the booking if it did."""
    result = await db.execute(
        select(Transaction).where(
            Transaction.gateway_order_id == body.order_id,
            Transaction.type == TransactionType.PAYMENT,
        )
    )
    txn = result.scalars().first()
    if txn is None:
        raise BookingError(ErrorCode.NOT_FOUND, "Payment order not found")
    if txn.farmer_id != farmer.id:
        raise BookingError(ErrorCode.FORBIDDEN, "Not your payment")

    try:
        succeeded = await stripe_service.confirm_payment(body.order_id)
    except stripe_service.StripeServiceError:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment gateway unavailable")

    txn = await reconciliation.settle_order(db, body.order_id, succeeded, emitter)
    return {"status": txn.status, "booking_id": str(txn.booking_id)}


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    emitter: EventEmitter = Depends(get_event_emitter),
):
    """Handle Stripe PaymentIntent events."""
    content_length = request.headers.get("content-length")
    try:
        if content_length and int(content_length) > MAX_WEBHOOK_PAYLOAD_BYTES:
            raise HTTPException(status_code=413, detail="Payload too large")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid Content-Length header")

    payload = await request.body()
    if len(payload) > MAX_WEBHOOK_PAYLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")

    sig_header = request.headers.get("stripe-signature", "")
    try:
        event = stripe_service.verify_webhook_signature(payload, sig_header)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.error("stripe_webhook_signature_failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    event_id = event["id"]
    event_type = event["type"]

    existing = await db.execute(
        select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id == event_id)
    )
    if existing.scalar_one_or_none():
        logger.info("stripe_webhook_duplicate_skipped", event_id=event_id)
        return {"status": "already_processed"}

    # Record first: a redelivery must never settle the same order twice
    try:
        db.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type))
        await db.flush()
    except IntegrityError:
        await db.rollback()
        logger.info("stripe_webhook_duplicate_race", event_id=event_id)
        return {"status": "already_processed"}

    logger.info("stripe_webhook_received", event_type=event_type, event_id=event_id)

    if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        intent = event["data"]["object"]
        try:
            await reconciliation.settle_order(
                db,
                intent["id"],
                succeeded=event_type == "payment_intent.succeeded",
                emitter=emitter,
                gateway_payment_id=intent.get("latest_charge"),
            )
        except BookingError as e:
            # Unknown order, or a capture the booking can no longer take; acknowledge so Stripe stops retrying
            logger.warning("stripe_webhook_unmatched", event_id=event_id, code=e.code.value, detail=e.message)

    return {"status": "ok"}


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The caller's ledger and total completed payment volume."""
    transactions, total = await reconciliation.user_transactions(db, user)
    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
        total_earnings=total,
    )
