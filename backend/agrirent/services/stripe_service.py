import asyncio
import time as _time
import uuid

import stripe
import structlog
from fastapi import HTTPException

from agrirent.config import settings
from agrirent.metrics import STRIPE_CALL_DURATION

logger = structlog.get_logger()

STRIPE_TIMEOUT_SECONDS = 15.0


class StripeServiceError(Exception):
    """Raised when a Stripe call fails.

    Carries no HTTP semantics so scheduler jobs and the reconciliation core can
    use the gateway without FastAPI in the loop.
    """


def is_mock_reference(reference: str | None) -> bool:
    return not settings.STRIPE_SECRET_KEY or (reference or "").startswith("pi_mock_")


def to_minor_units(amount) -> int:
    """Whole rupees to paise."""
    return int(round(float(amount) * 100))


async def initiate_payment(
    booking_id: str,
    amount,
    metadata: dict[str, str] | None = None,
    idempotency_key: str | None = None,
) -> dict:
    """Open a gateway order for ``amount`` and return its id and client secret."""
    amount_minor = to_minor_units(amount)
    if not settings.STRIPE_SECRET_KEY:
        # No Stripe key at all: full mock mode
        logger.info("stripe_mock_payment_intent", booking_id=booking_id, amount=amount_minor)
        return {"id": f"pi_mock_{uuid.uuid4().hex}", "client_secret": None}

    params: dict = {
        "amount": amount_minor,
        "currency": settings.PAYMENT_CURRENCY,
        "metadata": {"booking_id": booking_id, **(metadata or {})},
        "api_key": settings.STRIPE_SECRET_KEY,
    }
    if idempotency_key:
        params["idempotency_key"] = idempotency_key

    start = _time.monotonic()
    try:
        intent = await asyncio.wait_for(
            asyncio.to_thread(stripe.PaymentIntent.create, **params), timeout=STRIPE_TIMEOUT_SECONDS
        )
    except stripe.StripeError as e:
        logger.exception("stripe_payment_intent_failed", booking_id=booking_id)
        raise StripeServiceError(f"Stripe payment creation failed: {e}") from None
    STRIPE_CALL_DURATION.labels(operation="initiate_payment").observe(_time.monotonic() - start)
    logger.info("stripe_payment_intent_created", intent_id=intent.id, booking_id=booking_id)
    return {"id": intent.id, "client_secret": intent.client_secret}


async def confirm_payment(order_ref: str) -> bool:
    """True when the gateway reports the order as settled."""
    if is_mock_reference(order_ref):
        logger.info("stripe_mock_confirm", intent_id=order_ref)
        return True

    start = _time.monotonic()
    try:
        intent = await asyncio.wait_for(
            asyncio.to_thread(stripe.PaymentIntent.retrieve, order_ref, api_key=settings.STRIPE_SECRET_KEY),
            timeout=STRIPE_TIMEOUT_SECONDS,
        )
    except stripe.StripeError as e:
        logger.exception("stripe_confirm_failed", intent_id=order_ref)
        raise StripeServiceError(f"Stripe confirmation failed: {e}") from None
    STRIPE_CALL_DURATION.labels(operation="confirm_payment").observe(_time.monotonic() - start)
    logger.info("stripe_payment_status", intent_id=order_ref, status=intent.status)
    return intent.status == "succeeded"


async def refund_payment(order_ref: str, amount=None, idempotency_key: str | None = None) -> dict:
    """Refund ``amount`` (or everything) of a settled order."""
    if is_mock_reference(order_ref):
        logger.info("stripe_mock_refund", intent_id=order_ref, amount=amount)
        return {"id": f"re_mock_{order_ref}", "status": "succeeded"}

    params: dict = {"payment_intent": order_ref, "api_key": settings.STRIPE_SECRET_KEY}
    if amount is not None:
        params["amount"] = to_minor_units(amount)
    if idempotency_key:
        params["idempotency_key"] = idempotency_key

    start = _time.monotonic()
    try:
        refund = await asyncio.wait_for(
            asyncio.to_thread(stripe.Refund.create, **params), timeout=STRIPE_TIMEOUT_SECONDS
        )
    except stripe.StripeError as e:
        logger.exception("stripe_refund_failed", intent_id=order_ref)
        raise StripeServiceError(f"Stripe refund failed: {e}") from None
    STRIPE_CALL_DURATION.labels(operation="refund_payment").observe(_time.monotonic() - start)
    logger.info("stripe_refund_created", refund_id=refund.id, intent_id=order_ref)
    return {"id": refund.id, "status": refund.status}


def verify_webhook_signature(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify the Stripe-Signature header and return the parsed event."""
    # Unsigned webhooks are never trusted, not even in development
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("stripe_webhook_rejected_no_secret")
        raise HTTPException(status_code=501, detail="Webhook signature verification not configured")

    return stripe.Webhook.construct_event(
        payload, sig_header, settings.STRIPE_WEBHOOK_SECRET, api_key=settings.STRIPE_SECRET_KEY
    )
