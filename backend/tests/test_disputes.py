from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agrirent.errors import BookingError, ErrorCode
from agrirent.models.audit_log import AuditLog
from agrirent.models.booking import Booking
from agrirent.models.enums import BookingStatus, PaymentStatus, TransactionStatus, TransactionType
from agrirent.models.machine import Machine
from agrirent.models.transaction import Transaction
from agrirent.models.user import User
from agrirent.services import reconciliation, stripe_service
from agrirent.services.disputes import resolve_dispute
from agrirent.services.events import EventEmitter, drain
from tests.conftest import auth_header, make_booking, token_for


async def _disputed_booking(db: AsyncSession, machine: Machine, farmer: User) -> Booking:
    return await make_booking(
        db,
        machine,
        farmer,
        BookingStatus.DISPUTED,
        calculated_amount=Decimal("900"),
        dispute_code="BILLING_ISSUE",
        dispute_raised_by=farmer.id,
    )


async def _refunds(db: AsyncSession, booking: Booking) -> list[Transaction]:
    result = await db.execute(
        select(Transaction).where(
            Transaction.booking_id == booking.id,
            Transaction.type == TransactionType.REFUND,
        )
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_resolve_with_refund_cancels_booking(
    db: AsyncSession, emitter: EventEmitter, farmer_user: User, owner_user: User, admin_user: User, machine: Machine
):
    booking = await _disputed_booking(db, machine, farmer_user)
    farmer_queue = emitter.subscribe(str(farmer_user.id))
    owner_queue = emitter.subscribe(str(owner_user.id))

    await resolve_dispute(db, booking.id, admin_user, "Half day lost to breakdown", Decimal("50"), emitter)

    assert booking.status == BookingStatus.CANCELLED
    assert booking.refunded_amount == Decimal("50")
    assert booking.payment_status == PaymentStatus.REFUNDED
    assert booking.dispute_resolution == "Half day lost to breakdown"
    assert booking.dispute_resolved_at is not None

    refunds = await _refunds(db, booking)
    assert len(refunds) == 1
    assert refunds[0].amount == Decimal("50")
    assert refunds[0].status == TransactionStatus.REFUNDED
    # Never paid through the gateway, so nothing to push back
    assert refunds[0].gateway == "system"

    for queue in (farmer_queue, owner_queue):
        assert any(m["event"] == "dispute_resolved" for m in drain(queue))


@pytest.mark.asyncio
async def test_resolve_without_refund_marks_paid(
    db: AsyncSession, farmer_user: User, admin_user: User, machine: Machine
):
    booking = await _disputed_booking(db, machine, farmer_user)

    await resolve_dispute(db, booking.id, admin_user, "Charge stands", Decimal("0"))

    assert booking.status == BookingStatus.PAID
    assert await _refunds(db, booking) == []


@pytest.mark.asyncio
async def test_resolve_non_disputed_booking(
    db: AsyncSession, farmer_user: User, admin_user: User, machine: Machine
):
    booking = await make_booking(db, machine, farmer_user, BookingStatus.PAID)
    with pytest.raises(BookingError) as exc:
        await resolve_dispute(db, booking.id, admin_user, "n/a", Decimal("50"))
    assert exc.value.code == ErrorCode.INVALID_STATE
    assert await _refunds(db, booking) == []


@pytest.mark.asyncio
async def test_resolve_writes_audit_log(
    db: AsyncSession, farmer_user: User, admin_user: User, machine: Machine
):
    booking = await _disputed_booking(db, machine, farmer_user)
    await resolve_dispute(db, booking.id, admin_user, "Partial refund", Decimal("120.50"))

    result = await db.execute(select(AuditLog).where(AuditLog.booking_id == booking.id))
    log = result.scalar_one()
    assert log.action == "DISPUTE_RESOLVE"
    assert log.admin_user_id == admin_user.id
    assert log.metadata_json["refund_amount"] == "120.50"
    assert log.metadata_json["new_status"] == "cancelled"


@pytest.mark.asyncio
async def test_refund_goes_back_through_gateway_when_paid_online(
    db: AsyncSession, farmer_user: User, admin_user: User, machine: Machine
):
    booking = await make_booking(
        db, machine, farmer_user, BookingStatus.COMPLETED_PENDING_PAYMENT, calculated_amount=Decimal("900")
    )
    txn = await reconciliation.open_payment(db, booking.id, farmer_user)
    await reconciliation.settle_order(db, txn.gateway_order_id, succeeded=True)
    booking.status = BookingStatus.DISPUTED.value
    booking.dispute_code = "BILLING_ISSUE"
    await db.flush()

    refund = AsyncMock(return_value={"id": "re_1", "status": "succeeded"})
    with patch("agrirent.services.stripe_service.refund_payment", new=refund):
        await resolve_dispute(db, booking.id, admin_user, "Overcharged", Decimal("200"))

    refund.assert_awaited_once()
    assert refund.await_args.args[0] == txn.gateway_order_id
    refunds = await _refunds(db, booking)
    assert refunds[0].gateway_order_id == txn.gateway_order_id


@pytest.mark.asyncio
async def test_gateway_refund_failure_leaves_dispute_open(
    db: AsyncSession, farmer_user: User, admin_user: User, machine: Machine
):
    booking = await make_booking(
        db, machine, farmer_user, BookingStatus.COMPLETED_PENDING_PAYMENT, calculated_amount=Decimal("900")
    )
    txn = await reconciliation.open_payment(db, booking.id, farmer_user)
    await reconciliation.settle_order(db, txn.gateway_order_id, succeeded=True)
    booking.status = BookingStatus.DISPUTED.value
    booking.dispute_code = "BILLING_ISSUE"
    await db.commit()

    seen_before_refund = []

    async def refund_then_fail(order_ref, amount, idempotency_key=None):
        seen_before_refund.extend(await _refunds(db, booking))
        raise stripe_service.StripeServiceError("card network down")

    with patch("agrirent.services.stripe_service.refund_payment", side_effect=refund_then_fail):
        with pytest.raises(stripe_service.StripeServiceError):
            await resolve_dispute(db, booking.id, admin_user, "Overcharged", Decimal("200"))
    await db.rollback()

    assert len(seen_before_refund) == 1
    await db.refresh(booking)
    assert booking.status == BookingStatus.DISPUTED
    assert await _refunds(db, booking) == []


@pytest.mark.asyncio
async def test_resolve_route_requires_admin(
    client: AsyncClient, db: AsyncSession, farmer_user: User, owner_user: User, machine: Machine
):
    booking = await _disputed_booking(db, machine, farmer_user)
    response = await client.patch(
        f"/admin/disputes/{booking.id}/resolve",
        json={"resolution": "I win", "refund_amount": "0"},
        headers=auth_header(token_for(owner_user)),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_resolve_route(
    client: AsyncClient, db: AsyncSession, farmer_user: User, admin_user: User, machine: Machine
):
    booking = await _disputed_booking(db, machine, farmer_user)
    headers = auth_header(token_for(admin_user))

    listing = await client.get("/admin/disputes", headers=headers)
    assert [b["id"] for b in listing.json()] == [str(booking.id)]

    response = await client.patch(
        f"/admin/disputes/{booking.id}/resolve",
        json={"resolution": "Refund agreed", "refund_amount": "50"},
        headers=headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "cancelled"
    assert Decimal(data["refunded_amount"]) == Decimal("50")

    again = await client.patch(
        f"/admin/disputes/{booking.id}/resolve",
        json={"resolution": "Again", "refund_amount": "0"},
        headers=headers,
    )
    assert again.status_code == 409
    assert again.json()["code"] == "INVALID_STATE"

    logs = await client.get(f"/admin/audit-logs?booking_id={booking.id}", headers=headers)
    assert [entry["action"] for entry in logs.json()] == ["DISPUTE_RESOLVE"]


@pytest.mark.asyncio
async def test_resolve_route_rejects_negative_refund(
    client: AsyncClient, db: AsyncSession, farmer_user: User, admin_user: User, machine: Machine
):
    booking = await _disputed_booking(db, machine, farmer_user)
    response = await client.patch(
        f"/admin/disputes/{booking.id}/resolve",
        json={"resolution": "x", "refund_amount": "-5"},
        headers=auth_header(token_for(admin_user)),
    )
    assert response.status_code == 422
