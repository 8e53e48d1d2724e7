"""Tests for the in-process event hub and notification fan-out."""
import asyncio
import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agrirent.models.enums import NotificationType
from agrirent.models.notification import Notification
from agrirent.models.user import User
from agrirent.services.events import EventEmitter, drain
from agrirent.services.notifications import create_notification
from agrirent.utils.booking_state import DomainEvent


@pytest.mark.asyncio
async def test_emit_reaches_every_member_of_room():
    emitter = EventEmitter()
    a = emitter.subscribe("booking_1")
    b = emitter.subscribe("booking_1", "user_b")
    outsider = emitter.subscribe("booking_2")

    delivered = emitter.emit("booking_1", "timer_started", {"booking_id": "1"})

    assert delivered == 2
    assert drain(a) == [{"event": "timer_started", "room": "booking_1", "data": {"booking_id": "1"}}]
    assert len(drain(b)) == 1
    assert drain(outsider) == []


@pytest.mark.asyncio
async def test_emit_to_empty_room_is_a_no_op():
    emitter = EventEmitter()
    assert emitter.emit("nobody_here", "booking_confirmed", {}) == 0


@pytest.mark.asyncio
async def test_leave_and_disconnect():
    emitter = EventEmitter()
    queue = emitter.subscribe("user_1", "booking_1")

    emitter.leave(queue, "booking_1")
    assert emitter.room_size("booking_1") == 0
    assert emitter.room_size("user_1") == 1

    emitter.disconnect(queue)
    assert emitter.room_size("user_1") == 0
    assert emitter.emit("user_1", "notification", {}) == 0


@pytest.mark.asyncio
async def test_full_queue_drops_instead_of_blocking():
    emitter = EventEmitter(queue_maxsize=2)
    slow = emitter.subscribe("room")
    fast = emitter.subscribe("room")

    for i in range(3):
        emitter.emit("room", "tick", {"i": i})
        drain(fast)

    assert slow.qsize() == 2
    assert [m["data"]["i"] for m in drain(slow)] == [0, 1]


@pytest.mark.asyncio
async def test_publish_routes_each_event_to_its_room():
    emitter = EventEmitter()
    farmer = emitter.subscribe("farmer")
    owner = emitter.subscribe("owner")

    emitter.publish([
        DomainEvent("booking_confirmed", "farmer", {"arrival_otp": "123456"}),
        DomainEvent("booking_confirmed", "owner", {}),
    ])

    assert drain(farmer)[0]["data"] == {"arrival_otp": "123456"}
    assert drain(owner)[0]["data"] == {}


@pytest.mark.asyncio
async def test_subscriber_can_await_next_event():
    emitter = EventEmitter()
    queue = emitter.subscribe("room")

    async def produce():
        await asyncio.sleep(0)
        emitter.emit("room", "payment_completed", {"amount": 900})

    asyncio.get_running_loop().create_task(produce())
    message = await asyncio.wait_for(queue.get(), timeout=1)
    assert message["event"] == "payment_completed"


@pytest.mark.asyncio
async def test_create_notification_persists_and_pushes(db: AsyncSession, farmer_user: User):
    emitter = EventEmitter()
    queue = emitter.subscribe(str(farmer_user.id))
    booking_id = str(uuid.uuid4())

    notification = await create_notification(
        db,
        emitter,
        user_id=farmer_user.id,
        notification_type=NotificationType.BOOKING_CONFIRMED,
        title="Booking confirmed",
        body="See you in the field.",
        data={"booking_id": booking_id},
    )

    result = await db.execute(select(Notification).where(Notification.user_id == farmer_user.id))
    stored = result.scalar_one()
    assert stored.id == notification.id
    assert stored.type == "booking_confirmed"
    assert stored.data == {"booking_id": booking_id, "type": "booking_confirmed"}
    assert stored.is_read is False

    message = drain(queue)[0]
    assert message["event"] == "notification"
    assert message["data"]["title"] == "Booking confirmed"


@pytest.mark.asyncio
async def test_create_notification_without_emitter(db: AsyncSession, farmer_user: User):
    await create_notification(db, None, farmer_user.id, "booking_requested", "t", "b")
    result = await db.execute(select(Notification).where(Notification.user_id == farmer_user.id))
    assert result.scalar_one().data == {"type": "booking_requested"}
