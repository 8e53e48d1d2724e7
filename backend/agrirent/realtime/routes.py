"""WebSocket channel for booking events.

A connection is authenticated with ``?token=<access token>`` and joins its
user room (plus ``admin_room`` for admins). Clients then send
``{"type": "join_booking_room", "booking_id": ...}`` or
``{"type": "leave_booking_room", ...}`` to follow a booking they take part in.
"""
import asyncio
import uuid

import structlog
from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status

from agrirent.database import async_session
from agrirent.dependencies import load_user_from_token
from agrirent.models.booking import Booking
from agrirent.models.enums import UserRole
from agrirent.models.user import User
from agrirent.services.events import EventEmitter
from agrirent.utils.booking_state import ADMIN_ROOM, booking_room, user_room

logger = structlog.get_logger()
router = APIRouter()


async def _authenticate(token: str | None) -> User | None:
    if not token:
        return None
    async with async_session() as db:
        try:
            return await load_user_from_token(db, token)
        except HTTPException:
            return None


async def _may_follow(user: User, raw_booking_id) -> uuid.UUID | None:
    try:
        booking_id = uuid.UUID(str(raw_booking_id))
    except ValueError:
        return None
    async with async_session() as db:
        booking = await db.get(Booking, booking_id)
    if booking is None:
        return None
    if user.role != UserRole.ADMIN and not booking.is_party(user.id):
        return None
    return booking_id


async def _forward(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _listen(websocket: WebSocket, emitter: EventEmitter, queue: asyncio.Queue, user: User) -> None:
    while True:
        message = await websocket.receive_json()
        if not isinstance(message, dict):
            await websocket.send_json({"event": "error", "data": {"detail": "Expected a JSON object"}})
            continue

        kind = message.get("type")
        if kind not in ("join_booking_room", "leave_booking_room"):
            await websocket.send_json({"event": "error", "data": {"detail": f"Unknown message type: {kind}"}})
            continue

        booking_id = await _may_follow(user, message.get("booking_id"))
        if booking_id is None:
            await websocket.send_json({"event": "error", "data": {"detail": "Booking not available"}})
            continue

        room = booking_room(booking_id)
        if kind == "join_booking_room":
            emitter.join(queue, room)
            logger.info("ws_room_joined", user_id=str(user.id), room=room)
        else:
            emitter.leave(queue, room)
            logger.info("ws_room_left", user_id=str(user.id), room=room)
        await websocket.send_json({"event": kind, "room": room, "data": {"ok": True}})


@router.websocket("/ws")
async def events_socket(websocket: WebSocket, token: str | None = None):
    user = await _authenticate(token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    emitter: EventEmitter = websocket.app.state.event_emitter
    await websocket.accept()
    rooms = [user_room(user.id)]
    if user.role == UserRole.ADMIN:
        rooms.append(ADMIN_ROOM)
    queue = emitter.subscribe(*rooms)
    logger.info("ws_connected", user_id=str(user.id))

    tasks = [
        asyncio.create_task(_forward(websocket, queue)),
        asyncio.create_task(_listen(websocket, emitter, queue, user)),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error("ws_connection_failed", user_id=str(user.id), error=str(exc))
    finally:
        for task in tasks:
            task.cancel()
        emitter.disconnect(queue)
        logger.info("ws_disconnected", user_id=str(user.id))
