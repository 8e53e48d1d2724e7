"""In-process real-time event hub.

Rooms are plain strings: a user id, ``booking_<id>`` or ``admin_room``. Each
WebSocket connection owns one queue and may sit in several rooms.
"""
import asyncio
from collections import defaultdict
from collections.abc import Iterable

import structlog

from agrirent.utils.booking_state import DomainEvent

logger = structlog.get_logger()

QUEUE_MAXSIZE = 100


class EventEmitter:
    def __init__(self, queue_maxsize: int = QUEUE_MAXSIZE):
        self._rooms: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._queue_maxsize = queue_maxsize

    def connect(self) -> asyncio.Queue:
        return asyncio.Queue(maxsize=self._queue_maxsize)

    def join(self, queue: asyncio.Queue, room: str) -> None:
        self._rooms[room].add(queue)

    def leave(self, queue: asyncio.Queue, room: str) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(queue)
        if not members:
            del self._rooms[room]

    def disconnect(self, queue: asyncio.Queue) -> None:
        for room in [room for room, members in self._rooms.items() if queue in members]:
            self.leave(queue, room)

    def subscribe(self, *rooms: str) -> asyncio.Queue:
        queue = self.connect()
        for room in rooms:
            self.join(queue, room)
        return queue

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def emit(self, room: str, event: str, payload: dict) -> int:
        """Queue ``event`` for every member of ``room``. Returns the number of receivers."""
        message = {"event": event, "room": room, "data": payload}
        delivered = 0
        for queue in list(self._rooms.get(room, ())):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("event_dropped_queue_full", room=room, event_name=event)
        logger.debug("event_emitted", room=room, event_name=event, receivers=delivered)
        return delivered

    def publish(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            self.emit(event.room, event.name, event.payload)


def drain(queue: asyncio.Queue) -> list[dict]:
    """Everything currently waiting in a subscriber queue."""
    messages = []
    while not queue.empty():
        messages.append(queue.get_nowait())
    return messages
