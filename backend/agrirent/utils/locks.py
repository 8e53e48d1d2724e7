import asyncio
import weakref

# One lock per booking id, dropped once no coroutine holds a reference.
_booking_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def booking_lock(booking_id) -> asyncio.Lock:
    """Return the lock serialising state changes for one booking in this process."""
    key = str(booking_id)
    lock = _booking_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _booking_locks[key] = lock
    return lock
