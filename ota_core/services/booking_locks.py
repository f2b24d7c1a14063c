"""
Per-booking advisory locks

Held for the duration of one handler execution; acquisition is bounded and
a timeout surfaces as BookingLockTimeout so the caller can re-enqueue.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

from ..errors import TransientError

logger = logging.getLogger(__name__)


class BookingLockTimeout(TransientError):
    code = "booking_lock_timeout"


class BookingLocks:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, booking_id: str, timeout: float):
        lock = self._locks.setdefault(booking_id, asyncio.Lock())
        self._holders[booking_id] = self._holders.get(booking_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out after {timeout}s waiting for booking lock {booking_id}")
                raise BookingLockTimeout(f"Booking {booking_id} is locked")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._holders[booking_id] -= 1
            if self._holders[booking_id] == 0:
                del self._holders[booking_id]
                self._locks.pop(booking_id, None)

    def is_locked(self, booking_id: str) -> bool:
        lock = self._locks.get(booking_id)
        return bool(lock and lock.locked())
