"""
Booking snapshot reader

Read-only view of the external booking store, used by the amendment engine
(current dates, rate and status) and by reconciliation. The core never
writes bookings; it emits booking.* events and the booking service applies them.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

import httpx

from ..config import settings
from ..errors import TransientError

logger = logging.getLogger(__name__)


def _date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


@dataclass
class BookingSnapshot:
    booking_id: str
    hotel_id: Optional[str] = None
    status: Optional[str] = None
    check_in: Optional[date] = None
    check_out: Optional[date] = None
    room_type: Optional[str] = None
    guest_name: Optional[str] = None
    total_amount: Optional[float] = None
    currency: Optional[str] = None
    channel: Optional[str] = None
    channel_reservation_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookingSnapshot":
        """Accepts both camelCase (booking service API) and snake_case keys"""
        amount = _pick(data, "totalAmount", "total_amount", "amount")
        return cls(
            booking_id=str(_pick(data, "bookingId", "booking_id", "id")),
            hotel_id=_pick(data, "hotelId", "hotel_id"),
            status=_pick(data, "status"),
            check_in=_date(_pick(data, "checkIn", "check_in")),
            check_out=_date(_pick(data, "checkOut", "check_out")),
            room_type=_pick(data, "roomType", "room_type"),
            guest_name=_pick(data, "guestName", "guest_name"),
            total_amount=float(amount) if amount is not None else None,
            currency=_pick(data, "currency"),
            channel=_pick(data, "channel", "source"),
            channel_reservation_id=_pick(data, "channelReservationId", "channel_reservation_id"),
        )

    def as_fields(self) -> Dict[str, Any]:
        """camelCase field view used in snapshots and reconciliation"""
        return {
            "bookingId": self.booking_id,
            "hotelId": self.hotel_id,
            "status": self.status,
            "checkIn": self.check_in.isoformat() if self.check_in else None,
            "checkOut": self.check_out.isoformat() if self.check_out else None,
            "roomType": self.room_type,
            "guestName": self.guest_name,
            "totalAmount": self.total_amount,
            "currency": self.currency,
            "channel": self.channel,
            "channelReservationId": self.channel_reservation_id,
        }


class BookingSnapshotReader:
    """Interface: look bookings up by id or by channel reservation id"""

    async def get(self, booking_id: str) -> Optional[BookingSnapshot]:
        raise NotImplementedError

    async def find_by_reservation(self, channel: str, reservation_id: str) -> Optional[BookingSnapshot]:
        raise NotImplementedError


class InMemoryBookingSnapshotReader(BookingSnapshotReader):
    """Dict-backed reader for local development and tests"""

    def __init__(self):
        self._bookings: Dict[str, BookingSnapshot] = {}

    def put(self, snapshot: BookingSnapshot):
        self._bookings[snapshot.booking_id] = snapshot

    async def get(self, booking_id: str) -> Optional[BookingSnapshot]:
        return self._bookings.get(booking_id)

    async def find_by_reservation(self, channel: str, reservation_id: str) -> Optional[BookingSnapshot]:
        for snapshot in self._bookings.values():
            if snapshot.channel_reservation_id == reservation_id and snapshot.channel in (channel, None):
                return snapshot
        return None


class HttpBookingSnapshotReader(BookingSnapshotReader):
    """
    Reads snapshots from the booking service:
        GET {base}/{booking_id}
        GET {base}?channel=..&channelReservationId=..
    """

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None,
                 timeout: Optional[float] = None):
        self.base_url = (base_url or settings.booking_snapshot_url).rstrip("/")
        self.timeout = timeout or settings.booking_snapshot_timeout_seconds
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        try:
            response = await self.client.get(path, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"Booking store unreachable ({path}): {e}")
            raise TransientError(f"Booking store unreachable: {type(e).__name__}", code="booking_store_unavailable")

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise TransientError(
                f"Booking store returned {response.status_code}",
                code="booking_store_unavailable",
            )
        return response.json()

    async def get(self, booking_id: str) -> Optional[BookingSnapshot]:
        data = await self._get_json(f"/{booking_id}")
        if not data:
            return None
        return BookingSnapshot.from_dict(data.get("data", data))

    async def find_by_reservation(self, channel: str, reservation_id: str) -> Optional[BookingSnapshot]:
        data = await self._get_json("", {"channel": channel, "channelReservationId": reservation_id})
        items = data.get("data", data) if isinstance(data, dict) else data
        if not items:
            return None
        if isinstance(items, list):
            items = items[0]
        return BookingSnapshot.from_dict(items)

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
