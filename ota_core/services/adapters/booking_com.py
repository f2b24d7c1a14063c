"""
Booking.com adapter

Connectivity API with HTTP basic auth. Booking.com does not coalesce
retried POSTs, so no idempotency header is sent.
"""

from typing import Any, Dict, Optional, Tuple

from ...models.bus import EventKind
from ...models.payload import Channel
from ..payload_store import WireResponse
from .base import ChannelAdapter, RateLimitProfile, _json

# Connectivity API warning codes that mean "try again later"
RETRYABLE_ERROR_CODES = {"RATE_LIMIT", "SYSTEM_BUSY", "TEMPORARY_FAILURE"}


class BookingComAdapter(ChannelAdapter):
    name = Channel.BOOKING_COM.value
    signature_header = "X-Booking-Signature"
    default_base_url = "https://supply-xml.booking.com"
    default_rate_limit = RateLimitProfile(requests_per_second=10.0, burst=20)
    supports_idempotency = False
    auth_style = "basic"

    endpoints = {
        EventKind.RATE_UPDATE.value: ("POST", "/hotels/ota/OTA_HotelRateAmountNotif"),
        EventKind.INVENTORY_AVAILABILITY.value: ("POST", "/hotels/ota/OTA_HotelAvailNotif"),
        EventKind.STOP_SELL_CHANGED.value: ("POST", "/hotels/ota/OTA_HotelAvailNotif"),
        EventKind.ROOM_TYPE_UPDATED.value: ("POST", "/hotels/ota/OTA_HotelProductNotif"),
        EventKind.BOOKING_MODIFIED.value: ("POST", "/hotels/ota/OTA_HotelResModifyNotif"),
        EventKind.BOOKING_CANCELLED.value: ("POST", "/hotels/ota/OTA_CancelRQ"),
        EventKind.AMENDMENT_DECIDED.value: ("POST", "/hotels/ota/reservations/{reservation}/amendments/{amendment}"),
    }

    def build_body(self, kind: str, data, config) -> Dict[str, Any]:
        hotel_code = config.external_hotel_id or data.hotel_id

        if kind == EventKind.RATE_UPDATE.value:
            return {
                "hotel_id": hotel_code,
                "rates": [{
                    "room_id": data.room_type,
                    "rate_id": data.rate_plan,
                    "date_from": data.date_from.isoformat(),
                    "date_to": data.date_to.isoformat(),
                    "price": data.rate,
                    "currency": data.currency or config.currency,
                }],
            }
        if kind == EventKind.INVENTORY_AVAILABILITY.value:
            return {
                "hotel_id": hotel_code,
                "availability": [{
                    "room_id": data.room_type,
                    "date_from": data.date_from.isoformat(),
                    "date_to": data.date_to.isoformat(),
                    "rooms_to_sell": data.available,
                }],
            }
        if kind == EventKind.STOP_SELL_CHANGED.value:
            return {
                "hotel_id": hotel_code,
                "availability": [
                    {"room_id": data.room_type, "date": d.isoformat(), "closed": data.stop_sell}
                    for d in data.dates
                ],
            }
        if kind == EventKind.ROOM_TYPE_UPDATED.value:
            return {
                "hotel_id": hotel_code,
                "room": {"id": data.room_type, "name": data.name, "max_occupancy": data.max_occupancy},
            }
        if kind == EventKind.AMENDMENT_DECIDED.value:
            return {
                "hotel_id": hotel_code,
                "reservation_id": data.channel_reservation_id or data.booking_id,
                "amendment_id": data.channel_amendment_id,
                "accepted": data.state in ("approved", "auto_approved", "partially_approved"),
                "partial": data.state == "partially_approved",
                "reason": (data.reason or {}).get("message"),
            }
        # booking.modified / booking.cancelled
        return {
            "hotel_id": hotel_code,
            "reservation_id": data.channel_reservation_id or data.booking_id,
            "status": "cancelled" if kind == EventKind.BOOKING_CANCELLED.value else (data.status or "modified"),
            "room_id": data.room_type,
            "checkin": data.check_in.isoformat() if data.check_in else None,
            "checkout": data.check_out.isoformat() if data.check_out else None,
            "total_price": data.total_amount,
            "currency": data.currency or config.currency,
        }

    def envelope_error(self, response: WireResponse) -> Optional[Tuple[str, bool]]:
        body = _json(response.body)
        if isinstance(body, dict) and body.get("errors"):
            codes = {str(e.get("code", "")).upper() for e in body["errors"] if isinstance(e, dict)}
            retryable = bool(codes & RETRYABLE_ERROR_CODES)
            return ",".join(sorted(codes)) or "rejected", retryable
        return super().envelope_error(response)

    def inbound_event_id(self, data: Dict[str, Any]) -> Optional[str]:
        return data.get("notification_id") or super().inbound_event_id(data)
