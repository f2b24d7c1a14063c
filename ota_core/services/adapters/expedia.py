"""
Expedia adapter

EPS / Partner Central style JSON API with bearer tokens. Expedia honours an
Idempotency-Key on POST/PUT.
"""

from typing import Any, Dict

from ...models.bus import EventKind
from ...models.payload import Channel
from .base import ChannelAdapter, RateLimitProfile


class ExpediaAdapter(ChannelAdapter):
    name = Channel.EXPEDIA.value
    signature_header = "X-Expedia-Signature"
    default_base_url = "https://services.expediapartnercentral.com"
    default_rate_limit = RateLimitProfile(requests_per_second=5.0, burst=10)
    auth_style = "bearer"

    endpoints = {
        EventKind.RATE_UPDATE.value: ("PUT", "/properties/{hotel}/roomTypes/{room_type}/rates"),
        EventKind.INVENTORY_AVAILABILITY.value: ("PUT", "/properties/{hotel}/roomTypes/{room_type}/availability"),
        EventKind.STOP_SELL_CHANGED.value: ("PUT", "/properties/{hotel}/roomTypes/{room_type}/availability"),
        EventKind.ROOM_TYPE_UPDATED.value: ("PUT", "/properties/{hotel}/roomTypes/{room_type}"),
        EventKind.BOOKING_MODIFIED.value: ("PUT", "/properties/{hotel}/reservations/{reservation}"),
        EventKind.BOOKING_CANCELLED.value: ("POST", "/properties/{hotel}/reservations/{reservation}/cancel"),
        EventKind.AMENDMENT_DECIDED.value: ("POST", "/properties/{hotel}/reservations/{reservation}/changeRequests/{amendment}"),
    }

    def build_body(self, kind: str, data, config) -> Dict[str, Any]:
        if kind == EventKind.RATE_UPDATE.value:
            return {
                "ratePlanId": data.rate_plan,
                "dateRange": {"start": data.date_from.isoformat(), "end": data.date_to.isoformat()},
                "rate": {"amount": data.rate, "currency": data.currency or config.currency},
            }
        if kind == EventKind.INVENTORY_AVAILABILITY.value:
            return {
                "dateRange": {"start": data.date_from.isoformat(), "end": data.date_to.isoformat()},
                "totalInventoryAvailable": data.available,
            }
        if kind == EventKind.STOP_SELL_CHANGED.value:
            return {
                "dates": [d.isoformat() for d in data.dates],
                "status": "CLOSED" if data.stop_sell else "OPEN",
            }
        if kind == EventKind.ROOM_TYPE_UPDATED.value:
            return {"name": data.name, "maxOccupancy": data.max_occupancy}
        if kind == EventKind.AMENDMENT_DECIDED.value:
            return {
                "decision": "REJECT" if data.state in ("rejected", "expired") else "ACCEPT",
                "state": data.state,
                "reason": (data.reason or {}).get("message"),
            }
        if kind == EventKind.BOOKING_CANCELLED.value:
            return {"reason": data.changes.get("reason") or "cancelled_by_property"}
        return {
            "status": (data.status or "modified").upper(),
            "roomTypeId": data.room_type,
            "checkInDate": data.check_in.isoformat() if data.check_in else None,
            "checkOutDate": data.check_out.isoformat() if data.check_out else None,
            "totalAmount": {"amount": data.total_amount, "currency": data.currency or config.currency},
        }
