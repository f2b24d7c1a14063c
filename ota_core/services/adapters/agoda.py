"""
Agoda adapter

Supply API authenticated with an api key header. Errors come back as
`{"status": "failed", "error": {...}}` with HTTP 200.
"""

from typing import Any, Dict, Optional, Tuple

from ...models.bus import EventKind
from ...models.payload import Channel
from ..payload_store import WireResponse
from .base import ChannelAdapter, RateLimitProfile, _json


class AgodaAdapter(ChannelAdapter):
    name = Channel.AGODA.value
    signature_header = "X-Agoda-Signature"
    default_base_url = "https://supply.agoda.com/api"
    default_rate_limit = RateLimitProfile(requests_per_second=5.0, burst=10)
    auth_style = "api_key"
    api_key_header = "X-Api-Key"

    endpoints = {
        EventKind.RATE_UPDATE.value: ("POST", "/properties/{hotel}/rates"),
        EventKind.INVENTORY_AVAILABILITY.value: ("POST", "/properties/{hotel}/allotments"),
        EventKind.STOP_SELL_CHANGED.value: ("POST", "/properties/{hotel}/restrictions"),
        EventKind.BOOKING_MODIFIED.value: ("POST", "/properties/{hotel}/bookings/{reservation}/modify"),
        EventKind.BOOKING_CANCELLED.value: ("POST", "/properties/{hotel}/bookings/{reservation}/cancel"),
        EventKind.AMENDMENT_DECIDED.value: ("POST", "/properties/{hotel}/bookings/{reservation}/amendments/{amendment}"),
    }

    def build_body(self, kind: str, data, config) -> Dict[str, Any]:
        if kind == EventKind.RATE_UPDATE.value:
            return {
                "roomTypeCode": data.room_type,
                "ratePlanCode": data.rate_plan,
                "startDate": data.date_from.isoformat(),
                "endDate": data.date_to.isoformat(),
                "rate": data.rate,
                "currency": data.currency or config.currency,
            }
        if kind == EventKind.INVENTORY_AVAILABILITY.value:
            return {
                "roomTypeCode": data.room_type,
                "startDate": data.date_from.isoformat(),
                "endDate": data.date_to.isoformat(),
                "allotment": data.available,
            }
        if kind == EventKind.STOP_SELL_CHANGED.value:
            return {
                "roomTypeCode": data.room_type,
                "dates": [d.isoformat() for d in data.dates],
                "closed": data.stop_sell,
            }
        if kind == EventKind.AMENDMENT_DECIDED.value:
            return {
                "amendmentId": data.channel_amendment_id,
                "result": "rejected" if data.state in ("rejected", "expired") else "confirmed",
                "remark": (data.reason or {}).get("message"),
            }
        if kind == EventKind.BOOKING_CANCELLED.value:
            return {"bookingId": data.channel_reservation_id or data.booking_id, "status": "cancelled"}
        return {
            "bookingId": data.channel_reservation_id or data.booking_id,
            "roomTypeCode": data.room_type,
            "checkIn": data.check_in.isoformat() if data.check_in else None,
            "checkOut": data.check_out.isoformat() if data.check_out else None,
            "totalRate": data.total_amount,
        }

    def envelope_error(self, response: WireResponse) -> Optional[Tuple[str, bool]]:
        body = _json(response.body)
        if isinstance(body, dict) and body.get("status") == "failed":
            error = body.get("error") or {}
            return str(error.get("code") or "failed"), bool(error.get("retryable", False))
        return super().envelope_error(response)
