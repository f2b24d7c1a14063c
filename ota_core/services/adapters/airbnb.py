"""
Airbnb adapter

Calendar + reservation API, bearer token plus the partner API key header.
"""

from typing import Any, Dict

from ...models.bus import EventKind
from ...models.payload import Channel
from .base import ChannelAdapter, RateLimitProfile


class AirbnbAdapter(ChannelAdapter):
    name = Channel.AIRBNB.value
    signature_header = "X-Airbnb-Signature"
    default_base_url = "https://api.airbnb.com/v2"
    default_rate_limit = RateLimitProfile(requests_per_second=2.0, burst=5)
    auth_style = "bearer"
    idempotency_header = "X-Airbnb-Idempotency-Key"

    endpoints = {
        EventKind.RATE_UPDATE.value: ("POST", "/calendar_operations"),
        EventKind.INVENTORY_AVAILABILITY.value: ("POST", "/calendar_operations"),
        EventKind.STOP_SELL_CHANGED.value: ("POST", "/calendar_operations"),
        EventKind.BOOKING_MODIFIED.value: ("PUT", "/reservations/{reservation}"),
        EventKind.BOOKING_CANCELLED.value: ("POST", "/reservations/{reservation}/cancel"),
        EventKind.AMENDMENT_DECIDED.value: ("POST", "/reservations/{reservation}/alterations/{amendment}"),
    }

    def inject_auth(self, headers: Dict[str, str], config):
        super().inject_auth(headers, config)
        api_key = (config.credentials or {}).get("api_key")
        if api_key:
            headers["X-Airbnb-API-Key"] = api_key

    def build_body(self, kind: str, data, config) -> Dict[str, Any]:
        listing_id = config.external_hotel_id or data.hotel_id

        if kind == EventKind.RATE_UPDATE.value:
            return {
                "listing_id": listing_id,
                "operations": [{
                    "dates": [f"{data.date_from.isoformat()}:{data.date_to.isoformat()}"],
                    "daily_price": data.rate,
                    "currency": data.currency or config.currency,
                }],
            }
        if kind == EventKind.INVENTORY_AVAILABILITY.value:
            return {
                "listing_id": listing_id,
                "operations": [{
                    "dates": [f"{data.date_from.isoformat()}:{data.date_to.isoformat()}"],
                    "availability": "available" if data.available > 0 else "unavailable",
                    "available_count": data.available,
                }],
            }
        if kind == EventKind.STOP_SELL_CHANGED.value:
            return {
                "listing_id": listing_id,
                "operations": [{
                    "dates": [d.isoformat() for d in data.dates],
                    "availability": "unavailable" if data.stop_sell else "available",
                }],
            }
        if kind == EventKind.AMENDMENT_DECIDED.value:
            return {
                "alteration_id": data.channel_amendment_id,
                "accept": data.state not in ("rejected", "expired"),
                "message": (data.reason or {}).get("message"),
            }
        if kind == EventKind.BOOKING_CANCELLED.value:
            return {"cancel_by": "host", "reason": data.changes.get("reason")}
        return {
            "listing_id": listing_id,
            "start_date": data.check_in.isoformat() if data.check_in else None,
            "end_date": data.check_out.isoformat() if data.check_out else None,
            "expected_payout_amount": data.total_amount,
            "status": data.status or "accepted",
        }
