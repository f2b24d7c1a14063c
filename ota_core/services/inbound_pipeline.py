"""
Inbound Webhook Pipeline

Per webhook delivery:
1. size guard (413)
2. resolve hotel, verify the channel HMAC signature (401); failures are
   still stored, flagged ignored with the auth-fail reason
3. dedup on (channel, channel event id), falling back to the body hash;
   a duplicate returns the prior correlation id and emits nothing
4. store the raw payload, classify the operation
5. amendment operations -> amendment.received, everything else -> the
   matching domain event; the HTTP response does not wait for either
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..errors import AuthError, NotFoundError, PayloadTooLarge, TransientError, ValidationError
from ..models.amendment import AmendmentType
from ..models.bus import EventKind
from ..models.channel_configuration import ChannelConfiguration
from ..models.integration_alert import AlertSeverity, AlertType
from ..models.payload import BusinessOperation, Channel, OTAPayload, ProcessingStatus
from ..schemas.events import priority_for_kind
from ..utils.db_helpers import run_blocking
from ..utils.security import content_hash, verify_signature
from .amendment_rules import extract_requested_changes, infer_amendment_type
from .classification import parse_json_body
from .payload_store import PayloadMetadata, WireRequest

logger = logging.getLogger(__name__)

DEFAULT_SIGNATURE_HEADER = "X-Signature"

AMENDMENT_OPERATIONS = {
    "amendment",
    AmendmentType.CANCELLATION_REQUEST.value,
    AmendmentType.BOOKING_MODIFICATION.value,
    AmendmentType.DATES_CHANGE.value,
    AmendmentType.RATE_CHANGE.value,
    AmendmentType.ROOM_CHANGE.value,
    AmendmentType.GUEST_DETAILS_CHANGE.value,
    AmendmentType.SPECIAL_REQUEST_CHANGE.value,
}

# event-type marker -> operation, matched as substrings in order
OPERATION_MARKERS = (
    ("cancel", AmendmentType.CANCELLATION_REQUEST.value),
    ("amend", "amendment"),
    ("stop_sell", BusinessOperation.STOP_SELL_UPDATE.value),
    ("stop-sell", BusinessOperation.STOP_SELL_UPDATE.value),
    ("availability", BusinessOperation.AVAILABILITY_UPDATE.value),
    ("inventory", BusinessOperation.AVAILABILITY_UPDATE.value),
    ("modif", AmendmentType.BOOKING_MODIFICATION.value),
    ("change", AmendmentType.BOOKING_MODIFICATION.value),
    ("rate", BusinessOperation.RATE_UPDATE.value),
    ("pric", BusinessOperation.RATE_UPDATE.value),
    ("room-type", BusinessOperation.ROOM_TYPE_UPDATE.value),
    ("room_type", BusinessOperation.ROOM_TYPE_UPDATE.value),
    ("creat", BusinessOperation.BOOKING_CREATE.value),
    ("new", BusinessOperation.BOOKING_CREATE.value),
    ("confirm", BusinessOperation.BOOKING_CREATE.value),
)

EVENT_TYPE_KEYS = ("event", "event_type", "eventType", "type", "action", "notification_type")

OPERATION_TO_KIND = {
    BusinessOperation.BOOKING_CREATE.value: EventKind.BOOKING_CREATED.value,
    BusinessOperation.AVAILABILITY_UPDATE.value: EventKind.INVENTORY_AVAILABILITY.value,
    BusinessOperation.RATE_UPDATE.value: EventKind.RATE_UPDATE.value,
    BusinessOperation.STOP_SELL_UPDATE.value: EventKind.STOP_SELL_CHANGED.value,
    BusinessOperation.ROOM_TYPE_UPDATE.value: EventKind.ROOM_TYPE_UPDATED.value,
}

# a prior record in one of these may still need routing; the claim decides who does it
ROUTABLE_STATUSES = (ProcessingStatus.RECEIVED.value, ProcessingStatus.PROCESSING.value)

HOTEL_KEYS = ("hotel_id", "hotelId", "property_id", "propertyId", "hotel_code", "listing_id")


@dataclass
class InboundResult:
    correlation_id: str
    payload_id: Optional[str]
    duplicate: bool = False
    operation: Optional[str] = None
    event_kind: Optional[str] = None

    def response(self) -> Dict[str, Any]:
        return {"ok": True, "correlationId": self.correlation_id}


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def classify_operation(path: Optional[str], user_agent: Optional[str], data: Dict[str, Any]) -> str:
    """
    Heuristic operation for an inbound notification: explicit event-type
    fields first, then body shape, then the request path / user agent.
    """
    declared = " ".join(str(data[k]).lower() for k in EVENT_TYPE_KEYS if data.get(k))
    if declared:
        for marker, operation in OPERATION_MARKERS:
            if marker in declared:
                return operation

    has_booking = bool(_first(data, "booking_id", "bookingId", "reservation_id", "channel_reservation_id"))
    if has_booking:
        if str(data.get("status", "")).lower() == "cancelled":
            return AmendmentType.CANCELLATION_REQUEST.value
        if _first(data, "amendment_id", "modification_id", "change_request_id"):
            return "amendment"
        if extract_requested_changes(data) and any(k.startswith("new_") for k in data):
            return AmendmentType.BOOKING_MODIFICATION.value
        return BusinessOperation.BOOKING_CREATE.value
    if "availability" in data or "inventory" in data or "available" in data:
        return BusinessOperation.AVAILABILITY_UPDATE.value
    if "rates" in data or "pricing" in data or "rate" in data:
        return BusinessOperation.RATE_UPDATE.value
    if "stop_sell" in data:
        return BusinessOperation.STOP_SELL_UPDATE.value

    hint = f"{path or ''} {user_agent or ''}".lower()
    for marker, operation in OPERATION_MARKERS:
        if marker in hint:
            return operation
    return BusinessOperation.WEBHOOK_NOTIFICATION.value


class InboundPipeline:
    def __init__(self, bus, store, registry, session_factory, clock, ids, alerts=None, monitor=None,
                 max_body_bytes: Optional[int] = None, claim_stale_seconds: Optional[float] = None):
        self.bus = bus
        self.store = store
        self.registry = registry
        self.session_factory = session_factory
        self.clock = clock
        self.ids = ids
        self.alerts = alerts
        self.monitor = monitor
        self.max_body_bytes = max_body_bytes or settings.inbound_max_body_bytes
        self.claim_stale_seconds = claim_stale_seconds or settings.inbound_claim_stale_seconds

    async def handle(self, channel: str, request: WireRequest, ip_address: Optional[str] = None,
                     user_agent: Optional[str] = None) -> InboundResult:
        if channel not in {c.value for c in Channel}:
            raise NotFoundError(f"Unknown channel: {channel}")
        adapter = self.registry.get(channel)

        body = request.body or b""
        if len(body) > self.max_body_bytes:
            self._record(channel, "too_large")
            raise PayloadTooLarge(f"Body of {len(body)} bytes exceeds {self.max_body_bytes}")

        headers = {k.lower(): v for k, v in (request.headers or {}).items()}
        correlation_id = headers.get("x-correlation-id") or self.ids.correlation_id()
        parsed = parse_json_body(body)
        data = parsed if isinstance(parsed, dict) else {}

        hotel_id, secret = await run_blocking(self._resolve_sync, channel, data, headers, request.query or {})

        signature_header = adapter.signature_header if adapter else DEFAULT_SIGNATURE_HEADER
        signature = headers.get(signature_header.lower())
        signature_valid = verify_signature(body, secret, signature) if secret else None
        if not signature_valid and not (secret is None and settings.webhook_allow_unsigned):
            await self._reject_unsigned(channel, request, correlation_id, hotel_id, ip_address, user_agent,
                                        "signature_missing" if not signature else "signature_invalid")

        if parsed is None or not isinstance(parsed, dict):
            await self.store.store_inbound(request, PayloadMetadata(
                channel=channel,
                correlation_id=correlation_id,
                hotel_id=hotel_id,
                authenticated=bool(signature_valid),
                signature_valid=signature_valid,
                ip_address=ip_address,
                user_agent=user_agent,
                processing_status=ProcessingStatus.FAILED.value,
                processing_error="invalid_json",
            ))
            self._record(channel, "invalid")
            raise ValidationError("Webhook body is not a JSON object", code="invalid_json")

        channel_event_id = (adapter.inbound_event_id(data) if adapter else None) or content_hash(body)
        prior = await run_blocking(self._find_prior_sync, channel, channel_event_id)
        if prior is not None and prior["status"] not in ROUTABLE_STATUSES:
            logger.info(f"Duplicate {channel} webhook {channel_event_id}, prior payload {prior['payloadId']}")
            self._record(channel, "duplicate")
            return InboundResult(prior["correlationId"], prior["payloadId"], duplicate=True)

        operation = classify_operation(request.path, user_agent, data)
        is_amendment = operation in AMENDMENT_OPERATIONS
        kind = EventKind.AMENDMENT_RECEIVED.value if is_amendment else OPERATION_TO_KIND.get(operation)

        if prior is not None:
            # stored earlier but never routed; finish routing under the original correlation
            payload_id, correlation_id = prior["payloadId"], prior["correlationId"]
        else:
            payload_id = await self.store.store_inbound(request, PayloadMetadata(
                channel=channel,
                correlation_id=correlation_id,
                hotel_id=hotel_id,
                operation=BusinessOperation.AMENDMENT_REQUEST.value if is_amendment else operation,
                priority=priority_for_kind(kind) if kind else None,
                channel_event_id=channel_event_id,
                authenticated=bool(signature_valid),
                signature_valid=signature_valid,
                ip_address=ip_address,
                user_agent=user_agent,
                tags=[operation],
            ))
            stored = await run_blocking(self._correlation_of_sync, payload_id)
            if stored != correlation_id:
                # lost a race with a concurrent delivery of the same event
                self._record(channel, "duplicate")
                return InboundResult(stored, payload_id, duplicate=True)

        if not await self.store.claim_for_routing(payload_id, self.claim_stale_seconds):
            logger.info(f"{channel} webhook {channel_event_id} is being routed by another delivery")
            self._record(channel, "duplicate")
            return InboundResult(correlation_id, payload_id, duplicate=True)

        if kind is None:
            await self.store.update_status(payload_id, ProcessingStatus.IGNORED.value, error="unrouted_operation")
            self._record(channel, "ignored")
            return InboundResult(correlation_id, payload_id, operation=operation)

        originator = adapter.originator if adapter else f"channel:{channel}"
        try:
            if is_amendment:
                payload = self._amendment_payload(channel, payload_id, channel_event_id, hotel_id, data, operation)
            else:
                payload = self._domain_payload(kind, channel, hotel_id, data)
            await self.bus.publish(kind, payload, correlation_id=correlation_id, originator=originator)
        except ValidationError as e:
            await self.store.update_status(payload_id, ProcessingStatus.FAILED.value, error=e.code)
            self._record(channel, "invalid")
            raise
        except TransientError:
            # back to received; the OTA's retry routes it again
            await self.store.release_claim(payload_id)
            self._record(channel, "deferred")
            raise

        await self.store.update_status(payload_id, ProcessingStatus.PROCESSED.value)
        self._record(channel, "accepted")
        logger.info(f"Inbound {channel} {operation} -> {kind} (payload {payload_id}, correlation {correlation_id})")
        return InboundResult(correlation_id, payload_id, operation=operation, event_kind=kind)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, channel: str, result: str):
        if self.monitor:
            self.monitor.record_inbound(channel, result)

    async def _reject_unsigned(self, channel: str, request: WireRequest, correlation_id: str,
                               hotel_id: Optional[str], ip_address: Optional[str], user_agent: Optional[str],
                               reason: str):
        payload_id = await self.store.store_inbound(request, PayloadMetadata(
            channel=channel,
            correlation_id=correlation_id,
            hotel_id=hotel_id,
            authenticated=False,
            signature_valid=False,
            ip_address=ip_address,
            user_agent=user_agent,
            processing_status=ProcessingStatus.IGNORED.value,
            processing_error=reason,
        ))
        logger.warning(f"Rejected {channel} webhook from {ip_address}: {reason} (payload {payload_id})")
        if self.alerts:
            await run_blocking(
                self.alerts.raise_alert,
                AlertType.AUTH_FAILURE,
                f"{channel} webhook failed signature verification ({reason})",
                AlertSeverity.HIGH,
                channel,
                hotel_id,
                correlation_id,
                {"payloadId": payload_id, "ipAddress": ip_address},
            )
        self._record(channel, "auth_failed")
        raise AuthError("Invalid webhook signature", code=reason)

    def _resolve_sync(self, channel: str, data: Dict[str, Any], headers: Dict[str, str],
                      query: Mapping[str, Any]) -> Tuple[Optional[str], Optional[str]]:
        """(hotel id, webhook secret) for this delivery"""
        candidate = _first(data, *HOTEL_KEYS) or headers.get("x-hotel-id") or _first(query, "hotel_id", "hotelId")
        db = self.session_factory()
        try:
            config = None
            if candidate:
                candidate = str(candidate)
                config = db.query(ChannelConfiguration).filter(
                    ChannelConfiguration.channel == channel,
                    ChannelConfiguration.hotel_id == candidate,
                ).first()
                if config is None:
                    config = db.query(ChannelConfiguration).filter(
                        ChannelConfiguration.channel == channel,
                        ChannelConfiguration.external_hotel_id == candidate,
                    ).first()
        except SQLAlchemyError as e:
            logger.error(f"Channel configuration lookup failed for {channel}: {e}")
            raise TransientError("Configuration store unavailable", code="config_unavailable")
        finally:
            db.close()

        hotel_id = config.hotel_id if config is not None else candidate
        secret = (config.signature_secret if config is not None else None) or settings.channel_secrets.get(channel)
        return hotel_id, secret

    def _find_prior_sync(self, channel: str, channel_event_id: str) -> Optional[Dict[str, Any]]:
        db = self.session_factory()
        try:
            record = self.store.find_by_channel_event(db, channel, channel_event_id)
            if record is None:
                return None
            return {
                "payloadId": record.payload_id,
                "correlationId": record.correlation_id,
                "status": record.processing_status,
            }
        finally:
            db.close()

    def _correlation_of_sync(self, payload_id: str) -> Optional[str]:
        db = self.session_factory()
        try:
            record = db.query(OTAPayload.correlation_id).filter(OTAPayload.payload_id == payload_id).first()
            return record.correlation_id if record else None
        finally:
            db.close()

    @staticmethod
    def _amendment_payload(channel: str, payload_id: str, channel_event_id: str, hotel_id: Optional[str],
                           data: Dict[str, Any], operation: str) -> Dict[str, Any]:
        changes = extract_requested_changes(data)
        hint = operation if operation != "amendment" else None
        payload = {
            "payload_id": payload_id,
            "channel": channel,
            "channel_amendment_id": str(
                _first(data, "amendment_id", "modification_id", "change_request_id") or channel_event_id
            ),
            "amendment_type": infer_amendment_type(data, changes, hint),
            "hotel_id": hotel_id,
            "booking_id": _first(data, "booking_id", "bookingId", "internal_booking_id"),
            "channel_reservation_id": _first(data, "channel_reservation_id", "reservation_id", "reservationId"),
            "requested_changes": changes,
            "requires_manual_approval": bool(_first(data, "requires_manual_approval", "requiresManualApproval")),
            "guest_id": _first(data, "guest_id", "guestId"),
        }
        return {k: v for k, v in payload.items() if v is not None}

    @staticmethod
    def _domain_payload(kind: str, channel: str, hotel_id: Optional[str], data: Dict[str, Any]) -> Dict[str, Any]:
        payload = {"hotel_id": hotel_id, "channel": channel}
        if kind == EventKind.BOOKING_CREATED.value:
            payload.update({
                "booking_id": _first(data, "booking_id", "bookingId", "reservation_id", "channel_reservation_id"),
                "channel_reservation_id": _first(data, "channel_reservation_id", "reservation_id", "reservationId"),
                "room_type": _first(data, "room_type", "roomType"),
                "check_in": _first(data, "check_in", "checkIn", "arrival_date"),
                "check_out": _first(data, "check_out", "checkOut", "departure_date"),
                "guest_name": _first(data, "guest_name", "guestName"),
                "total_amount": _first(data, "total_amount", "totalAmount", "amount"),
                "currency": _first(data, "currency"),
                "status": _first(data, "status"),
            })
        elif kind == EventKind.STOP_SELL_CHANGED.value:
            dates = _first(data, "dates")
            if dates is None and _first(data, "date"):
                dates = [data["date"]]
            payload.update({
                "room_type": _first(data, "room_type", "roomType"),
                "dates": dates,
                "stop_sell": _first(data, "stop_sell", "stopSell", "closed"),
            })
        elif kind == EventKind.ROOM_TYPE_UPDATED.value:
            payload.update({
                "room_type": _first(data, "room_type", "roomType"),
                "name": _first(data, "name", "room_name"),
                "max_occupancy": _first(data, "max_occupancy", "maxOccupancy"),
            })
        else:
            payload.update({
                "room_type": _first(data, "room_type", "roomType"),
                "date": _first(data, "date"),
                "start_date": _first(data, "start_date", "startDate", "date_from"),
                "end_date": _first(data, "end_date", "endDate", "date_to"),
            })
            if kind == EventKind.RATE_UPDATE.value:
                payload["rate"] = _first(data, "rate", "price", "amount")
                payload["currency"] = _first(data, "currency")
            else:
                payload["available"] = _first(data, "available", "availability", "inventory")
        return {k: v for k, v in payload.items() if v is not None}
