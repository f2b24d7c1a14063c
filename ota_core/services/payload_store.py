"""
Payload Store

Append-only log of every inbound and outbound wire message:
- headers are sanitized before persistence
- bodies are zlib compressed; above the truncate threshold only a prefix is
  kept and `body_truncated` is set, the content hash always covers the full body
- classification and retention thresholds are computed at write time
- processing status only moves forward

Writes are async (offloaded session work); read helpers take a Session so
routers can use them with `Depends(get_db)`.
"""

import logging
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError as DBIntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import InvalidTransitionError, NotFoundError, TransientError
from ..models.payload import (
    OTAPayload, PayloadDirection, ProcessingStatus, Priority, PROCESSING_STATUS_RANK,
)
from ..models.channel_configuration import TenantRetentionPolicy
from ..utils.db_helpers import paginate_query, run_blocking
from ..utils.sanitization import sanitize_headers
from ..utils.security import content_hash
from .classification import classify, parse_json_body

logger = logging.getLogger(__name__)


@dataclass
class WireRequest:
    """One HTTP request as seen on the wire"""
    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    path: Optional[str] = None
    query: Optional[Dict[str, Any]] = None
    content_type: Optional[str] = None


@dataclass
class WireResponse:
    status: Optional[int] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    duration_ms: Optional[float] = None
    error: Optional[str] = None


@dataclass
class PayloadMetadata:
    channel: str
    correlation_id: str
    hotel_id: Optional[str] = None
    operation: Optional[str] = None
    priority: Optional[str] = None
    event_id: Optional[str] = None
    attempt: Optional[int] = None
    parent_payload_id: Optional[str] = None
    channel_event_id: Optional[str] = None
    authenticated: bool = False
    signature_valid: Optional[bool] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    processing_status: str = ProcessingStatus.RECEIVED.value
    processing_error: Optional[str] = None
    parsed_fields: Dict[str, Any] = field(default_factory=dict)
    tags: Optional[List[str]] = None


@dataclass
class PayloadQuery:
    channel: Optional[str] = None
    direction: Optional[str] = None
    operation: Optional[str] = None
    status: Optional[str] = None
    booking_id: Optional[str] = None
    correlation_id: Optional[str] = None
    search_text: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = 1
    limit: int = 50
    sort_order: str = "desc"


# Parsed-field name -> candidate keys, first hit wins (amendment "new_*" keys first)
FIELD_ALIASES = {
    "bookingId": ("booking_id", "bookingId", "internal_booking_id"),
    "reservationId": ("channel_reservation_id", "reservation_id", "reservationId",
                      "channelReservationId", "ota_reservation_code", "confirmation_number"),
    "guestName": ("guest_name", "guestName", "customer_name", "lead_guest_name"),
    "amount": ("new_total_amount", "new_amount", "total_amount", "totalAmount", "amount",
               "new_rate", "rate", "total_price", "price"),
    "checkIn": ("new_check_in", "newCheckIn", "check_in", "checkIn", "arrival_date", "checkin_date"),
    "checkOut": ("new_check_out", "newCheckOut", "check_out", "checkOut", "departure_date", "checkout_date"),
    "roomType": ("new_room_type", "room_type", "roomType", "room_type_id", "room_type_code"),
    "status": ("booking_status", "status", "reservation_status"),
    "currency": ("currency", "currency_code"),
    "date": ("date", "stay_date"),
    "rate": ("new_rate", "rate"),
    "available": ("available", "availability"),
}


def _find_key(data: Any, key: str, depth: int = 0) -> Any:
    if depth > 4:
        return None
    if isinstance(data, dict):
        if key in data and not isinstance(data[key], (dict, list)):
            return data[key]
        for value in data.values():
            found = _find_key(value, key, depth + 1)
            if found is not None:
                return found
    elif isinstance(data, list):
        for item in data[:20]:
            found = _find_key(item, key, depth + 1)
            if found is not None:
                return found
    return None


def extract_parsed_fields(data: Any) -> Dict[str, Any]:
    """Pull the indexed subset of key fields out of a JSON body"""
    if not isinstance(data, (dict, list)):
        return {}
    fields: Dict[str, Any] = {}
    for name, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            value = _find_key(data, alias)
            if value is not None:
                fields[name] = value
                break

    if "guestName" not in fields:
        first = _find_key(data, "first_name") or _find_key(data, "firstName")
        last = _find_key(data, "last_name") or _find_key(data, "lastName")
        if first or last:
            fields["guestName"] = " ".join(p for p in (first, last) if p)
    return fields


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


def compress(body: bytes) -> bytes:
    return zlib.compress(body or b"")


def decompress(blob: Optional[bytes]) -> bytes:
    return zlib.decompress(blob) if blob else b""


class PayloadStore:
    """
    Persists and serves Payload Records.

    Args:
        session_factory: SQLAlchemy session factory
        clock / ids: injected time and id sources
        truncate_bytes: raw body cap (defaults to PAYLOAD_TRUNCATE_BYTES)
    """

    def __init__(self, session_factory, clock, ids, truncate_bytes: Optional[int] = None):
        self.session_factory = session_factory
        self.clock = clock
        self.ids = ids
        self.truncate_bytes = truncate_bytes or settings.payload_truncate_bytes

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def store_inbound(self, request: WireRequest, metadata: PayloadMetadata) -> str:
        """
        Persist an inbound message. Returns the payload id.

        A (channel, channel_event_id) collision returns the existing record's id.
        """
        return await run_blocking(self._store_sync, PayloadDirection.INBOUND.value, request, None, metadata)

    async def store_outbound(self, request: WireRequest, response: Optional[WireResponse],
                             metadata: PayloadMetadata) -> str:
        """Persist an outbound request together with its response"""
        return await run_blocking(self._store_sync, PayloadDirection.OUTBOUND.value, request, response, metadata)

    async def record_outbound_request(self, request: WireRequest, metadata: PayloadMetadata) -> str:
        """Persist an outbound request before it is sent; the response is attached later"""
        metadata.processing_status = ProcessingStatus.PROCESSING.value
        return await run_blocking(self._store_sync, PayloadDirection.OUTBOUND.value, request, None, metadata)

    async def attach_response(self, payload_id: str, response: WireResponse, status: str,
                              error: Optional[str] = None):
        await run_blocking(self._attach_response_sync, payload_id, response, status, error)

    async def update_status(self, payload_id: str, status: str, error: Optional[str] = None):
        await run_blocking(self._update_status_sync, payload_id, status, error)

    async def claim_for_routing(self, payload_id: str, stale_after_seconds: float) -> bool:
        """
        received -> processing as one conditional UPDATE.

        Only one caller wins; a processing claim older than
        `stale_after_seconds` can be taken over.
        """
        return await run_blocking(self._claim_sync, payload_id, stale_after_seconds)

    async def release_claim(self, payload_id: str):
        """processing -> received, so a later delivery routes it again"""
        await run_blocking(self._release_claim_sync, payload_id)

    def _claim_sync(self, payload_id: str, stale_after_seconds: float) -> bool:
        now = self.clock.now()
        stale_before = now - timedelta(seconds=stale_after_seconds)
        db = self.session_factory()
        try:
            claimed = db.query(OTAPayload).filter(
                OTAPayload.payload_id == payload_id,
                or_(
                    OTAPayload.processing_status == ProcessingStatus.RECEIVED.value,
                    and_(
                        OTAPayload.processing_status == ProcessingStatus.PROCESSING.value,
                        OTAPayload.processing_started_at < stale_before,
                    ),
                ),
            ).update({
                OTAPayload.processing_status: ProcessingStatus.PROCESSING.value,
                OTAPayload.processing_started_at: now,
                OTAPayload.updated_at: now,
            }, synchronize_session=False)
            db.commit()
            return claimed == 1
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to claim payload {payload_id}: {e}")
            raise TransientError("Payload store unavailable", code="payload_claim_failed")
        finally:
            db.close()

    def _release_claim_sync(self, payload_id: str):
        db = self.session_factory()
        try:
            db.query(OTAPayload).filter(
                OTAPayload.payload_id == payload_id,
                OTAPayload.processing_status == ProcessingStatus.PROCESSING.value,
            ).update({
                OTAPayload.processing_status: ProcessingStatus.RECEIVED.value,
                OTAPayload.processing_started_at: None,
                OTAPayload.updated_at: self.clock.now(),
            }, synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to release claim on payload {payload_id}: {e}")
            raise TransientError("Payload store unavailable", code="payload_claim_failed")
        finally:
            db.close()

    def _store_sync(self, direction: str, request: WireRequest, response: Optional[WireResponse],
                    metadata: PayloadMetadata) -> str:
        now = self.clock.now()
        body = request.body or b""
        parsed = parse_json_body(body)
        classification = classify(body, request.headers, parsed=parsed)

        stored = body
        truncated = False
        if len(body) > self.truncate_bytes:
            stored = body[: self.truncate_bytes]
            truncated = True
            logger.warning(
                f"Truncating {direction} payload for {metadata.channel}: "
                f"{len(body)} bytes > {self.truncate_bytes}"
            )

        parsed_fields = extract_parsed_fields(parsed)
        parsed_fields.update({k: v for k, v in metadata.parsed_fields.items() if v is not None})
        if metadata.operation:
            parsed_fields["operation"] = metadata.operation

        payload_id = self.ids.payload_id(direction, metadata.channel)
        record = OTAPayload(
            payload_id=payload_id,
            correlation_id=metadata.correlation_id,
            parent_payload_id=metadata.parent_payload_id,
            event_id=metadata.event_id,
            attempt=metadata.attempt,
            direction=direction,
            channel=metadata.channel,
            hotel_id=metadata.hotel_id,
            channel_event_id=metadata.channel_event_id,
            method=request.method,
            url=request.url,
            path=request.path,
            query=request.query,
            headers=sanitize_headers(request.headers),
            raw_body=compress(stored),
            body_size=len(body),
            stored_size=len(stored),
            body_truncated=truncated,
            content_hash=content_hash(body),
            content_type=request.content_type or (request.headers or {}).get("content-type"),
            parsed_fields=parsed_fields,
            booking_id=_str_or_none(parsed_fields.get("bookingId")),
            reservation_id=_str_or_none(parsed_fields.get("reservationId")),
            guest_name=_str_or_none(parsed_fields.get("guestName")),
            operation=metadata.operation,
            amount=_to_float(parsed_fields.get("amount")),
            processing_status=metadata.processing_status,
            processing_error=metadata.processing_error,
            processing_started_at=now if metadata.processing_status == ProcessingStatus.PROCESSING.value else None,
            contains_pii=classification.contains_pii,
            contains_payment_data=classification.contains_payment_data,
            data_level=classification.data_level,
            priority=metadata.priority or Priority.MEDIUM.value,
            authenticated=metadata.authenticated,
            signature_valid=metadata.signature_valid,
            ip_address=metadata.ip_address,
            user_agent=metadata.user_agent,
            tags=metadata.tags,
            created_at=now,
            updated_at=now,
        )

        db = self.session_factory()
        try:
            self._apply_retention(db, record, now)
            if response is not None:
                self._fill_response(record, response)
            db.add(record)
            db.commit()
        except DBIntegrityError:
            db.rollback()
            existing = None
            if metadata.channel_event_id:
                existing = self.find_by_channel_event(db, metadata.channel, metadata.channel_event_id)
            if existing is None:
                raise
            logger.info(f"Duplicate inbound {metadata.channel}/{metadata.channel_event_id} -> {existing.payload_id}")
            return existing.payload_id
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Payload store write failed: {e}")
            raise TransientError("Payload could not be stored", code="payload_store_unavailable")
        finally:
            db.close()

        logger.info(
            f"Stored {direction} payload {payload_id} channel={metadata.channel} "
            f"size={len(body)} hash={content_hash(body)[:12]} level={classification.data_level}"
        )
        return payload_id

    def _apply_retention(self, db: Session, record: OTAPayload, now: datetime):
        override = None
        if record.hotel_id:
            override = db.query(TenantRetentionPolicy).filter(
                TenantRetentionPolicy.hotel_id == record.hotel_id,
                TenantRetentionPolicy.data_level == record.data_level,
            ).first()

        if override:
            active_days, archive_days = override.active_days, override.archive_after_days
            source = "tenant"
        else:
            defaults = settings.retention_days(record.data_level)
            active_days, archive_days = defaults["active_days"], defaults["archive_after_days"]
            source = "default"

        record.retention_policy = f"{source}:{record.data_level}"
        record.delete_after = now + timedelta(days=active_days)
        record.archive_after = now + timedelta(days=archive_days) if archive_days is not None else None

    def _fill_response(self, record: OTAPayload, response: WireResponse):
        record.response_status = response.status
        record.response_headers = sanitize_headers(response.headers)
        record.response_body = compress(response.body[: self.truncate_bytes]) if response.body else None
        record.response_time_ms = response.duration_ms
        record.transport_error = response.error

    def _attach_response_sync(self, payload_id: str, response: WireResponse, status: str,
                              error: Optional[str]):
        db = self.session_factory()
        try:
            record = self._get(db, payload_id)
            self._fill_response(record, response)
            self._transition(record, status, error)
            db.commit()
        finally:
            db.close()

    def _update_status_sync(self, payload_id: str, status: str, error: Optional[str]):
        db = self.session_factory()
        try:
            record = self._get(db, payload_id)
            self._transition(record, status, error)
            db.commit()
        finally:
            db.close()

    def _transition(self, record: OTAPayload, status: str, error: Optional[str]):
        current = record.processing_status
        if PROCESSING_STATUS_RANK[status] <= PROCESSING_STATUS_RANK[current]:
            raise InvalidTransitionError(
                f"Payload {record.payload_id} cannot move from {current} to {status}"
            )
        now = self.clock.now()
        record.processing_status = status
        if error:
            record.processing_error = error
        if status == ProcessingStatus.PROCESSING.value:
            record.processing_started_at = now
        else:
            record.processed_at = now
        record.updated_at = now

    async def quarantine(self, payload_id: str, reason: str):
        await run_blocking(self._quarantine_sync, payload_id, reason)

    def _quarantine_sync(self, payload_id: str, reason: str):
        db = self.session_factory()
        try:
            record = self._get(db, payload_id)
            record.quarantined = True
            record.quarantine_reason = reason
            db.commit()
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _get(db: Session, payload_id: str) -> OTAPayload:
        record = db.query(OTAPayload).filter(OTAPayload.payload_id == payload_id).first()
        if record is None:
            raise NotFoundError(f"Payload {payload_id} not found")
        return record

    def get_payload(self, db: Session, payload_id: str) -> OTAPayload:
        return self._get(db, payload_id)

    @staticmethod
    def find_by_channel_event(db: Session, channel: str, channel_event_id: str) -> Optional[OTAPayload]:
        return db.query(OTAPayload).filter(
            OTAPayload.channel == channel,
            OTAPayload.channel_event_id == channel_event_id,
        ).first()

    def query_payloads(self, db: Session, filters: PayloadQuery) -> Tuple[List[OTAPayload], int]:
        query = db.query(OTAPayload)

        if filters.channel:
            query = query.filter(OTAPayload.channel == filters.channel)
        if filters.direction:
            query = query.filter(OTAPayload.direction == filters.direction)
        if filters.operation:
            query = query.filter(OTAPayload.operation == filters.operation)
        if filters.status:
            query = query.filter(OTAPayload.processing_status == filters.status)
        if filters.booking_id:
            query = query.filter(OTAPayload.booking_id == filters.booking_id)
        if filters.correlation_id:
            query = query.filter(OTAPayload.correlation_id == filters.correlation_id)
        if filters.start_date:
            query = query.filter(OTAPayload.created_at >= filters.start_date)
        if filters.end_date:
            query = query.filter(OTAPayload.created_at <= filters.end_date)
        if filters.search_text:
            pattern = f"%{filters.search_text}%"
            query = query.filter(or_(
                OTAPayload.guest_name.ilike(pattern),
                OTAPayload.reservation_id.ilike(pattern),
                OTAPayload.booking_id.ilike(pattern),
                OTAPayload.payload_id.ilike(pattern),
            ))

        order = OTAPayload.created_at.asc() if filters.sort_order == "asc" else OTAPayload.created_at.desc()
        return paginate_query(query.order_by(order), filters.page, filters.limit)

    def related_payloads(self, db: Session, record: OTAPayload) -> List[OTAPayload]:
        return db.query(OTAPayload).filter(
            OTAPayload.correlation_id == record.correlation_id,
            OTAPayload.payload_id != record.payload_id,
        ).order_by(OTAPayload.created_at.asc()).all()

    def serialize(self, record: OTAPayload, include_data: bool = False) -> Dict[str, Any]:
        """API view of a record; raw bodies only when include_data is set"""
        data = {
            "payloadId": record.payload_id,
            "correlationId": record.correlation_id,
            "parentPayloadId": record.parent_payload_id,
            "eventId": record.event_id,
            "attempt": record.attempt,
            "direction": record.direction,
            "channel": record.channel,
            "hotelId": record.hotel_id,
            "endpoint": {"method": record.method, "url": record.url, "path": record.path},
            "headers": record.headers or {},
            "parsedFields": record.parsed_fields or {},
            "processingStatus": record.processing_status,
            "processingError": record.processing_error,
            "classification": {
                "containsPII": bool(record.contains_pii),
                "containsPaymentData": bool(record.contains_payment_data),
                "dataLevel": record.data_level,
            },
            "businessContext": {"operation": record.operation, "priority": record.priority},
            "bodySize": record.body_size,
            "bodyTruncated": bool(record.body_truncated),
            "contentHash": record.content_hash,
            "response": {
                "status": record.response_status,
                "timeMs": record.response_time_ms,
                "error": record.transport_error,
            },
            "retentionPolicy": record.retention_policy,
            "archiveAfter": record.archive_after.isoformat() if record.archive_after else None,
            "deleteAfter": record.delete_after.isoformat() if record.delete_after else None,
            "archivedAt": record.archived_at.isoformat() if record.archived_at else None,
            "quarantined": bool(record.quarantined),
            "createdAt": record.created_at.isoformat() if record.created_at else None,
        }
        if include_data:
            data["rawBody"] = decompress(record.raw_body).decode("utf-8", errors="replace")
            data["response"]["body"] = decompress(record.response_body).decode("utf-8", errors="replace")
            data["response"]["headers"] = record.response_headers or {}
        return data


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None
