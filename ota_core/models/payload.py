"""
OTA Payload Models

One row per wire message exchanged with an OTA:
- OTAPayload: compressed raw body, sanitized headers, parsed key fields,
  classification, business context, retention thresholds, audit results
- Enums for direction, channel, processing status, classification level,
  business operation and priority
"""

import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Text, DateTime, Integer, Float, Boolean, JSON,
    LargeBinary, Index, UniqueConstraint,
)
from ..database import Base
import enum


class PayloadDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Channel(str, enum.Enum):
    BOOKING_COM = "booking_com"
    EXPEDIA = "expedia"
    AIRBNB = "airbnb"
    AGODA = "agoda"
    DIRECT = "direct"
    OTHER = "other"


class ProcessingStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"


# received -> processing -> processed | failed | ignored
PROCESSING_STATUS_RANK = {
    ProcessingStatus.RECEIVED.value: 0,
    ProcessingStatus.PROCESSING.value: 1,
    ProcessingStatus.PROCESSED.value: 2,
    ProcessingStatus.FAILED.value: 2,
    ProcessingStatus.IGNORED.value: 2,
}


class DataLevel(str, enum.Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"


DATA_LEVEL_RANK = {
    DataLevel.PUBLIC.value: 0,
    DataLevel.INTERNAL.value: 1,
    DataLevel.CONFIDENTIAL.value: 2,
    DataLevel.RESTRICTED.value: 3,
}


class BusinessOperation(str, enum.Enum):
    BOOKING_CREATE = "booking_create"
    BOOKING_UPDATE = "booking_update"
    BOOKING_CANCEL = "booking_cancel"
    AVAILABILITY_UPDATE = "availability_update"
    RATE_UPDATE = "rate_update"
    STOP_SELL_UPDATE = "stop_sell_update"
    ROOM_TYPE_UPDATE = "room_type_update"
    INVENTORY_SYNC = "inventory_sync"
    AMENDMENT_REQUEST = "amendment_request"
    AMENDMENT_DECISION = "amendment_decision"
    WEBHOOK_NOTIFICATION = "webhook_notification"


class Priority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class OTAPayload(Base):
    """
    Append-only record of a single inbound or outbound wire message.

    The raw body is written once (zlib compressed, possibly truncated) and
    never updated. Outbound rows get their response columns filled after
    the call returns.
    """
    __tablename__ = "ota_payloads"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    payload_id = Column(String(64), nullable=False, unique=True)

    correlation_id = Column(String(64), nullable=False)
    parent_payload_id = Column(String(64), nullable=True)
    event_id = Column(String(36), nullable=True)
    attempt = Column(Integer, nullable=True)

    direction = Column(String(10), nullable=False)
    channel = Column(String(20), nullable=False)
    hotel_id = Column(String(64), nullable=True)

    # Inbound dedup key (channel, channel_event_id)
    channel_event_id = Column(String(255), nullable=True)

    # Endpoint
    method = Column(String(10), nullable=True)
    url = Column(Text, nullable=True)
    path = Column(String(500), nullable=True)
    query = Column(JSON, nullable=True)

    headers = Column(JSON, nullable=True)  # sanitized

    # Raw body (immutable once written)
    raw_body = Column(LargeBinary, nullable=True)  # zlib; NULL once archived
    body_size = Column(Integer, default=0)
    stored_size = Column(Integer, default=0)
    body_truncated = Column(Boolean, default=False)
    content_hash = Column(String(64), nullable=False)
    content_type = Column(String(100), nullable=True)

    # Parsed key fields (indexed subset)
    parsed_fields = Column(JSON, nullable=True)
    booking_id = Column(String(64), nullable=True)
    reservation_id = Column(String(128), nullable=True)
    guest_name = Column(String(255), nullable=True)
    operation = Column(String(50), nullable=True)
    amount = Column(Float, nullable=True)

    # Response capture (outbound)
    response_status = Column(Integer, nullable=True)
    response_headers = Column(JSON, nullable=True)
    response_body = Column(LargeBinary, nullable=True)  # zlib
    response_time_ms = Column(Float, nullable=True)
    transport_error = Column(Text, nullable=True)

    # Processing
    processing_status = Column(String(20), default=ProcessingStatus.RECEIVED.value, nullable=False)
    processing_error = Column(Text, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    # Classification
    contains_pii = Column(Boolean, default=False)
    contains_payment_data = Column(Boolean, default=False)
    data_level = Column(String(20), default=DataLevel.PUBLIC.value, nullable=False)

    # Business context
    priority = Column(String(10), default=Priority.MEDIUM.value)

    # Security
    authenticated = Column(Boolean, default=False)
    signature_valid = Column(Boolean, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    # Retention
    retention_policy = Column(String(50), nullable=True)
    archive_after = Column(DateTime, nullable=True)
    delete_after = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)
    archive_location = Column(Text, nullable=True)

    # Audit / integrity
    last_audit_score = Column(Float, nullable=True)
    last_audit_risk = Column(String(20), nullable=True)
    last_audited_at = Column(DateTime, nullable=True)
    quarantined = Column(Boolean, default=False)
    quarantine_reason = Column(Text, nullable=True)

    tags = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("channel", "channel_event_id", name="uq_payload_channel_event"),
        Index("ix_payload_correlation", "correlation_id"),
        Index("ix_payload_booking", "booking_id"),
        Index("ix_payload_channel_created", "channel", "created_at"),
        Index("ix_payload_status", "processing_status"),
        Index("ix_payload_data_level", "data_level"),
        Index("ix_payload_retention", "archived_at", "archive_after"),
        Index("ix_payload_delete_after", "delete_after"),
    )

    def __repr__(self):
        return f"<OTAPayload {self.payload_id} {self.direction} {self.channel} {self.processing_status}>"
