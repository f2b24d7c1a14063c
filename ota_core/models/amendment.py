"""
Amendment Models

- Amendment: an OTA request to change an existing booking, driven through
  pending -> auto_approved | approved | partially_approved | rejected | expired
- BookingStatusTransition: append-only audit row attached to a booking
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Boolean, JSON, Index, UniqueConstraint
from ..database import Base
import enum


class AmendmentType(str, enum.Enum):
    BOOKING_MODIFICATION = "booking_modification"
    GUEST_DETAILS_CHANGE = "guest_details_change"
    DATES_CHANGE = "dates_change"
    RATE_CHANGE = "rate_change"
    ROOM_CHANGE = "room_change"
    CANCELLATION_REQUEST = "cancellation_request"
    SPECIAL_REQUEST_CHANGE = "special_request_change"


class AmendmentState(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PARTIALLY_APPROVED = "partially_approved"
    AUTO_APPROVED = "auto_approved"
    EXPIRED = "expired"


# Legal edges; every target is terminal
AMENDMENT_TRANSITIONS = {
    AmendmentState.PENDING.value: {
        AmendmentState.AUTO_APPROVED.value,
        AmendmentState.APPROVED.value,
        AmendmentState.PARTIALLY_APPROVED.value,
        AmendmentState.REJECTED.value,
        AmendmentState.EXPIRED.value,
    },
}

TERMINAL_AMENDMENT_STATES = {
    AmendmentState.APPROVED.value,
    AmendmentState.REJECTED.value,
    AmendmentState.PARTIALLY_APPROVED.value,
    AmendmentState.AUTO_APPROVED.value,
    AmendmentState.EXPIRED.value,
}


class TransitionSource(str, enum.Enum):
    CHANNEL = "channel"
    USER = "user"
    AUTOMATION = "automation"


class Amendment(Base):
    """
    One amendment request from an OTA.

    Immutable once in a terminal state; `state_history` records every
    state entered, starting with pending.
    """
    __tablename__ = "amendments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    amendment_id = Column(String(40), nullable=False, unique=True)
    channel_amendment_id = Column(String(255), nullable=False)

    booking_id = Column(String(64), nullable=True)
    channel_reservation_id = Column(String(128), nullable=True)
    hotel_id = Column(String(64), nullable=True)
    correlation_id = Column(String(64), nullable=False)
    payload_id = Column(String(64), nullable=True)

    amendment_type = Column(String(40), nullable=False)
    state = Column(String(30), default=AmendmentState.PENDING.value, nullable=False)
    state_history = Column(JSON, nullable=False, default=list)

    requested_changes = Column(JSON, nullable=False, default=dict)
    original_snapshot = Column(JSON, nullable=True)
    applied_changes = Column(JSON, nullable=True)

    # requestedBy {channel, guestId?, timestamp}
    requested_by_channel = Column(String(20), nullable=False)
    requested_by_guest_id = Column(String(128), nullable=True)
    requested_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    requires_manual_approval = Column(Boolean, default=False, nullable=False)
    manual_approval_reasons = Column(JSON, nullable=True)
    priority = Column(String(10), default="medium")

    decision_reason = Column(JSON, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    decided_by = Column(String(100), nullable=True)
    validation_bypassed = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("requested_by_channel", "channel_amendment_id", name="uq_amendment_channel_id"),
        Index("ix_amendment_booking", "booking_id"),
        Index("ix_amendment_state_requested", "state", "requested_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_AMENDMENT_STATES

    def __repr__(self):
        return f"<Amendment {self.amendment_id} {self.amendment_type} {self.state}>"


class BookingStatusTransition(Base):
    """Append-only audit row for a booking status change."""
    __tablename__ = "booking_status_transitions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(64), nullable=False)
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=False)
    reason = Column(Text, nullable=True)
    source = Column(String(20), nullable=False)  # TransitionSource
    actor = Column(String(100), nullable=True)
    correlation_id = Column(String(64), nullable=False)
    amendment_id = Column(String(40), nullable=True)
    validation_bypassed = Column(Boolean, default=False)
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_transition_booking", "booking_id", "created_at"),
        Index("ix_transition_correlation", "correlation_id"),
    )

    def __repr__(self):
        return f"<BookingStatusTransition {self.booking_id} {self.from_status}->{self.to_status}>"
