"""
Event Bus Models

Durable bus log backing the in-process event bus:
- BusEvent: the event envelope (kind, payload, correlation)
- BusDelivery: one row per (event, subscription) with attempt state
- DeadLetterEvent: deliveries that exhausted their attempts
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Integer, Float, JSON, ForeignKey, Index
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class EventKind(str, enum.Enum):
    BOOKING_CREATED = "booking.created"
    BOOKING_MODIFIED = "booking.modified"
    BOOKING_CANCELLED = "booking.cancelled"
    INVENTORY_AVAILABILITY = "inventory.availability"
    RATE_UPDATE = "rate.update"
    STOP_SELL_CHANGED = "stop-sell.changed"
    ROOM_TYPE_UPDATED = "room-type.updated"
    AMENDMENT_RECEIVED = "amendment.received"
    AMENDMENT_DECIDED = "amendment.decided"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"


class BusEvent(Base):
    """Event envelope; deleted once every delivery is acknowledged."""
    __tablename__ = "bus_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    correlation_id = Column(String(64), nullable=False)
    kind = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False)
    originator = Column(String(100), default="system")
    hotel_id = Column(String(64), nullable=True)
    deadline_seconds = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    deliveries = relationship("BusDelivery", back_populates="event", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_bus_event_correlation", "correlation_id"),
        Index("ix_bus_event_kind", "kind", "created_at"),
    )

    def __repr__(self):
        return f"<BusEvent {self.kind} {self.id}>"


class BusDelivery(Base):
    """
    Delivery of one event to one subscription.

    The integer primary key is the publish sequence; recovery replays
    pending deliveries in id order to keep per-correlation FIFO.
    """
    __tablename__ = "bus_deliveries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(36), ForeignKey("bus_events.id", ondelete="CASCADE"), nullable=False)
    subscription = Column(String(100), nullable=False)
    partition = Column(Integer, default=0, nullable=False)

    status = Column(String(20), default=DeliveryStatus.PENDING.value, nullable=False)
    attempt_count = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    visible_after = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    event = relationship("BusEvent", back_populates="deliveries")

    __table_args__ = (
        Index("ix_delivery_subscription_status", "subscription", "status"),
        Index("ix_delivery_event", "event_id"),
    )

    def __repr__(self):
        return f"<BusDelivery {self.subscription} event={self.event_id} attempts={self.attempt_count}>"


class DeadLetterEvent(Base):
    """Terminal parking lot for deliveries that exhausted retries."""
    __tablename__ = "dead_letter_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(36), nullable=False)
    correlation_id = Column(String(64), nullable=False)
    kind = Column(String(50), nullable=False)
    subscription = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    originator = Column(String(100), nullable=True)
    hotel_id = Column(String(64), nullable=True)

    attempts = Column(Integer, default=0)
    reason = Column(String(100), nullable=False)  # max_attempts_exceeded, deadline_exceeded, permanent_failure
    last_error = Column(Text, nullable=True)

    replayed_at = Column(DateTime, nullable=True)
    replayed_event_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_dead_letter_kind_correlation", "kind", "correlation_id"),
        Index("ix_dead_letter_created", "created_at"),
    )

    def __repr__(self):
        return f"<DeadLetterEvent {self.kind} {self.event_id} {self.reason}>"
