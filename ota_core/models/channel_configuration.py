"""
Channel Configuration Models

Per-tenant settings for the integration core:
- ChannelConfiguration: credentials, endpoint overrides, locale, rate-limit
  profile and webhook secret per hotel x channel
- TenantRetentionPolicy: retention thresholds overriding the defaults per
  hotel x classification level
- StopSellWindow: stop-sell flags captured from stop-sell.changed events,
  consulted by the amendment auto-approve policy
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Date, Integer, Float, Boolean, JSON, Index, UniqueConstraint
from ..database import Base


class ChannelConfiguration(Base):
    """
    Connection settings for one hotel on one channel.
    Credentials are opaque to the core; adapters interpret them.
    """
    __tablename__ = "channel_configurations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(64), nullable=False)
    channel = Column(String(20), nullable=False)

    # Opaque credentials (encrypted at rest in production)
    credentials = Column(JSON, nullable=True)

    # Channel-side identifiers and endpoint overrides
    external_hotel_id = Column(String(128), nullable=True)
    base_url = Column(String(500), nullable=True)
    endpoint_overrides = Column(JSON, nullable=True)

    language = Column(String(10), default="en")
    currency = Column(String(3), default="USD")

    # Rate-limit profile override
    requests_per_second = Column(Float, nullable=True)
    burst = Column(Integer, nullable=True)
    deadline_seconds = Column(Float, nullable=True)

    # Inbound webhook verification key
    signature_secret = Column(String(255), nullable=True)

    enabled = Column(Boolean, default=True, nullable=False)

    # Status tracking
    last_sync_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    error_count = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("hotel_id", "channel", name="uq_channel_config_hotel_channel"),
        Index("ix_channel_config_channel", "channel", "enabled"),
    )

    def __repr__(self):
        return f"<ChannelConfiguration {self.hotel_id}/{self.channel} enabled={self.enabled}>"


class TenantRetentionPolicy(Base):
    """Retention override for one hotel and classification level."""
    __tablename__ = "tenant_retention_policies"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(64), nullable=False)
    data_level = Column(String(20), nullable=False)
    active_days = Column(Integer, nullable=False)
    archive_after_days = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("hotel_id", "data_level", name="uq_retention_hotel_level"),
    )

    def __repr__(self):
        return f"<TenantRetentionPolicy {self.hotel_id}/{self.data_level} {self.active_days}d>"


class StopSellWindow(Base):
    """Stop-sell flag for one hotel / room type / night."""
    __tablename__ = "stop_sell_windows"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(64), nullable=False)
    room_type = Column(String(64), nullable=False)
    night = Column(Date, nullable=False)
    stop_sell = Column(Boolean, default=True, nullable=False)
    correlation_id = Column(String(64), nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("hotel_id", "room_type", "night", name="uq_stop_sell_night"),
    )
