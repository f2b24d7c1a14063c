"""
Integration Alert Model

Stores alerts raised by the integration core for the operations team:
dead-lettered events, signature failures, integrity violations, open
circuits and channel health threshold breaches.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, Index
from ..database import Base
import enum


class AlertType(str, enum.Enum):
    """Types of integration alerts"""
    DEAD_LETTER = "dead_letter"
    AUTH_FAILURE = "auth_failure"
    INTEGRITY_VIOLATION = "integrity_violation"
    CIRCUIT_OPEN = "circuit_open"
    SYNC_FAILURE_RATE = "sync_failure_rate"
    HIGH_LATENCY = "high_latency"
    RETENTION_FAILURE = "retention_failure"


class AlertSeverity(str, enum.Enum):
    """Alert severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, enum.Enum):
    """Alert lifecycle status"""
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class IntegrationAlert(Base):
    """
    Stores integration alerts for operations visibility.

    Created by:
    - Event bus (dead-letter)
    - Inbound pipeline (signature failures)
    - Payload audit (integrity violations)
    - Dispatcher / monitoring (circuit open, failure rate, latency)
    """
    __tablename__ = "integration_alerts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    channel = Column(String(20), nullable=True)
    hotel_id = Column(String(64), nullable=True)
    correlation_id = Column(String(64), nullable=True)

    alert_type = Column(String(50), nullable=False)
    severity = Column(String(20), default=AlertSeverity.MEDIUM.value)
    message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)

    status = Column(String(20), default=AlertStatus.OPEN.value)
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by_id = Column(String(100), nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('ix_alert_status', 'status', 'created_at'),
        Index('ix_alert_type', 'alert_type', 'severity'),
        Index('ix_alert_channel', 'channel', 'hotel_id', 'status'),
    )

    def __repr__(self):
        return f"<IntegrationAlert {self.alert_type} {self.severity} {self.status}>"
