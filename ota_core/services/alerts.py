"""
Integration Alerts

Persists ops alerts. An open alert with the same (type, channel, hotel) is
bumped instead of duplicated so a flapping channel produces one row.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import NotFoundError
from ..models.integration_alert import AlertSeverity, AlertStatus, AlertType, IntegrationAlert

logger = logging.getLogger(__name__)


class AlertService:
    def __init__(self, session_factory, clock):
        self.session_factory = session_factory
        self.clock = clock

    def raise_alert(self, alert_type: AlertType, message: str,
                    severity: AlertSeverity = AlertSeverity.MEDIUM,
                    channel: Optional[str] = None, hotel_id: Optional[str] = None,
                    correlation_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
                    db: Optional[Session] = None) -> Optional[IntegrationAlert]:
        """
        Create or bump an alert.

        With `db` the alert joins the caller's transaction; otherwise it is
        committed in its own session. Alert persistence failures are logged and
        never propagate into the operation that raised the alert.
        """
        own_session = db is None
        db = db or self.session_factory()
        try:
            alert = db.query(IntegrationAlert).filter(
                IntegrationAlert.alert_type == alert_type.value,
                IntegrationAlert.channel == channel,
                IntegrationAlert.hotel_id == hotel_id,
                IntegrationAlert.status == AlertStatus.OPEN.value,
            ).first()

            now = self.clock.now()
            if alert:
                merged = dict(alert.details or {})
                merged["occurrences"] = merged.get("occurrences", 1) + 1
                merged["last"] = details or {}
                alert.details = merged
                alert.message = message
                alert.correlation_id = correlation_id or alert.correlation_id
                alert.updated_at = now
            else:
                alert = IntegrationAlert(
                    alert_type=alert_type.value,
                    severity=severity.value,
                    channel=channel,
                    hotel_id=hotel_id,
                    correlation_id=correlation_id,
                    message=message,
                    details={"occurrences": 1, **(details or {})},
                    status=AlertStatus.OPEN.value,
                    created_at=now,
                    updated_at=now,
                )
                db.add(alert)

            if own_session:
                db.commit()
            else:
                db.flush()
            logger.warning(f"Alert [{severity.value}] {alert_type.value}: {message}")
            return alert
        except SQLAlchemyError as e:
            logger.error(f"Could not persist alert {alert_type.value}: {e}")
            if own_session:
                db.rollback()
            return None
        finally:
            if own_session:
                db.close()

    def list_alerts(self, db: Session, status: Optional[str] = None, alert_type: Optional[str] = None,
                    channel: Optional[str] = None, limit: int = 100) -> List[IntegrationAlert]:
        query = db.query(IntegrationAlert)
        if status:
            query = query.filter(IntegrationAlert.status == status)
        if alert_type:
            query = query.filter(IntegrationAlert.alert_type == alert_type)
        if channel:
            query = query.filter(IntegrationAlert.channel == channel)
        return query.order_by(IntegrationAlert.created_at.desc()).limit(limit).all()

    def acknowledge(self, db: Session, alert_id: str, user_id: str) -> IntegrationAlert:
        alert = db.query(IntegrationAlert).filter(IntegrationAlert.id == alert_id).first()
        if not alert:
            raise NotFoundError(f"Alert {alert_id} not found")
        alert.status = AlertStatus.ACKNOWLEDGED.value
        alert.acknowledged_at = self.clock.now()
        alert.acknowledged_by_id = user_id
        db.commit()
        return alert

    def resolve(self, db: Session, alert_id: str) -> IntegrationAlert:
        alert = db.query(IntegrationAlert).filter(IntegrationAlert.id == alert_id).first()
        if not alert:
            raise NotFoundError(f"Alert {alert_id} not found")
        alert.status = AlertStatus.RESOLVED.value
        alert.resolved_at = self.clock.now()
        db.commit()
        return alert
