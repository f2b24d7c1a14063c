"""
Reconciliation Engine

Compares the internal booking (via BookingSnapshotReader) with the most
recent external view projected from stored inbound payloads, and builds the
compliance report over a time window.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from ..errors import NotFoundError
from ..models.payload import DataLevel, OTAPayload, PayloadDirection
from ..utils.db_helpers import run_blocking
from ..utils.sanitization import unredacted_sensitive_headers
from .amendment_rules import parse_date
from .booking_snapshot import BookingSnapshot, BookingSnapshotReader

logger = logging.getLogger(__name__)

# tracked field -> (parsed-field key, weight)
TRACKED_FIELDS = {
    "checkIn": ("checkIn", 1.0),
    "checkOut": ("checkOut", 1.0),
    "status": ("status", 1.0),
    "rate": ("amount", 1.0),
    "roomType": ("roomType", 0.75),
    "guestName": ("guestName", 0.5),
}

AMOUNT_TOLERANCE = 0.01
HIGH_AMOUNT_DELTA = 10.0


def _internal_value(snapshot: BookingSnapshot, field: str) -> Any:
    return {
        "checkIn": snapshot.check_in,
        "checkOut": snapshot.check_out,
        "status": snapshot.status,
        "rate": snapshot.total_amount,
        "roomType": snapshot.room_type,
        "guestName": snapshot.guest_name,
    }[field]


def _normalize(field: str, value: Any) -> Any:
    if value is None:
        return None
    if field in ("checkIn", "checkOut"):
        return parse_date(value)
    if field == "rate":
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    return " ".join(str(value).split()).lower()


def _severity(field: str, internal: Any, external: Any) -> str:
    if field in ("checkIn", "checkOut", "status"):
        return "high"
    if field == "rate":
        return "high" if abs(internal - external) > HIGH_AMOUNT_DELTA else "medium"
    if field == "roomType":
        return "medium"
    return "low"


def _display(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value


class ReconciliationEngine:
    def __init__(self, session_factory, snapshots: BookingSnapshotReader, clock):
        self.session_factory = session_factory
        self.snapshots = snapshots
        self.clock = clock

    async def reconcile(self, booking_id: str) -> Dict[str, Any]:
        """
        Discrepancies between the internal booking and the latest inbound
        values under the booking's correlation ids.

        consistencyScore = 100 * (1 - weighted discrepancies / weighted fields compared)
        """
        snapshot = await self.snapshots.get(booking_id)
        if snapshot is None:
            raise NotFoundError(f"Booking {booking_id} not found")

        correlation_ids, payloads = await run_blocking(self._related_payloads_sync, snapshot)
        external = self._project(payloads)

        discrepancies = []
        compared_weight = 0.0
        discrepant_weight = 0.0
        compared = []
        for field, (_, weight) in TRACKED_FIELDS.items():
            observed = external.get(field)
            internal = _normalize(field, _internal_value(snapshot, field))
            if observed is None or internal is None:
                continue
            value, payload_id, observed_at = observed
            external_value = _normalize(field, value)
            if external_value is None:
                continue

            compared.append(field)
            compared_weight += weight
            if field == "rate":
                equal = abs(internal - external_value) <= AMOUNT_TOLERANCE
            else:
                equal = internal == external_value
            if equal:
                continue

            discrepant_weight += weight
            discrepancies.append({
                "field": field,
                "internalValue": _display(_internal_value(snapshot, field)),
                "externalValue": _display(value),
                "sourcePayloadId": payload_id,
                "observedAt": observed_at.isoformat() if observed_at else None,
                "severity": _severity(field, internal, external_value),
                "weight": weight,
            })

        score = 100.0 if not compared_weight else round(100 * (1 - discrepant_weight / compared_weight), 2)
        if discrepancies:
            logger.info(f"Reconciliation of {booking_id}: {len(discrepancies)} discrepancies, score {score}")

        return {
            "bookingId": booking_id,
            "consistencyScore": score,
            "fieldsCompared": compared,
            "discrepancies": discrepancies,
            "correlationIds": sorted(correlation_ids),
            "payloadsExamined": len(payloads),
            "reconciledAt": self.clock.now().isoformat(),
        }

    def _related_payloads_sync(self, snapshot: BookingSnapshot) -> Tuple[set, List[Dict[str, Any]]]:
        db = self.session_factory()
        try:
            keys = [OTAPayload.booking_id == snapshot.booking_id]
            if snapshot.channel_reservation_id:
                keys.append(OTAPayload.reservation_id == snapshot.channel_reservation_id)
            correlation_ids = {
                row.correlation_id
                for row in db.query(OTAPayload.correlation_id).filter(or_(*keys)).distinct().all()
            }
            if not correlation_ids:
                return set(), []

            rows = db.query(OTAPayload).filter(
                OTAPayload.correlation_id.in_(correlation_ids),
                OTAPayload.direction == PayloadDirection.INBOUND.value,
                OTAPayload.authenticated.is_(True),
            ).order_by(OTAPayload.created_at.asc(), OTAPayload.id.asc()).all()
            return correlation_ids, [
                {"payloadId": r.payload_id, "createdAt": r.created_at, "fields": r.parsed_fields or {}}
                for r in rows
            ]
        finally:
            db.close()

    @staticmethod
    def _project(payloads: List[Dict[str, Any]]) -> Dict[str, Tuple[Any, str, Optional[datetime]]]:
        """Most recent non-empty value per tracked field"""
        projected = {}
        for payload in payloads:
            for field, (key, _) in TRACKED_FIELDS.items():
                value = payload["fields"].get(key)
                if value not in (None, ""):
                    projected[field] = (value, payload["payloadId"], payload["createdAt"])
        return projected

    # ------------------------------------------------------------------
    # Compliance report
    # ------------------------------------------------------------------

    def compliance_report(self, db: Session, start: Optional[datetime] = None, end: Optional[datetime] = None,
                          channel: Optional[str] = None, direction: Optional[str] = None) -> Dict[str, Any]:
        now = self.clock.now()
        window = []
        if start:
            window.append(OTAPayload.created_at >= start)
        if end:
            window.append(OTAPayload.created_at <= end)
        if channel:
            window.append(OTAPayload.channel == channel)
        if direction:
            window.append(OTAPayload.direction == direction)

        def grouped(column) -> Dict[str, int]:
            rows = db.query(column, func.count(OTAPayload.id)).filter(*window).group_by(column).all()
            return {str(key): count for key, count in rows}

        total = db.query(func.count(OTAPayload.id)).filter(*window).scalar() or 0
        pii = db.query(func.count(OTAPayload.id)).filter(*window, OTAPayload.contains_pii.is_(True)).scalar() or 0
        payment = db.query(func.count(OTAPayload.id)).filter(
            *window, OTAPayload.contains_payment_data.is_(True)
        ).scalar() or 0

        overdue_delete = db.query(func.count(OTAPayload.id)).filter(
            *window, OTAPayload.delete_after.isnot(None), OTAPayload.delete_after < now
        ).scalar() or 0
        overdue_archive = db.query(func.count(OTAPayload.id)).filter(
            *window, OTAPayload.archived_at.is_(None),
            OTAPayload.archive_after.isnot(None), OTAPayload.archive_after < now,
        ).scalar() or 0
        missing_policy = db.query(func.count(OTAPayload.id)).filter(
            *window, OTAPayload.retention_policy.is_(None)
        ).scalar() or 0
        quarantined = db.query(func.count(OTAPayload.id)).filter(
            *window, OTAPayload.quarantined.is_(True)
        ).scalar() or 0
        underclassified = db.query(func.count(OTAPayload.id)).filter(
            *window, OTAPayload.contains_pii.is_(True),
            OTAPayload.data_level.in_([DataLevel.PUBLIC.value, DataLevel.INTERNAL.value]),
        ).scalar() or 0

        leaking = 0
        for (headers,) in db.query(OTAPayload.headers).filter(*window).yield_per(500):
            if any(True for _ in unredacted_sensitive_headers(headers)):
                leaking += 1

        avg_score = db.query(func.avg(OTAPayload.last_audit_score)).filter(*window).scalar()
        risks = Counter({
            str(k): v for k, v in db.query(OTAPayload.last_audit_risk, func.count(OTAPayload.id))
            .filter(*window, OTAPayload.last_audit_risk.isnot(None))
            .group_by(OTAPayload.last_audit_risk).all()
        })

        non_compliant = db.query(func.count(OTAPayload.id)).filter(*window, or_(
            and_(OTAPayload.delete_after.isnot(None), OTAPayload.delete_after < now),
            and_(OTAPayload.archived_at.is_(None), OTAPayload.archive_after.isnot(None),
                 OTAPayload.archive_after < now),
            OTAPayload.retention_policy.is_(None),
        )).scalar() or 0
        return {
            "generatedAt": now.isoformat(),
            "window": {
                "start": start.isoformat() if start else None,
                "end": end.isoformat() if end else None,
                "channel": channel,
                "direction": direction,
            },
            "totals": {
                "payloads": total,
                "byChannel": grouped(OTAPayload.channel),
                "byDirection": grouped(OTAPayload.direction),
                "byDataLevel": grouped(OTAPayload.data_level),
                "containsPii": pii,
                "containsPaymentData": payment,
                "quarantined": quarantined,
            },
            "retention": {
                "overdueDeletion": overdue_delete,
                "overdueArchival": overdue_archive,
                "missingPolicy": missing_policy,
                "compliancePercent": round(100 * (1 - non_compliant / total), 2) if total else 100.0,
            },
            "classification": {
                "piiBelowConfidential": underclassified,
            },
            "redaction": {
                "recordsWithUnredactedSecrets": leaking,
                "coveragePercent": round(100 * (1 - leaking / total), 2) if total else 100.0,
            },
            "audit": {
                "averageScore": round(float(avg_score), 2) if avg_score is not None else None,
                "riskDistribution": dict(risks),
            },
        }
