"""
Payload Audit

Scores one stored payload across six dimensions:
validation, integrity, security, performance, compliance, cross reference.

An integrity failure quarantines the record and raises an
`integrity_violation` alert.
"""

import logging
import zlib
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.audit_log import ActivityType, AuditLog, EntityType
from ..models.integration_alert import AlertSeverity, AlertType
from ..models.payload import (
    BusinessOperation, DataLevel, DATA_LEVEL_RANK, OTAPayload, PayloadDirection,
)
from ..utils.sanitization import unredacted_sensitive_headers
from ..utils.security import content_hash
from .payload_store import decompress

logger = logging.getLogger(__name__)

WEIGHTS = {
    "validation": 25,
    "integrity": 20,
    "security": 25,
    "performance": 10,
    "compliance": 15,
    "crossReference": 5,
}

MAX_RESPONSE_TIME_MS = 5000
MAX_BODY_BYTES = 10 * 1024 * 1024
MAX_PROCESSING_SECONDS = 10

REQUIRED_FIELDS = {
    BusinessOperation.BOOKING_CREATE.value: (("bookingId", "reservationId"), "guestName", "checkIn", "checkOut"),
    BusinessOperation.RATE_UPDATE.value: ("roomType", "rate", "date"),
    BusinessOperation.AVAILABILITY_UPDATE.value: ("roomType", "available"),
}


def _check(issues: List[str], total_rules: int, **extra) -> Dict[str, Any]:
    failed = len(issues)
    score = 100.0 if total_rules == 0 else round(100.0 * max(0, total_rules - failed) / total_rules, 1)
    return {"passed": failed == 0, "score": score, "issues": issues, **extra}


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


class PayloadAuditor:
    def __init__(self, store, alerts, clock):
        self.store = store
        self.alerts = alerts
        self.clock = clock

    def audit(self, db: Session, payload_id: str) -> Dict[str, Any]:
        record = self.store.get_payload(db, payload_id)
        related = self.store.related_payloads(db, record)

        checks = {
            "validation": self._validation(record),
            "integrity": self._integrity(record),
            "security": self._security(record),
            "performance": self._performance(record),
            "compliance": self._compliance(record),
            "crossReference": self._cross_reference(record, related),
        }

        overall = round(sum(checks[name]["score"] * weight for name, weight in WEIGHTS.items()) / 100.0, 1)
        risk = self._risk_level(checks)

        now = self.clock.now()
        record.last_audit_score = overall
        record.last_audit_risk = risk
        record.last_audited_at = now

        if not checks["integrity"]["passed"] and not record.quarantined:
            self._quarantine(db, record, checks["integrity"]["issues"])

        db.commit()

        return {
            "payloadId": record.payload_id,
            "auditedAt": now.isoformat(),
            **checks,
            "overallScore": overall,
            "riskLevel": risk,
        }

    @staticmethod
    def _risk_level(checks: Dict[str, Dict[str, Any]]) -> str:
        critical_failures = sum(
            1 for name in ("security", "compliance", "validation") if not checks[name]["passed"]
        )
        if critical_failures >= 2:
            return "high"
        if critical_failures == 1:
            return "medium"
        if not checks["integrity"]["passed"] or not checks["performance"]["passed"]:
            return "low"
        return "minimal"

    def _validation(self, record: OTAPayload) -> Dict[str, Any]:
        issues = []
        fields = record.parsed_fields or {}
        required = REQUIRED_FIELDS.get(record.operation, ())
        for requirement in required:
            names = requirement if isinstance(requirement, tuple) else (requirement,)
            if not any(fields.get(name) not in (None, "") for name in names):
                issues.append(f"missing required field: {'/'.join(names)}")

        check_in, check_out = _parse_date(fields.get("checkIn")), _parse_date(fields.get("checkOut"))
        if check_in and check_out and check_out <= check_in:
            issues.append("checkOut must be after checkIn")
        if record.amount is not None and record.amount <= 0:
            issues.append("amount must be positive")
        if fields.get("rate") is not None:
            try:
                if float(fields["rate"]) <= 0:
                    issues.append("rate must be positive")
            except (TypeError, ValueError):
                issues.append("rate is not numeric")

        return _check(issues, len(required) + 3)

    def _integrity(self, record: OTAPayload) -> Dict[str, Any]:
        issues = []
        if not record.content_hash:
            issues.append("content hash missing")
        elif record.body_truncated or record.archived_at:
            pass
        else:
            try:
                body = decompress(record.raw_body)
            except zlib.error as e:
                issues.append(f"stored body cannot be decompressed: {type(e).__name__}")
            else:
                if len(body) != record.body_size:
                    issues.append("stored body size differs from recorded size")
                if content_hash(body) != record.content_hash:
                    issues.append("content hash mismatch")
        return _check(issues, 3, hashVerified=not issues and not record.body_truncated and not record.archived_at)

    def _security(self, record: OTAPayload) -> Dict[str, Any]:
        issues = []
        if record.direction == PayloadDirection.INBOUND.value:
            if not record.authenticated:
                issues.append("inbound payload was not authenticated")
            if record.signature_valid is False:
                issues.append("signature verification failed")
        leaked = list(unredacted_sensitive_headers(record.headers))
        if leaked:
            issues.append(f"sensitive headers not redacted: {', '.join(sorted(leaked))}")
        if not record.data_level:
            issues.append("classification missing")
        if record.contains_payment_data and record.data_level != DataLevel.RESTRICTED.value:
            issues.append("payment data not classified as restricted")
        return _check(issues, 5)

    def _performance(self, record: OTAPayload) -> Dict[str, Any]:
        issues = []
        if record.response_time_ms is not None and record.response_time_ms > MAX_RESPONSE_TIME_MS:
            issues.append(f"response time {record.response_time_ms:.0f}ms exceeds {MAX_RESPONSE_TIME_MS}ms")
        if (record.body_size or 0) > MAX_BODY_BYTES:
            issues.append(f"body size {record.body_size} exceeds {MAX_BODY_BYTES}")
        if record.processing_started_at and record.processed_at:
            elapsed = (record.processed_at - record.processing_started_at).total_seconds()
            if elapsed > MAX_PROCESSING_SECONDS:
                issues.append(f"processing took {elapsed:.1f}s")
        return _check(issues, 3, responseTimeMs=record.response_time_ms)

    def _compliance(self, record: OTAPayload) -> Dict[str, Any]:
        issues = []
        if not record.retention_policy or not record.delete_after:
            issues.append("retention policy not set")
        elif record.delete_after < self.clock.now():
            issues.append("record is past its delete threshold")
        if record.contains_pii and DATA_LEVEL_RANK.get(record.data_level, 0) < DATA_LEVEL_RANK[DataLevel.CONFIDENTIAL.value]:
            issues.append("PII stored below confidential level")
        return _check(issues, 3)

    def _cross_reference(self, record: OTAPayload, related: List[OTAPayload]) -> Dict[str, Any]:
        return _check(
            [],
            1,
            payloadId=record.payload_id,
            contentHash=record.content_hash,
            correlationId=record.correlation_id,
            bookingId=record.booking_id,
            parentPayloadId=record.parent_payload_id,
            relatedPayloads=[
                {"payloadId": r.payload_id, "direction": r.direction, "status": r.processing_status}
                for r in related
            ],
        )

    def _quarantine(self, db: Session, record: OTAPayload, issues: List[str]):
        reason = "; ".join(issues)
        record.quarantined = True
        record.quarantine_reason = reason
        AuditLog.log(
            db,
            ActivityType.PAYLOAD_QUARANTINE,
            EntityType.PAYLOAD,
            entity_id=record.payload_id,
            description=f"Quarantined after integrity failure: {reason}",
            correlation_id=record.correlation_id,
            created_at=self.clock.now(),
        )
        logger.error(f"Integrity violation on payload {record.payload_id}: {reason}")
        if self.alerts:
            self.alerts.raise_alert(
                AlertType.INTEGRITY_VIOLATION,
                f"Payload {record.payload_id} failed integrity check",
                severity=AlertSeverity.CRITICAL,
                channel=record.channel,
                hotel_id=record.hotel_id,
                correlation_id=record.correlation_id,
                details={"issues": issues},
                db=db,
            )
