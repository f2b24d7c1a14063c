"""
خدمة تصدير السجلات - Audit Export Service
Audit log listing, export (JSON / CSV) and correlation trace
"""
import csv
import io
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..models.amendment import Amendment
from ..models.audit_log import ACTIVITY_LABELS, ActivityType, AuditLog, EntityType
from ..models.payload import OTAPayload
from ..utils.db_helpers import paginate_query
from .amendment_engine import AmendmentEngine

logger = logging.getLogger(__name__)

EXPORT_LIMIT = 10_000

CSV_FIELDS = [
    "id", "createdAt", "activityType", "entityType", "entityId", "actorId", "actorRole",
    "correlationId", "description",
]


def serialize_audit_log(log: AuditLog) -> Dict[str, Any]:
    try:
        label = ACTIVITY_LABELS.get(ActivityType(log.activity_type))
    except ValueError:
        label = None
    return {
        "id": log.id,
        "createdAt": log.created_at.isoformat() if log.created_at else None,
        "activityType": log.activity_type,
        "activityLabel": label,
        "entityType": log.entity_type,
        "entityId": log.entity_id,
        "actorId": log.actor_id,
        "actorRole": log.actor_role,
        "correlationId": log.correlation_id,
        "description": log.description,
        "oldValues": log.old_values,
        "newValues": log.new_values,
    }


def list_audit_logs(db: Session, entity_type: Optional[str] = None, entity_id: Optional[str] = None,
                    activity_type: Optional[str] = None, actor_id: Optional[str] = None,
                    start: Optional[datetime] = None, end: Optional[datetime] = None,
                    page: int = 1, limit: int = 50) -> Tuple[List[AuditLog], int]:
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)
    if activity_type:
        query = query.filter(AuditLog.activity_type == activity_type)
    if actor_id:
        query = query.filter(AuditLog.actor_id == actor_id)
    if start:
        query = query.filter(AuditLog.created_at >= start)
    if end:
        query = query.filter(AuditLog.created_at <= end)
    return paginate_query(query.order_by(AuditLog.created_at.desc()), page, limit)


def export_audit_data(db: Session, store, start: datetime, end: datetime,
                      table_name: Optional[str] = None, include_payloads: bool = False,
                      actor_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Audit entries in [start, end] oldest first, capped at EXPORT_LIMIT.

    `table_name` filters by entity type; `include_payloads` attaches the
    payload records sharing a correlation id with the exported entries
    (metadata only, never bodies). The export itself is audited.
    """
    query = db.query(AuditLog).filter(AuditLog.created_at >= start, AuditLog.created_at <= end)
    if table_name:
        query = query.filter(AuditLog.entity_type == table_name)
    logs = query.order_by(AuditLog.created_at.asc()).limit(EXPORT_LIMIT).all()

    result: Dict[str, Any] = {
        "exportInfo": {
            "generatedAt": datetime.utcnow().isoformat(),
            "period": {"startDate": start.isoformat(), "endDate": end.isoformat()},
            "tableName": table_name,
            "recordCount": len(logs),
            "truncated": len(logs) == EXPORT_LIMIT,
        },
        "auditLogs": [serialize_audit_log(log) for log in logs],
    }

    if include_payloads:
        correlation_ids = sorted({log.correlation_id for log in logs if log.correlation_id})
        payloads = []
        if correlation_ids:
            payloads = db.query(OTAPayload).filter(
                OTAPayload.correlation_id.in_(correlation_ids)
            ).order_by(OTAPayload.created_at.asc()).all()
        result["relatedPayloads"] = [store.serialize(p) for p in payloads]

    AuditLog.log(
        db, ActivityType.EXPORT, EntityType.SYSTEM,
        actor_id=actor_id,
        description=f"Audit export {start.date()} to {end.date()}",
        new_values={"tableName": table_name, "records": len(logs), "includePayloads": include_payloads},
        commit=True,
    )
    logger.info(f"Audit export by {actor_id or 'system'}: {len(logs)} records")
    return result


def audit_logs_csv(rows: List[Dict[str, Any]]) -> str:
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=CSV_FIELDS, extrasaction="ignore")
    writer.writeheader()
    writer.writerows(rows)
    return output.getvalue()


def correlation_trace(db: Session, store, correlation_id: str) -> Dict[str, Any]:
    """Everything recorded under one correlation id, in time order"""
    payloads = db.query(OTAPayload).filter(
        OTAPayload.correlation_id == correlation_id
    ).order_by(OTAPayload.created_at.asc()).all()
    amendments = db.query(Amendment).filter(
        Amendment.correlation_id == correlation_id
    ).order_by(Amendment.requested_at.asc()).all()
    logs = db.query(AuditLog).filter(
        AuditLog.correlation_id == correlation_id
    ).order_by(AuditLog.created_at.asc()).all()

    return {
        "correlationId": correlation_id,
        "payloads": [store.serialize(p) for p in payloads],
        "amendments": [AmendmentEngine.serialize(a) for a in amendments],
        "auditLogs": [serialize_audit_log(log) for log in logs],
    }
