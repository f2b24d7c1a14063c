"""
Monitoring Router - مراقبة القنوات

- /api/monitoring/status      real-time snapshot (bus, channels, circuits)
- /api/monitoring/export      per-minute time series (json | csv)
- /metrics                    Prometheus exposition
- /api/monitoring/dead-letters list + replay
- /api/monitoring/alerts      list, acknowledge, resolve
"""
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse, Response
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.audit_log import ActivityType, AuditLog, EntityType
from ..models.bus import DeadLetterEvent
from ..models.integration_alert import IntegrationAlert
from ..utils.db_helpers import run_blocking
from ..utils.dependencies import CurrentUser, get_services, require_admin, require_ops

router = APIRouter(prefix="/api/monitoring", tags=["Monitoring"])
metrics_router = APIRouter(tags=["Monitoring"])


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_dead_letter(entry: DeadLetterEvent) -> dict:
    return {
        "id": entry.id,
        "eventId": entry.event_id,
        "correlationId": entry.correlation_id,
        "kind": entry.kind,
        "subscription": entry.subscription,
        "hotelId": entry.hotel_id,
        "originator": entry.originator,
        "attempts": entry.attempts,
        "reason": entry.reason,
        "lastError": entry.last_error,
        "payload": entry.payload,
        "replayedAt": _iso(entry.replayed_at),
        "replayedEventId": entry.replayed_event_id,
        "createdAt": _iso(entry.created_at),
    }


def serialize_alert(alert: IntegrationAlert) -> dict:
    return {
        "id": alert.id,
        "type": alert.alert_type,
        "severity": alert.severity,
        "status": alert.status,
        "channel": alert.channel,
        "hotelId": alert.hotel_id,
        "correlationId": alert.correlation_id,
        "message": alert.message,
        "details": alert.details or {},
        "acknowledgedAt": _iso(alert.acknowledged_at),
        "acknowledgedBy": alert.acknowledged_by_id,
        "resolvedAt": _iso(alert.resolved_at),
        "createdAt": _iso(alert.created_at),
        "updatedAt": _iso(alert.updated_at),
    }


@metrics_router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(services=Depends(get_services)):
    """Prometheus text exposition"""
    return PlainTextResponse(services.monitor.prometheus(), media_type="text/plain; version=0.0.4")


@router.get("/status")
async def monitoring_status(
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    snapshot = services.monitor.status()
    snapshot["scheduler"] = services.scheduler.status()
    snapshot["retention"] = services.retention.last_run or None
    return snapshot


@router.get("/export")
async def export_metrics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    export_format: Literal["json", "csv"] = Query("json", alias="format"),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    if export_format == "csv":
        return Response(
            content=services.monitor.export_csv(start, end),
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=channel-metrics.csv"},
        )
    return {"items": services.monitor.export(start, end)}


@router.get("/dead-letters")
async def list_dead_letters(
    kind: Optional[str] = None,
    correlation_id: Optional[str] = Query(None, alias="correlationId"),
    limit: int = Query(100, ge=1, le=1000),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    rows = await run_blocking(services.bus.list_dead_letters, kind, correlation_id, limit)
    return {"items": [serialize_dead_letter(r) for r in rows]}


@router.post("/dead-letters/{dead_letter_id}/replay")
async def replay_dead_letter(
    dead_letter_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_admin),
):
    """إعادة إرسال حدث من قائمة الفشل"""
    event_id = await services.bus.replay_dead_letter(dead_letter_id)
    AuditLog.log(
        db, ActivityType.DEAD_LETTER_REPLAY, EntityType.DEAD_LETTER,
        entity_id=dead_letter_id,
        actor_id=current_user.id,
        actor_role=current_user.role,
        description=f"Replayed as event {event_id}",
        new_values={"eventId": event_id},
        commit=True,
    )
    return {"ok": True, "eventId": event_id}


@router.get("/alerts")
async def list_alerts(
    status: Optional[str] = None,
    alert_type: Optional[str] = Query(None, alias="type"),
    channel: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    alerts = services.alerts.list_alerts(db, status=status, alert_type=alert_type, channel=channel, limit=limit)
    return {"items": [serialize_alert(a) for a in alerts]}


@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    return serialize_alert(services.alerts.acknowledge(db, alert_id, current_user.id))


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    return serialize_alert(services.alerts.resolve(db, alert_id))
