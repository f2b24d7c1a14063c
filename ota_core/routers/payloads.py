"""
Payload Audit Router - سجل رسائل القنوات
Query stored OTA payloads, audit one record, reconcile a booking, compliance
report, audit export and correlation trace.
"""
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from ..database import get_db
from ..errors import ValidationError
from ..schemas.pagination import paginated
from ..services.audit_export import (
    audit_logs_csv,
    correlation_trace,
    export_audit_data,
    list_audit_logs,
    serialize_audit_log,
)
from ..services.payload_store import PayloadQuery
from ..utils.dependencies import CurrentUser, get_services, require_ops

router = APIRouter(prefix="/api/audit", tags=["Payload Audit"])


def _require_raw_access(current_user: CurrentUser):
    if not current_user.can_read_raw_payloads:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Raw payload data requires the admin or auditor role",
        )


@router.get("/payloads")
async def query_payloads(
    channel: Optional[str] = None,
    direction: Optional[str] = None,
    operation: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    booking_id: Optional[str] = Query(None, alias="bookingId"),
    correlation_id: Optional[str] = Query(None, alias="correlationId"),
    search_text: Optional[str] = Query(None, alias="searchText", max_length=200),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    include_data: bool = Query(False, alias="includeData"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    """البحث في الرسائل المخزنة"""
    if include_data:
        _require_raw_access(current_user)

    filters = PayloadQuery(
        channel=channel,
        direction=direction,
        operation=operation,
        status=status_filter,
        booking_id=booking_id,
        correlation_id=correlation_id,
        search_text=search_text,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
        sort_order=sort_order,
    )
    records, total = services.store.query_payloads(db, filters)
    return paginated([services.store.serialize(r, include_data=include_data) for r in records], total, page, limit)


@router.get("/payloads/{payload_id}")
async def get_payload(
    payload_id: str,
    include_data: bool = Query(False, alias="includeData"),
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    if include_data:
        _require_raw_access(current_user)
    record = services.store.get_payload(db, payload_id)
    return services.store.serialize(record, include_data=include_data)


@router.post("/payloads/{payload_id}/audit")
async def audit_payload(
    payload_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    """
    تدقيق رسالة واحدة

    Validation, integrity, security, performance, compliance and
    cross-reference checks with a weighted score and risk level.
    """
    return services.auditor.audit(db, payload_id)


@router.get("/bookings/{booking_id}/reconcile")
async def reconcile_booking(
    booking_id: str,
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    """مطابقة الحجز الداخلي مع آخر بيانات القناة"""
    return await services.reconciliation.reconcile(booking_id)


@router.get("/compliance")
async def compliance_report(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    channel: Optional[str] = None,
    direction: Optional[str] = None,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    if start_date and end_date and end_date < start_date:
        raise ValidationError("endDate must not be before startDate", code="invalid_range")
    return services.reconciliation.compliance_report(db, start_date, end_date, channel=channel, direction=direction)


@router.get("/logs")
async def get_audit_logs(
    entity_type: Optional[str] = Query(None, alias="entityType"),
    entity_id: Optional[str] = Query(None, alias="entityId"),
    activity_type: Optional[str] = Query(None, alias="activityType"),
    actor_id: Optional[str] = Query(None, alias="actorId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_ops),
):
    """سجل الأنشطة"""
    logs, total = list_audit_logs(
        db, entity_type, entity_id, activity_type, actor_id, start_date, end_date, page, limit
    )
    return paginated([serialize_audit_log(log) for log in logs], total, page, limit)


@router.get("/correlation/{correlation_id}")
async def get_correlation_trace(
    correlation_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    return correlation_trace(db, services.store, correlation_id)


@router.get("/export")
async def export_audit(
    start_date: datetime = Query(..., alias="startDate"),
    end_date: datetime = Query(..., alias="endDate"),
    export_format: Literal["json", "csv"] = Query("json", alias="format"),
    table_name: Optional[str] = Query(None, alias="tableName"),
    include_payloads: bool = Query(False, alias="includePayloads"),
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    """تصدير سجل الأنشطة"""
    if end_date < start_date:
        raise ValidationError("endDate must not be before startDate", code="invalid_range")

    data = export_audit_data(
        db, services.store, start_date, end_date,
        table_name=table_name, include_payloads=include_payloads, actor_id=current_user.id,
    )
    filename = f"audit-export-{start_date:%Y%m%d}-{end_date:%Y%m%d}.{export_format}"
    headers = {"Content-Disposition": f"attachment; filename={filename}"}

    if export_format == "csv":
        return Response(content=audit_logs_csv(data["auditLogs"]), media_type="text/csv", headers=headers)
    return JSONResponse(content=data, headers=headers)
