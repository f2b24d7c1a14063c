"""
Router للتعديلات - Amendments Router
Review queue, decisions (single and bulk) and manual booking status changes
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..schemas.amendment import AmendmentDecisionRequest, BookingStatusChangeRequest, BulkAmendmentRequest
from ..schemas.pagination import paginated
from ..utils.dependencies import CurrentUser, get_services, require_amendment_reviewer, require_ops

router = APIRouter(prefix="/api", tags=["Amendments"])

# Roles allowed to skip business-rule validation
BYPASS_ROLES = {"admin", "manager"}


def _check_bypass(current_user: CurrentUser, bypass: bool):
    if bypass and current_user.role not in BYPASS_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="bypassValidation requires the admin or manager role",
        )


@router.get("/amendments")
async def list_amendments(
    state: Optional[str] = None,
    booking_id: Optional[str] = Query(None, alias="bookingId"),
    channel: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_amendment_reviewer),
):
    engine = services.amendments
    items, total = engine.list_amendments(db, state=state, booking_id=booking_id, channel=channel,
                                          page=page, limit=limit)
    return paginated([engine.serialize(a) for a in items], total, page, limit)


@router.get("/amendments/review-queue")
async def review_queue(
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_amendment_reviewer),
):
    """التعديلات بانتظار المراجعة - cancellations first, then nearest check-in"""
    engine = services.amendments
    return {"items": [engine.serialize(a) for a in engine.review_queue(db, limit=limit)]}


@router.get("/amendments/{amendment_id}")
async def get_amendment(
    amendment_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_amendment_reviewer),
):
    return services.amendments.serialize(services.amendments.get(db, amendment_id))


@router.post("/amendments/{amendment_id}/decision")
async def decide_amendment(
    amendment_id: str,
    body: AmendmentDecisionRequest,
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_amendment_reviewer),
):
    """قبول / رفض / قبول جزئي"""
    _check_bypass(current_user, body.bypass_validation)
    return await services.amendments.decide(
        amendment_id,
        body.action,
        actor=current_user.id,
        reason=body.reason,
        approved_fields=body.approved_fields,
        bypass_validation=body.bypass_validation,
    )


@router.post("/amendments/bulk")
async def bulk_decide(
    body: BulkAmendmentRequest,
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_amendment_reviewer),
):
    _check_bypass(current_user, body.bypass_validation)
    outcomes = await services.amendments.bulk_decide(
        body.action,
        body.amendment_ids,
        actor=current_user.id,
        reason=body.reason,
        bypass_validation=body.bypass_validation,
    )
    return {
        "results": outcomes,
        "succeeded": sum(1 for o in outcomes if o["ok"]),
        "failed": sum(1 for o in outcomes if not o["ok"]),
    }


@router.post("/bookings/{booking_id}/status")
async def change_booking_status(
    booking_id: str,
    body: BookingStatusChangeRequest,
    request: Request,
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_amendment_reviewer),
):
    """تغيير حالة الحجز يدوياً"""
    _check_bypass(current_user, body.bypass_validation)
    return await services.amendments.change_booking_status(
        booking_id,
        body.new_status,
        actor=current_user.id,
        reason=body.reason,
        bypass_validation=body.bypass_validation,
        notify_channels=body.notify_channels,
        correlation_id=request.headers.get("X-Correlation-Id"),
    )


@router.get("/bookings/{booking_id}/transitions")
async def booking_transitions(
    booking_id: str,
    db: Session = Depends(get_db),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    engine = services.amendments
    return {"items": [engine.serialize_transition(t) for t in engine.booking_transitions(db, booking_id)]}
