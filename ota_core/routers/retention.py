"""
Retention Router - سياسة الاحتفاظ بالبيانات
"""
from fastapi import APIRouter, Depends, Query

from ..schemas.admin import ManualCleanupRequest
from ..utils.dependencies import CurrentUser, get_services, require_admin, require_ops

router = APIRouter(prefix="/api/retention", tags=["Retention"])


@router.get("/stats")
async def retention_stats(
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    return services.retention.stats()


@router.post("/cleanup")
async def manual_cleanup(
    body: ManualCleanupRequest,
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_admin),
):
    """
    تنظيف يدوي

    Runs the archive / delete algorithm over records matching the criteria,
    at most `limit` (≤ 1000) of them.
    """
    return await services.retention.manual_cleanup(
        channel=body.channel,
        older_than_days=body.older_than_days,
        operation=body.operation,
        limit=body.limit,
        actor=current_user.id,
    )


@router.get("/archives/verify")
async def verify_archives(
    limit: int = Query(100, ge=1, le=1000),
    services=Depends(get_services),
    current_user: CurrentUser = Depends(require_ops),
):
    issues = await services.retention.verify_archive_integrity(limit)
    return {"limit": limit, "issues": issues}
