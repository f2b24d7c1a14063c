"""
Health Check Endpoints

- /health        liveness (process is running)
- /health/ready  readiness (database reachable, bus running)
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db

router = APIRouter(prefix="/health", tags=["Health"])


def get_db_health(db: Session) -> dict:
    """Check database connectivity and latency"""
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000
        return {
            "status": "up",
            "latency_ms": round(latency_ms, 2),
            "type": db.bind.dialect.name,
        }
    except SQLAlchemyError as e:
        return {
            "status": "down",
            "error": str(e)[:100],
        }


@router.get("")
@router.get("/")
async def liveness_check():
    """Liveness probe - is the process running?"""
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ready")
async def readiness_check(request: Request, db: Session = Depends(get_db)):
    """
    Readiness probe - database reachable and, when workers are enabled,
    the event bus running.
    """
    db_health = get_db_health(db)
    services = getattr(request.app.state, "services", None)
    bus_running = bool(services and services.bus.is_running)

    checks = {
        "database": db_health,
        "bus": {"status": "up" if bus_running else ("disabled" if not settings.workers_enabled else "down")},
    }
    ready = db_health["status"] == "up" and (bus_running or not settings.workers_enabled)

    body = {
        "status": "ready" if ready else "not_ready",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
    return JSONResponse(status_code=200 if ready else 503, content=body)
