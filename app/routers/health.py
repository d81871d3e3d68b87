# app/routers/health.py
"""
System health check endpoint.
Returns status of backend + alert store + in-memory sync state.
"""

from fastapi import APIRouter, Depends

from app.config import settings
from app.dependencies import AlertEngine, get_engine
from app.schemas.alert import utcnow

router = APIRouter()


@router.get("/health", summary="System health check")
async def health_check(engine: AlertEngine = Depends(get_engine)):
    """
    Returns:
    - Backend status
    - Alert store reachability (configured backend)
    - Sync state: last refresh, last error, alert and unread counts
    """
    alert_set = engine.alert_set
    result = {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "backend": "ok",
        "store": {"backend": settings.ALERT_STORE_BACKEND, "status": "unknown"},
        "sync": {
            "loaded": alert_set.loaded,
            "alert_count": len(alert_set),
            "unread_count": alert_set.unread_count,
            "last_refreshed_at": alert_set.last_refreshed_at.isoformat() if alert_set.last_refreshed_at else None,
            "last_error": alert_set.last_error,
        },
        "auto_escalation": engine.scheduler.enabled,
    }

    if await engine.repository.ping():
        result["store"]["status"] = "ok"
    else:
        result["store"]["status"] = "unreachable"
        result["status"] = "degraded"

    if alert_set.last_error:
        result["status"] = "degraded"

    return result
