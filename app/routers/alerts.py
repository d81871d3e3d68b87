# app/routers/alerts.py
"""
Alert command + query endpoints.

Reads are served from the in-memory set kept fresh by the sync engine.
Writes go through AlertService (lock → reducer → store → merge).
Engine errors map to HTTP: 404 not found, 409 invalid transition / conflict,
422 validation, 503 store unavailable.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.dependencies import AlertEngine, get_engine, get_service
from app.schemas.alert import (
    Alert, AlertFilters, AlertHistoryEntry, AlertQueryResult, AlertSeverity, AlertStatistics,
    AlertStatus, AlertType,
)
from app.schemas.alert_commands import (
    AcknowledgeRequest, AddNoteRequest, AssignRequest, BulkAcknowledgeRequest, BulkAcknowledgeResult,
    CloseRequest, EscalateRequest, MarkFalseRequest, ResolveRequest, ReviewRequest, StatusChangeRequest,
)
from app.services.alert_service import AlertService
from app.services.errors import AlertEngineError
from app.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


async def _guard(coro):
    try:
        return await coro
    except AlertEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message) from e


def alert_filters(
    status: Optional[list[AlertStatus]] = Query(None),
    severity: Optional[list[AlertSeverity]] = Query(None),
    alert_type: Optional[list[AlertType]] = Query(None),
    vehicle_id: Optional[list[str]] = Query(None),
    driver_id: Optional[list[str]] = Query(None),
    assigned_to: Optional[list[str]] = Query(None),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    escalated_only: bool = False,
    requires_action_only: bool = False,
    search: Optional[str] = None,
) -> AlertFilters:
    return AlertFilters(
        status=status or [], severity=severity or [], alert_type=alert_type or [],
        vehicle_ids=vehicle_id or [], driver_ids=driver_id or [], assigned_to=assigned_to or [],
        date_from=date_from, date_to=date_to, escalated_only=escalated_only,
        requires_action_only=requires_action_only, search=search,
    )


# ── Queries ───────────────────────────────────────────────────────────────────

@router.get("/alerts", response_model=AlertQueryResult, summary="Alerts matching filters + statistics")
async def list_alerts(
    filters: AlertFilters = Depends(alert_filters),
    sort: str = Query("newest", pattern="^(newest|severity)$"),
    limit: Optional[int] = Query(None, ge=1),
    service: AlertService = Depends(get_service),
):
    """All filters are ANDed. Statistics cover the whole matching subset; `limit` trims only the list."""
    result = service.query(filters, sort=sort)
    if limit is not None:
        result.alerts = result.alerts[:limit]
    return result


@router.get("/alerts/stats", response_model=AlertStatistics, summary="Dashboard statistics")
async def alert_stats(filters: AlertFilters = Depends(alert_filters), service: AlertService = Depends(get_service)):
    return service.query(filters).statistics


@router.get("/alerts/unattended", response_model=list[Alert], summary="Open alerts nobody has escalated")
async def unattended_alerts(threshold_hours: Optional[float] = Query(None, gt=0),
                            service: AlertService = Depends(get_service)):
    return service.unattended(threshold_hours=threshold_hours)


@router.get("/alerts/sync", summary="Sync state of the in-memory alert set")
async def sync_state(engine: AlertEngine = Depends(get_engine)):
    alert_set = engine.alert_set
    return {
        "loaded": alert_set.loaded,
        "alert_count": len(alert_set),
        "unread_count": alert_set.unread_count,
        "last_error": alert_set.last_error,
        "last_refreshed_at": alert_set.last_refreshed_at,
    }


@router.post("/alerts/refresh", summary="Force a refresh from the alert store")
async def force_refresh(engine: AlertEngine = Depends(get_engine)):
    ok = await engine.sync.refresh()
    if not ok:
        raise HTTPException(status_code=503, detail=engine.alert_set.last_error)
    return {"status": "ok", "alert_count": len(engine.alert_set)}


@router.post("/alerts/read", summary="Reset the unread counter")
async def mark_all_read(engine: AlertEngine = Depends(get_engine)):
    engine.alert_set.unread_count = 0
    return {"unread_count": 0}


@router.post("/alerts/events", status_code=202, summary="Push webhook: new or updated alert from the store")
async def receive_alert_event(alert: Alert, engine: AlertEngine = Depends(get_engine)):
    """Queued for the sync engine; duplicates and stale versions are dropped on merge."""
    logger.debug(f"Push event for alert {alert.id} (updated_at={alert.updated_at.isoformat()})")
    engine.events.publish(alert)
    return {"status": "queued", "alert_id": alert.id}


@router.post("/alerts/escalation-scan", summary="Run the escalation scan now")
async def escalation_scan(engine: AlertEngine = Depends(get_engine)):
    return await engine.scheduler.scan_now()


@router.post("/alerts/bulk-acknowledge", response_model=list[BulkAcknowledgeResult],
             summary="Acknowledge many alerts; per-alert results")
async def bulk_acknowledge(body: BulkAcknowledgeRequest, service: AlertService = Depends(get_service)):
    return await service.bulk_acknowledge(body.alert_ids, body.user_id)


@router.get("/alerts/{alert_id}", response_model=Alert, summary="One alert")
async def get_alert(alert_id: str, refresh: bool = False, service: AlertService = Depends(get_service)):
    return await _guard(service.get_alert(alert_id, refresh=refresh))


@router.get("/alerts/{alert_id}/history", response_model=list[AlertHistoryEntry], summary="Audit trail")
async def get_history(alert_id: str, service: AlertService = Depends(get_service)):
    return await _guard(service.get_history(alert_id))


@router.post("/alerts/{alert_id}/evidence", response_model=Alert, summary="Re-pull screenshots and clips")
async def refresh_evidence(alert_id: str, engine: AlertEngine = Depends(get_engine)):
    return await _guard(engine.sync.refresh_evidence(alert_id))


# ── Commands ──────────────────────────────────────────────────────────────────

@router.post("/alerts/{alert_id}/acknowledge", response_model=Alert, summary="Acknowledge")
async def acknowledge(alert_id: str, body: AcknowledgeRequest, service: AlertService = Depends(get_service)):
    return await _guard(service.acknowledge(alert_id, body.user_id, actor_name=body.user_name))


@router.post("/alerts/{alert_id}/status", response_model=Alert, summary="Change status")
async def set_status(alert_id: str, body: StatusChangeRequest, service: AlertService = Depends(get_service)):
    return await _guard(service.set_status(
        alert_id, body.status, body.user_id, actor_name=body.user_name,
        notes=body.notes, escalate_to=body.escalate_to, reason=body.reason,
    ))


@router.post("/alerts/{alert_id}/notes", response_model=Alert, summary="Add a note")
async def add_note(alert_id: str, body: AddNoteRequest, service: AlertService = Depends(get_service)):
    return await _guard(service.add_note(
        alert_id, body.content, body.user_id, internal=body.is_internal, actor_name=body.user_name))


@router.post("/alerts/{alert_id}/escalate", response_model=Alert, summary="Escalate")
async def escalate(alert_id: str, body: EscalateRequest, service: AlertService = Depends(get_service)):
    return await _guard(service.escalate(
        alert_id, body.escalate_to, body.reason, body.user_id, target_name=body.escalate_to_name))


@router.post("/alerts/{alert_id}/close", response_model=Alert, summary="Close with notes")
async def close(alert_id: str, body: CloseRequest, service: AlertService = Depends(get_service)):
    return await _guard(service.close(
        alert_id, body.closing_notes, body.user_id,
        false_positive=body.false_positive, actor_name=body.user_name))


@router.post("/alerts/{alert_id}/resolve", response_model=Alert, summary="Resolve")
async def resolve(alert_id: str, body: ResolveRequest, service: AlertService = Depends(get_service)):
    return await _guard(service.resolve(alert_id, body.notes, body.user_id, actor_name=body.user_name))


@router.post("/alerts/{alert_id}/assign", response_model=Alert, summary="Assign to an operator")
async def assign(alert_id: str, body: AssignRequest, service: AlertService = Depends(get_service)):
    kwargs = {}
    if "expected_assignee" in body.model_fields_set:
        kwargs["expected_assignee"] = body.expected_assignee
    return await _guard(service.assign(
        alert_id, body.assigned_to, body.user_id, assignee_name=body.assigned_to_name, **kwargs))


@router.post("/alerts/{alert_id}/mark-false", response_model=Alert, summary="Flag as false positive")
async def mark_false(alert_id: str, body: MarkFalseRequest, service: AlertService = Depends(get_service)):
    return await _guard(service.mark_false_positive(alert_id, body.reason, body.user_id))


@router.post("/alerts/{alert_id}/review", response_model=Alert, summary="Record evidence review")
async def review(alert_id: str, body: ReviewRequest, service: AlertService = Depends(get_service)):
    return await _guard(service.record_review(alert_id, body.kind, body.user_id, camera_id=body.camera_id))
