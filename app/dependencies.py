# app/dependencies.py
"""
Engine wiring shared by main.py (startup) and the routers (Depends).

One AlertEngine per process: the repository, the in-memory set and the
services that read and write it. Routers pull pieces off app.state.
"""

from dataclasses import dataclass, field

from fastapi import HTTPException, Request

from app.config import settings
from app.services.alert_repository import AlertRepository, HttpAlertRepository
from app.services.alert_service import AlertService
from app.services.alert_set import AlertSet
from app.services.escalation_scheduler import EscalationScheduler
from app.services.event_source import AlertEventSource, PollingEventSource, QueueEventSource
from app.services.sync_engine import SyncEngine


@dataclass
class AlertEngine:
    repository: AlertRepository
    alert_set: AlertSet
    service: AlertService
    sync: SyncEngine
    scheduler: EscalationScheduler
    events: QueueEventSource
    feed: AlertEventSource
    tasks: list = field(default_factory=list)


def build_repository(backend: str = None) -> AlertRepository:
    backend = (backend or settings.ALERT_STORE_BACKEND).lower()
    if backend == "http":
        return HttpAlertRepository()
    if backend == "database":
        from app.services.sql_alert_repository import SqlAlertRepository
        return SqlAlertRepository()
    raise ValueError(f"Unknown ALERT_STORE_BACKEND: {backend!r} (expected 'http' or 'database')")


def build_feed(repository: AlertRepository, events: QueueEventSource, mode: str = None) -> AlertEventSource:
    """Real-time feed for the sync engine. The webhook queue is drained in both modes; poll adds the poller."""
    mode = (mode or settings.EVENT_SOURCE).lower()
    if mode == "poll":
        return PollingEventSource(repository)
    if mode == "push":
        return events
    raise ValueError(f"Unknown EVENT_SOURCE: {mode!r} (expected 'push' or 'poll')")


def build_engine(repository: AlertRepository = None) -> AlertEngine:
    repository = repository or build_repository()
    events = QueueEventSource()
    alert_set = AlertSet()
    service = AlertService(repository, alert_set)
    return AlertEngine(
        repository=repository,
        alert_set=alert_set,
        service=service,
        sync=SyncEngine(alert_set, repository),
        scheduler=EscalationScheduler(service),
        events=events,
        feed=build_feed(repository, events),
    )


def get_engine(request: Request) -> AlertEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Alert engine not started")
    return engine


def get_service(request: Request) -> AlertService:
    return get_engine(request).service
