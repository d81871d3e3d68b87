# app/services/query_engine.py
"""
Read-only filtering and statistics over a snapshot of the alert set.
Nothing here mutates alerts or caches results; statistics are recomputed per call.
"""

from collections import Counter
from datetime import datetime, tzinfo
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from app.config import settings
from app.schemas.alert import (
    Alert, AlertFilters, AlertSeverity, AlertStatistics, AlertStatus, DriverAlertCount,
    SEVERITY_RANK, VehicleAlertCount, as_utc, utcnow,
)
from app.services.escalation_scheduler import is_unattended


def _in(value, allowed) -> bool:
    return not allowed or value in allowed


def matches(alert: Alert, filters: AlertFilters) -> bool:
    if not _in(alert.status, filters.status):
        return False
    if not _in(alert.severity, filters.severity):
        return False
    if not _in(alert.alert_type, filters.alert_type):
        return False
    if not _in(alert.vehicle_id, filters.vehicle_ids):
        return False
    if not _in(alert.driver_id, filters.driver_ids):
        return False
    if not _in(alert.assigned_to, filters.assigned_to):
        return False
    if filters.escalated_only and not (alert.status == AlertStatus.ESCALATED or alert.escalated):
        return False
    if filters.requires_action_only and not alert.requires_action:
        return False
    if filters.date_from and alert.timestamp < filters.date_from:
        return False
    if filters.date_to and alert.timestamp > filters.date_to:
        return False
    if filters.search:
        needle = filters.search.strip().lower()
        haystack = (alert.title, alert.vehicle_registration, alert.driver_name, alert.id)
        if needle and not any(needle in (field or "").lower() for field in haystack):
            return False
    return True


def filter_alerts(alerts: Iterable[Alert], filters: Optional[AlertFilters] = None) -> list[Alert]:
    if filters is None:
        return list(alerts)
    return [a for a in alerts if matches(a, filters)]


def sort_alerts(alerts: Iterable[Alert], by: str = "newest") -> list[Alert]:
    """newest: latest event first. severity: most severe first, then newest."""
    newest = sorted(alerts, key=lambda a: a.timestamp, reverse=True)
    if by == "severity":
        return sorted(newest, key=lambda a: SEVERITY_RANK[a.severity])
    return newest


def _same_day(value: Optional[datetime], today, tz: tzinfo) -> bool:
    return value is not None and as_utc(value).astimezone(tz).date() == today


def compute_statistics(alerts: Iterable[Alert], now: datetime = None, tz: tzinfo = None,
                       unattended_hours: float = None) -> AlertStatistics:
    alerts = list(alerts)
    now = as_utc(now) if now is not None else utcnow()
    tz = tz or ZoneInfo(settings.DISPLAY_TIMEZONE)
    today = now.astimezone(tz).date()

    active = [a for a in alerts if not a.is_terminal]
    status_counts = Counter(a.status for a in active)
    severity_counts = Counter(a.severity for a in active)

    response_minutes = [
        (a.acknowledged_at - a.timestamp).total_seconds() / 60
        for a in alerts if a.acknowledged_at is not None
    ]

    vehicles, registrations = Counter(), {}
    drivers, driver_names = Counter(), {}
    for a in alerts:
        vehicles[a.vehicle_id] += 1
        if a.vehicle_registration:
            registrations[a.vehicle_id] = a.vehicle_registration
        if a.driver_id:
            drivers[a.driver_id] += 1
            if a.driver_name:
                driver_names[a.driver_id] = a.driver_name

    by_count = lambda item: (-item[1], item[0])   # noqa: E731

    return AlertStatistics(
        total_alerts=len(active),
        new_alerts=status_counts[AlertStatus.NEW],
        acknowledged_alerts=status_counts[AlertStatus.ACKNOWLEDGED],
        investigating_alerts=status_counts[AlertStatus.INVESTIGATING],
        escalated_alerts=status_counts[AlertStatus.ESCALATED],
        critical_alerts=severity_counts[AlertSeverity.CRITICAL],
        resolved_today=sum(
            1 for a in alerts
            if _same_day(a.resolved_at, today, tz) or _same_day(a.closed_at, today, tz)
        ),
        unattended_alerts=sum(1 for a in alerts if is_unattended(a, now, unattended_hours)),
        average_response_time_minutes=(
            round(sum(response_minutes) / len(response_minutes), 1) if response_minutes else 0.0
        ),
        alerts_by_type={t.value: n for t, n in Counter(a.alert_type for a in alerts).items()},
        alerts_by_severity={s.value: n for s, n in severity_counts.items()},
        alerts_by_vehicle=[
            VehicleAlertCount(vehicle_id=v, vehicle_registration=registrations.get(v), count=n)
            for v, n in sorted(vehicles.items(), key=by_count)
        ],
        alerts_by_driver=[
            DriverAlertCount(driver_id=d, driver_name=driver_names.get(d), count=n)
            for d, n in sorted(drivers.items(), key=by_count)
        ],
    )
