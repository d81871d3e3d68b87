# app/services/escalation_scheduler.py
"""
Escalation scheduler: time-based detection for open alerts.

Two separate concerns:
  - is_unattended(): pure predicate used by queries and display. No scheduler tick needed.
  - EscalationScheduler.run_once(): the periodic side effect. For every open alert with a
    matching enabled EscalationRule whose threshold has passed, issue the same Escalate
    command an operator would, as actor "system".

An alert that has been escalated once (escalated_at set) is never auto-escalated again,
so declining an escalation sticks.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Iterable, Optional

from app.config import settings
from app.schemas.alert import Alert, AlertSeverity, AlertStatus, as_utc, utcnow
from app.schemas.escalation_rule import EscalationRule
from app.services.errors import AlertEngineError
from app.services.state_machine import Escalate
from app.utils.logger import get_logger

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"
AUTO_ESCALATION_REASON = "automatic: threshold exceeded"

# Advisory thresholds used when no rule is configured for the alert
DEFAULT_THRESHOLD_MINUTES = {
    AlertSeverity.CRITICAL: 5,
    AlertSeverity.HIGH: 15,
    AlertSeverity.MEDIUM: 30,
    AlertSeverity.LOW: 60,
    AlertSeverity.INFO: 120,
}


def minutes_open(alert: Alert, now: datetime) -> float:
    return (as_utc(now) - alert.timestamp).total_seconds() / 60


def is_unattended(alert: Alert, now: datetime = None, threshold_hours: float = None) -> bool:
    """Open, never escalated, and at least `threshold_hours` old (inclusive)."""
    if not alert.is_open or alert.status == AlertStatus.ESCALATED or alert.escalated:
        return False
    now = as_utc(now) if now is not None else utcnow()
    if threshold_hours is None:
        threshold_hours = settings.UNATTENDED_THRESHOLD_HOURS
    return now - alert.timestamp >= timedelta(hours=threshold_hours)


def find_rule(rules: Iterable[EscalationRule], alert: Alert) -> Optional[EscalationRule]:
    for rule in rules:
        if rule.enabled and rule.alert_type == alert.alert_type and rule.severity == alert.severity:
            return rule
    return None


def is_due(alert: Alert, rule: EscalationRule, now: datetime) -> bool:
    if not alert.is_open or alert.escalated or alert.escalated_at is not None:
        return False
    return minutes_open(alert, now) >= rule.time_threshold_minutes


def escalation_recommended(alert: Alert, now: datetime = None,
                           rules: Iterable[EscalationRule] = ()) -> bool:
    """Hint for operators: rule threshold if one exists, severity default otherwise."""
    if not alert.is_open or alert.escalated:
        return False
    now = as_utc(now) if now is not None else utcnow()
    rule = find_rule(rules, alert)
    threshold = rule.time_threshold_minutes if rule else DEFAULT_THRESHOLD_MINUTES[alert.severity]
    return minutes_open(alert, now) > threshold


class EscalationScheduler:
    def __init__(self, service, interval: float = None, enabled: bool = None,
                 unattended_hours: float = None, rules: list[EscalationRule] = None):
        self.service = service
        self.interval = interval if interval is not None else settings.ESCALATION_SCAN_INTERVAL_SECONDS
        self.enabled = enabled if enabled is not None else settings.AUTO_ESCALATION_ENABLED
        self.unattended_hours = (unattended_hours if unattended_hours is not None
                                 else settings.UNATTENDED_THRESHOLD_HOURS)
        self.rules: list[EscalationRule] = list(rules or [])
        self.last_scan: Optional[dict] = None

    async def load_rules(self) -> list[EscalationRule]:
        """Refresh rules from the store; keep the previous set if the store is down."""
        try:
            self.rules = await self.service.repository.list_escalation_rules()
        except AlertEngineError as e:
            logger.warning(f"Could not load escalation rules ({e.message}); using {len(self.rules)} cached")
        return self.rules

    def unattended(self, now: datetime = None) -> list[Alert]:
        now = as_utc(now) if now is not None else utcnow()
        return [a for a in self.service.alert_set.snapshot()
                if is_unattended(a, now, self.unattended_hours)]

    async def run_once(self, now: datetime = None) -> dict:
        now = as_utc(now) if now is not None else utcnow()
        await self.load_rules()
        alerts = self.service.alert_set.snapshot()
        escalated_count = failed_count = 0

        if self.enabled:
            for alert in alerts:
                rule = find_rule(self.rules, alert)
                if rule is None or not is_due(alert, rule, now):
                    continue
                if not rule.target:
                    logger.warning(f"Escalation rule {rule.id} has no target, skipping alert {alert.id}")
                    continue
                try:
                    transition = await self.service.execute(alert.id, Escalate(
                        target=rule.target, reason=AUTO_ESCALATION_REASON, actor=SYSTEM_ACTOR,
                    ))
                    if transition.changed:
                        escalated_count += 1
                        logger.warning(
                            f"[ESCALATION] Alert {alert.id} ({alert.alert_type.value}/{alert.severity.value}) "
                            f"open {minutes_open(alert, now):.0f} min → {rule.target}")
                except AlertEngineError as e:
                    failed_count += 1
                    logger.error(f"Auto-escalation of alert {alert.id} failed: {e.message}")

        result = {
            "scanned_alerts": len(alerts),
            "escalated_count": escalated_count,
            "failed_count": failed_count,
            "unattended_count": sum(1 for a in alerts if is_unattended(a, now, self.unattended_hours)),
            "scan_time": now,
        }
        self.last_scan = result
        logger.info(f"Escalation scan complete: {result}")
        return result

    async def scan_now(self) -> dict:
        """Manual trigger; same code path as the periodic tick."""
        return await self.run_once()

    async def run_forever(self):
        logger.info(f"Escalation scheduler started (every {self.interval}s, auto={self.enabled})")
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Escalation scan crashed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)
