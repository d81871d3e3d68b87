# app/services/alert_service.py
"""
Caller-facing command API for alerts.

Every mutating call follows the same path (execute):
  1. take the per-alert command lock (racing operators are serialised)
  2. run the pure reducer from state_machine; idempotent repeats stop here
  3. persist the transition through the repository, bounded by COMMAND_TIMEOUT_SECONDS
  4. merge the store's echo into the in-memory set

If step 3 fails the in-memory alert is left exactly as it was.
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Optional

from app.config import settings
from app.schemas.alert import (
    Alert, AlertAction, AlertFilters, AlertHistoryEntry, AlertQueryResult, AlertStatus, utcnow,
)
from app.schemas.alert_commands import BulkAcknowledgeResult
from app.services import state_machine as sm
from app.services.alert_repository import AlertRepository
from app.services.alert_set import AlertSet
from app.services.errors import AlertEngineError, NotFound, StoreUnavailable
from app.services.escalation_scheduler import is_unattended
from app.services.query_engine import compute_statistics, filter_alerts, sort_alerts
from app.services.sync_engine import merge_alert
from app.utils.logger import get_logger

logger = get_logger(__name__)


class AlertService:
    def __init__(self, repository: AlertRepository, alert_set: AlertSet = None,
                 command_timeout: float = None, min_notes_length: int = None):
        self.repository = repository
        self.alert_set = alert_set if alert_set is not None else AlertSet()
        self.command_timeout = command_timeout if command_timeout is not None else settings.COMMAND_TIMEOUT_SECONDS
        self.min_notes_length = (min_notes_length if min_notes_length is not None
                                 else settings.CLOSING_NOTES_MIN_LENGTH)

    # ── Command path ──────────────────────────────────────────────────────────

    async def execute(self, alert_id: str, command: sm.Command) -> sm.Transition:
        if alert_id not in self.alert_set:
            raise NotFound(f"Alert {alert_id} not found", alert_id)
        async with self.alert_set.command_lock(alert_id):
            current = self.alert_set.get(alert_id)

            transition = sm.apply(current, command, min_notes_length=self.min_notes_length)
            if not transition.changed:
                logger.info(f"[{transition.kind}] alert {alert_id}: already applied, nothing to do")
                return transition

            async with self.alert_set.in_flight(alert_id):
                try:
                    stored = await asyncio.wait_for(
                        self.repository.persist_transition(
                            alert_id, transition.kind, transition.fields,
                            transition.history, transition.notes),
                        self.command_timeout,
                    )
                except asyncio.TimeoutError as e:
                    logger.error(f"[{transition.kind}] alert {alert_id}: store timed out after {self.command_timeout}s")
                    raise StoreUnavailable(
                        f"Alert store did not confirm {transition.kind} within {self.command_timeout}s",
                        alert_id) from e
                except AlertEngineError as e:
                    logger.error(f"[{transition.kind}] alert {alert_id}: {e.message}")
                    raise

                confirmed = merge_alert(transition.alert, stored)
                async with self.alert_set.lock:
                    latest = self.alert_set.get(alert_id)
                    final = merge_alert(latest, confirmed)
                    self.alert_set.replace(final)

        logger.info(f"[{transition.kind}] alert {alert_id} by {getattr(command, 'actor', '?')} → {final.status.value}")
        return replace(transition, alert=final)

    async def _run(self, alert_id: str, command: sm.Command) -> Alert:
        return (await self.execute(alert_id, command)).alert

    async def acknowledge(self, alert_id: str, actor: str, actor_name: str = None) -> Alert:
        transition = await self.execute(alert_id, sm.Acknowledge(actor=actor, actor_name=actor_name))
        if transition.changed:
            self.alert_set.mark_read()
        return transition.alert

    async def set_status(self, alert_id: str, status: AlertStatus, actor: str,
                         actor_name: str = None, **extra) -> Alert:
        extra = {k: v for k, v in extra.items() if v is not None}
        return await self._run(alert_id, sm.ChangeStatus(
            status=AlertStatus(status), actor=actor, actor_name=actor_name, extra=extra))

    async def add_note(self, alert_id: str, content: str, actor: str, internal: bool = False,
                       actor_name: str = None, note_id: str = None) -> Alert:
        return await self._run(alert_id, sm.AddNote(
            content=content, actor=actor, actor_name=actor_name, is_internal=internal, note_id=note_id))

    async def escalate(self, alert_id: str, target: str, reason: str, actor: str,
                       target_name: str = None) -> Alert:
        return await self._run(alert_id, sm.Escalate(
            target=target, reason=reason, actor=actor, target_name=target_name))

    async def close(self, alert_id: str, notes: str, actor: str, false_positive: bool = False,
                    actor_name: str = None) -> Alert:
        return await self._run(alert_id, sm.Close(
            notes=notes, actor=actor, actor_name=actor_name, false_positive=false_positive))

    async def resolve(self, alert_id: str, notes: str, actor: str, actor_name: str = None) -> Alert:
        return await self._run(alert_id, sm.Resolve(notes=notes, actor=actor, actor_name=actor_name))

    async def assign(self, alert_id: str, assignee: str, actor: str, assignee_name: str = None,
                     expected_assignee=sm._UNSET) -> Alert:
        return await self._run(alert_id, sm.Assign(
            assignee=assignee, actor=actor, assignee_name=assignee_name,
            expected_assignee=expected_assignee))

    async def mark_false_positive(self, alert_id: str, reason: str, actor: str) -> Alert:
        return await self._run(alert_id, sm.MarkFalsePositive(reason=reason, actor=actor))

    async def record_review(self, alert_id: str, kind: str, actor: str, camera_id: str = None) -> Alert:
        return await self._run(alert_id, sm.RecordReview(kind=kind, actor=actor, camera_id=camera_id))

    async def bulk_acknowledge(self, alert_ids: list[str], actor: str) -> list[BulkAcknowledgeResult]:
        """Acknowledge many alerts; one failure does not stop the others."""
        outcomes = await asyncio.gather(
            *(self.acknowledge(alert_id, actor) for alert_id in alert_ids),
            return_exceptions=True,
        )
        results = []
        for alert_id, outcome in zip(alert_ids, outcomes):
            if isinstance(outcome, AlertEngineError):
                results.append(BulkAcknowledgeResult(alert_id=alert_id, success=False, error=outcome.message))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(BulkAcknowledgeResult(alert_id=alert_id, success=True, alert=outcome))
        return results

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get_alert(self, alert_id: str, refresh: bool = False) -> Alert:
        """Known alerts come from memory; unknown ones (or refresh=True) are fetched and merged."""
        local = self.alert_set.get(alert_id)
        if local is not None and not refresh:
            return local
        try:
            remote = await asyncio.wait_for(self.repository.get_alert(alert_id), self.command_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable(f"Alert store timed out loading {alert_id}", alert_id) from e
        async with self.alert_set.lock:
            if alert_id in self.alert_set:
                merged = merge_alert(self.alert_set.get(alert_id), remote,
                                     in_flight=self.alert_set.is_in_flight(alert_id))
                self.alert_set.replace(merged)
            else:
                self.alert_set.prepend([remote])
            return self.alert_set.get(alert_id)

    async def get_history(self, alert_id: str) -> list[AlertHistoryEntry]:
        """Store history merged with local entries by id, in chronological order."""
        local = self.alert_set.get(alert_id)
        try:
            remote = await asyncio.wait_for(self.repository.get_history(alert_id), self.command_timeout)
        except (asyncio.TimeoutError, StoreUnavailable) as e:
            if local is None:
                raise StoreUnavailable(f"Alert store unavailable loading history of {alert_id}", alert_id) from e
            logger.warning(f"History of {alert_id} served from memory: store unavailable")
            return list(local.history)
        except NotFound:
            if local is None:
                raise
            remote = []

        entries = {entry.id: entry for entry in remote}
        for entry in (local.history if local else []):
            entries.setdefault(entry.id, entry)
        return sorted(entries.values(), key=lambda e: e.timestamp)

    def query(self, filters: Optional[AlertFilters] = None, sort: str = "newest",
              now: datetime = None) -> AlertQueryResult:
        matching = sort_alerts(filter_alerts(self.alert_set.snapshot(), filters), by=sort)
        return AlertQueryResult(
            alerts=matching,
            statistics=compute_statistics(matching, now=now),
            total=len(matching),
        )

    def unattended(self, now: datetime = None, threshold_hours: float = None) -> list[Alert]:
        now = now or utcnow()
        return sort_alerts(
            [a for a in self.alert_set.snapshot() if is_unattended(a, now, threshold_hours)],
            by="severity",
        )

    def history_actions(self, alert_id: str) -> list[AlertAction]:
        alert = self.alert_set.get(alert_id)
        if alert is None:
            raise NotFound(f"Alert {alert_id} not found", alert_id)
        return [entry.action for entry in alert.history]
