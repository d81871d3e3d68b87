# tests/test_alert_service.py
"""Command API tests against an in-memory alert store."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from app.schemas.alert import (
    Alert, AlertAction, AlertFilters, AlertHistoryEntry, AlertSeverity, AlertStatus, AlertType,
)
from app.schemas.escalation_rule import EscalationRule
from app.services.alert_repository import AlertRepository
from app.services.alert_service import AlertService
from app.services.alert_set import AlertSet
from app.services.errors import (
    Conflict, InvalidTransition, NotFound, StoreUnavailable, ValidationFailed,
)
from app.services.escalation_scheduler import SYSTEM_ACTOR, EscalationScheduler
from app.services.sync_engine import SyncEngine

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def make_alert(alert_id="alert-1", **overrides):
    data = dict(
        id=alert_id,
        alert_type=AlertType.DROWSINESS,
        severity=AlertSeverity.HIGH,
        vehicle_id="veh-1",
        timestamp=T0,
        created_at=T0,
        updated_at=T0,
    )
    data.update(overrides)
    return Alert(**data)


class FakeStore(AlertRepository):
    """Applies transitions to its own copy, like the video server would."""

    def __init__(self, alerts=(), rules=()):
        self.alerts = {a.id: a for a in alerts}
        self.rules = list(rules)
        self.persisted = []
        self.fail_with = None
        self.delay = 0

    async def list_alerts(self, filters=None):
        return list(self.alerts.values())

    async def get_alert(self, alert_id):
        if alert_id not in self.alerts:
            raise NotFound(f"Alert {alert_id} not found", alert_id)
        return self.alerts[alert_id]

    async def get_history(self, alert_id):
        if self.fail_with:
            raise self.fail_with
        return list((await self.get_alert(alert_id)).history)

    async def persist_transition(self, alert_id, kind, fields, history, notes=()):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            raise self.fail_with
        current = await self.get_alert(alert_id)
        stored = current.model_copy(update={
            **fields,
            "history": [*current.history, *history],
            "notes": [*current.notes, *notes],
        })
        self.alerts[alert_id] = stored
        self.persisted.append(kind)
        return stored

    async def append_note(self, alert_id, note):
        return note

    async def get_evidence(self, alert_id):
        return [], []

    async def list_escalation_rules(self):
        return self.rules


def make_service(*alerts, **kwargs):
    store = FakeStore(alerts, **kwargs)
    service = AlertService(store, AlertSet(alerts), command_timeout=1, min_notes_length=10)
    return service, store


class TestCommands:
    @pytest.mark.asyncio
    async def test_acknowledge_persists_then_updates_set(self):
        service, store = make_service(make_alert())
        service.alert_set.unread_count = 3

        alert = await service.acknowledge("alert-1", "op-1", actor_name="Sara")

        assert alert.status == AlertStatus.ACKNOWLEDGED
        assert service.alert_set.get("alert-1").status == AlertStatus.ACKNOWLEDGED
        assert store.alerts["alert-1"].acknowledged_by == "op-1"
        assert store.persisted == ["acknowledge"]
        assert service.alert_set.unread_count == 2

    @pytest.mark.asyncio
    async def test_repeat_does_not_touch_store(self):
        service, store = make_service(make_alert())
        await service.acknowledge("alert-1", "op-1")
        again = await service.acknowledge("alert-1", "op-2")

        assert again.acknowledged_by == "op-1"
        assert store.persisted == ["acknowledge"]

    @pytest.mark.asyncio
    async def test_unknown_alert(self):
        service, _ = make_service()
        with pytest.raises(NotFound):
            await service.acknowledge("missing", "op-1")

    @pytest.mark.asyncio
    async def test_store_failure_leaves_set_untouched(self):
        original = make_alert()
        service, store = make_service(original)
        store.fail_with = StoreUnavailable("HTTP 502")

        with pytest.raises(StoreUnavailable):
            await service.escalate("alert-1", "mgr-1", "Driver unresponsive", "op-1")

        assert service.alert_set.get("alert-1") is original

    @pytest.mark.asyncio
    async def test_store_timeout_leaves_set_untouched(self):
        original = make_alert()
        service, store = make_service(original)
        service.command_timeout = 0.01
        store.delay = 1

        with pytest.raises(StoreUnavailable):
            await service.acknowledge("alert-1", "op-1")

        assert service.alert_set.get("alert-1") is original
        assert not service.alert_set.is_in_flight("alert-1")

    @pytest.mark.asyncio
    async def test_validation_happens_before_store(self):
        service, store = make_service(make_alert())
        with pytest.raises(ValidationFailed):
            await service.close("alert-1", "too short", "op-1")
        assert store.persisted == []

    @pytest.mark.asyncio
    async def test_invalid_transition(self):
        service, store = make_service(make_alert(status=AlertStatus.RESOLVED))
        with pytest.raises(InvalidTransition):
            await service.escalate("alert-1", "mgr-1", "late", "op-1")
        assert store.persisted == []

    @pytest.mark.asyncio
    async def test_racing_acknowledges_persist_once(self):
        service, store = make_service(make_alert())
        store.delay = 0.01

        first, second = await asyncio.gather(
            service.acknowledge("alert-1", "op-1"),
            service.acknowledge("alert-1", "op-2"),
        )

        assert store.persisted == ["acknowledge"]
        assert first.acknowledged_by == second.acknowledged_by == "op-1"
        assert service.alert_set.held_command_locks() == 0

    @pytest.mark.asyncio
    async def test_unknown_ids_do_not_leave_locks_behind(self):
        service, store = make_service(make_alert())
        for i in range(50):
            with pytest.raises(NotFound):
                await service.acknowledge(f"missing-{i}", "op-1")
        assert service.alert_set.held_command_locks() == 0
        assert store.persisted == []

    @pytest.mark.asyncio
    async def test_failed_command_releases_lock(self):
        service, store = make_service(make_alert())
        store.fail_with = StoreUnavailable("down")
        with pytest.raises(StoreUnavailable):
            await service.acknowledge("alert-1", "op-1")
        assert service.alert_set.held_command_locks() == 0

    @pytest.mark.asyncio
    async def test_resolved_alert_can_be_moved_back_to_acknowledged(self):
        service, store = make_service(make_alert(status=AlertStatus.RESOLVED))
        alert = await service.set_status("alert-1", AlertStatus.ACKNOWLEDGED, "op-1")
        assert alert.status == AlertStatus.ACKNOWLEDGED
        assert store.persisted == ["status_changed"]

    @pytest.mark.asyncio
    async def test_stale_push_after_command_does_not_revert(self):
        stale = make_alert()
        service, _ = make_service(stale)
        sync = SyncEngine(service.alert_set, service.repository)

        await service.acknowledge("alert-1", "op-1")
        await sync.handle_event(stale)

        assert service.alert_set.get("alert-1").status == AlertStatus.ACKNOWLEDGED

    @pytest.mark.asyncio
    async def test_set_status_with_escalation_target(self):
        service, _ = make_service(make_alert())
        alert = await service.set_status("alert-1", AlertStatus.ESCALATED, "op-1",
                                         escalate_to="mgr-1", notes=None)
        assert alert.escalated_to == "mgr-1"

    @pytest.mark.asyncio
    async def test_full_lifecycle(self):
        service, store = make_service(make_alert())
        await service.acknowledge("alert-1", "op-1")
        await service.set_status("alert-1", AlertStatus.INVESTIGATING, "op-1")
        await service.add_note("alert-1", "Called the driver", "op-1", internal=True)
        await service.record_review("alert-1", "video_reviewed", "op-1", camera_id="cab")
        await service.resolve("alert-1", "Driver took a rest stop", "op-1")
        closed = await service.close("alert-1", "Confirmed with fleet manager", "mgr-1")

        assert closed.status == AlertStatus.CLOSED
        assert len(closed.notes) == 3
        assert service.history_actions("alert-1") == [
            AlertAction.ACKNOWLEDGED, AlertAction.STATUS_CHANGED, AlertAction.NOTE_ADDED,
            AlertAction.VIDEO_REVIEWED, AlertAction.NOTE_ADDED, AlertAction.RESOLVED,
            AlertAction.NOTE_ADDED, AlertAction.CLOSED,
        ]
        assert store.alerts["alert-1"].history == closed.history

    @pytest.mark.asyncio
    async def test_assign_conflict(self):
        service, _ = make_service(make_alert(assigned_to="op-2"))
        with pytest.raises(Conflict):
            await service.assign("alert-1", "op-3", "op-1", expected_assignee="op-9")
        assert (await service.assign("alert-1", "op-3", "op-1", expected_assignee="op-2")).assigned_to == "op-3"

    @pytest.mark.asyncio
    async def test_mark_false_positive(self):
        service, _ = make_service(make_alert())
        alert = await service.mark_false_positive("alert-1", "Shadow on the lens", "op-1")
        assert alert.status == AlertStatus.CLOSED and alert.false_positive


class TestBulkAcknowledge:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_the_rest(self):
        service, store = make_service(
            make_alert("a-1"), make_alert("a-2", status=AlertStatus.CLOSED), make_alert("a-3"))

        results = await service.bulk_acknowledge(["a-1", "a-2", "missing", "a-3"], "op-1")

        assert [r.success for r in results] == [True, False, False, True]
        assert results[2].error == "Alert missing not found"
        assert sorted(store.persisted) == ["acknowledge", "acknowledge"]


class TestReads:
    @pytest.mark.asyncio
    async def test_get_alert_fetches_unknown_from_store(self):
        service, store = make_service()
        store.alerts["a-7"] = make_alert("a-7")

        alert = await service.get_alert("a-7")

        assert alert.id == "a-7"
        assert "a-7" in service.alert_set

    @pytest.mark.asyncio
    async def test_history_merges_store_and_local(self):
        service, store = make_service(make_alert())
        await service.acknowledge("alert-1", "op-1")
        remote_only = AlertHistoryEntry(id="h-remote", alert_id="alert-1", action=AlertAction.SCREENSHOT_CAPTURED,
                                        timestamp=T0 + timedelta(seconds=1))
        stored = store.alerts["alert-1"]
        store.alerts["alert-1"] = stored.model_copy(update={"history": [remote_only, *stored.history]})

        history = await service.get_history("alert-1")

        assert history[0].id == "h-remote"
        assert [h.action for h in history] == [AlertAction.SCREENSHOT_CAPTURED, AlertAction.ACKNOWLEDGED]

    @pytest.mark.asyncio
    async def test_history_falls_back_to_memory(self):
        service, store = make_service(make_alert())
        await service.acknowledge("alert-1", "op-1")
        store.fail_with = StoreUnavailable("down")

        history = await service.get_history("alert-1")

        assert [h.action for h in history] == [AlertAction.ACKNOWLEDGED]

    def test_query_statistics_cover_filtered_subset(self):
        service, _ = make_service(
            make_alert("a-1", severity=AlertSeverity.CRITICAL),
            make_alert("a-2", severity=AlertSeverity.LOW),
        )
        result = service.query(AlertFilters(severity=[AlertSeverity.CRITICAL]), now=T0)
        assert result.total == 1
        assert result.statistics.total_alerts == 1
        assert result.statistics.critical_alerts == 1

    def test_unattended_sorted_by_severity(self):
        service, _ = make_service(
            make_alert("a-low", severity=AlertSeverity.LOW),
            make_alert("a-crit", severity=AlertSeverity.CRITICAL),
        )
        unattended = service.unattended(now=T0 + timedelta(hours=25), threshold_hours=24)
        assert [a.id for a in unattended] == ["a-crit", "a-low"]


class TestSchedulerIntegration:
    @pytest.mark.asyncio
    async def test_due_alert_escalated_through_store(self):
        rule = EscalationRule(id="r-1", alert_type=AlertType.DROWSINESS, severity=AlertSeverity.HIGH,
                              time_threshold_minutes=15, escalate_to_role="safety_lead")
        service, store = make_service(make_alert(), rules=[rule])
        scheduler = EscalationScheduler(service, enabled=True)

        result = await scheduler.run_once(T0 + timedelta(minutes=16))

        assert result["escalated_count"] == 1
        alert = service.alert_set.get("alert-1")
        assert alert.status == AlertStatus.ESCALATED
        assert alert.escalated_to == "safety_lead"
        assert alert.history[-1].user_id == SYSTEM_ACTOR
        assert store.persisted == ["escalated"]

        # Declined by the manager: never auto-escalated again
        await service.set_status("alert-1", AlertStatus.ACKNOWLEDGED, "mgr-1")
        again = await scheduler.run_once(T0 + timedelta(hours=2))
        assert again["escalated_count"] == 0
        assert service.alert_set.get("alert-1").status == AlertStatus.ACKNOWLEDGED
