# tests/test_query_engine.py
"""Unit tests for filtering, sorting and dashboard statistics."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo
from app.schemas.alert import Alert, AlertFilters, AlertSeverity, AlertStatus, AlertType
from app.services.query_engine import compute_statistics, filter_alerts, matches, sort_alerts

NOW = datetime(2024, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_alert(alert_id, minutes_ago=10, **overrides):
    ts = NOW - timedelta(minutes=minutes_ago)
    data = dict(
        id=alert_id,
        alert_type=AlertType.SPEEDING,
        severity=AlertSeverity.MEDIUM,
        title="Speeding on highway",
        vehicle_id="veh-1",
        vehicle_registration="ABC-123",
        driver_id="drv-1",
        driver_name="Omar Haddad",
        timestamp=ts,
        created_at=ts,
        updated_at=ts,
    )
    data.update(overrides)
    return Alert(**data)


class TestFilters:
    def test_empty_filter_matches_everything(self):
        alerts = [make_alert("a-1"), make_alert("a-2", status=AlertStatus.CLOSED)]
        assert filter_alerts(alerts, AlertFilters()) == alerts
        assert filter_alerts(alerts, None) == alerts

    def test_predicates_are_anded(self):
        hit = make_alert("a-1", severity=AlertSeverity.CRITICAL, status=AlertStatus.NEW)
        wrong_status = make_alert("a-2", severity=AlertSeverity.CRITICAL, status=AlertStatus.ACKNOWLEDGED)
        wrong_severity = make_alert("a-3", severity=AlertSeverity.LOW, status=AlertStatus.NEW)
        filters = AlertFilters(status=[AlertStatus.NEW], severity=[AlertSeverity.CRITICAL])

        assert filter_alerts([hit, wrong_status, wrong_severity], filters) == [hit]

    def test_search_is_case_insensitive_substring(self):
        alert = make_alert("a-1")
        assert matches(alert, AlertFilters(search="abc-1"))
        assert matches(alert, AlertFilters(search="HADDAD"))
        assert matches(alert, AlertFilters(search="highway"))
        assert not matches(alert, AlertFilters(search="collision"))

    def test_date_range_is_inclusive(self):
        alert = make_alert("a-1", minutes_ago=60)
        assert matches(alert, AlertFilters(date_from=alert.timestamp, date_to=alert.timestamp))
        assert not matches(alert, AlertFilters(date_from=alert.timestamp + timedelta(seconds=1)))

    def test_escalated_only(self):
        escalated = make_alert("a-1", status=AlertStatus.ESCALATED, escalated=True)
        plain = make_alert("a-2")
        assert filter_alerts([escalated, plain], AlertFilters(escalated_only=True)) == [escalated]

    def test_vehicle_and_driver_filters(self):
        a = make_alert("a-1", vehicle_id="veh-1", driver_id="drv-1")
        b = make_alert("a-2", vehicle_id="veh-2", driver_id="drv-1")
        assert filter_alerts([a, b], AlertFilters(vehicle_ids=["veh-2"])) == [b]
        assert filter_alerts([a, b], AlertFilters(driver_ids=["drv-1"])) == [a, b]

    def test_requires_action_only(self):
        a = make_alert("a-1", requires_action=True)
        b = make_alert("a-2")
        assert filter_alerts([a, b], AlertFilters(requires_action_only=True)) == [a]


class TestSorting:
    def test_newest_first(self):
        old, new = make_alert("old", minutes_ago=60), make_alert("new", minutes_ago=1)
        assert [a.id for a in sort_alerts([old, new])] == ["new", "old"]

    def test_severity_then_newest(self):
        alerts = [
            make_alert("low", severity=AlertSeverity.LOW, minutes_ago=1),
            make_alert("crit-old", severity=AlertSeverity.CRITICAL, minutes_ago=30),
            make_alert("crit-new", severity=AlertSeverity.CRITICAL, minutes_ago=2),
        ]
        assert [a.id for a in sort_alerts(alerts, by="severity")] == ["crit-new", "crit-old", "low"]


class TestStatistics:
    def test_counts_by_status_and_severity(self):
        alerts = [
            make_alert("a-1", status=AlertStatus.NEW, severity=AlertSeverity.CRITICAL),
            make_alert("a-2", status=AlertStatus.ACKNOWLEDGED),
            make_alert("a-3", status=AlertStatus.INVESTIGATING),
            make_alert("a-4", status=AlertStatus.ESCALATED, escalated=True),
            make_alert("a-5", status=AlertStatus.CLOSED, severity=AlertSeverity.CRITICAL),
        ]
        stats = compute_statistics(alerts, now=NOW, tz=timezone.utc)

        assert stats.total_alerts == 4           # closed is terminal
        assert stats.new_alerts == 1
        assert stats.acknowledged_alerts == 1
        assert stats.investigating_alerts == 1
        assert stats.escalated_alerts == 1
        assert stats.critical_alerts == 1
        assert stats.alerts_by_severity == {"critical": 1, "medium": 3}
        assert stats.alerts_by_type == {"speeding": 5}

    def test_resolved_today_uses_display_timezone(self):
        # 23:30 UTC on Mar 1 is already Mar 2 in Riyadh (UTC+3)
        late = datetime(2024, 3, 1, 23, 30, tzinfo=timezone.utc)
        alert = make_alert("a-1", status=AlertStatus.RESOLVED, resolved_at=late)

        assert compute_statistics([alert], now=NOW, tz=ZoneInfo("Asia/Riyadh")).resolved_today == 1
        assert compute_statistics([alert], now=NOW, tz=timezone.utc).resolved_today == 0

    def test_average_response_time(self):
        a = make_alert("a-1", minutes_ago=30, status=AlertStatus.ACKNOWLEDGED,
                       acknowledged_at=NOW - timedelta(minutes=20))
        b = make_alert("a-2", minutes_ago=30, status=AlertStatus.ACKNOWLEDGED,
                       acknowledged_at=NOW - timedelta(minutes=10))
        assert compute_statistics([a, b], now=NOW, tz=timezone.utc).average_response_time_minutes == 15.0

    def test_no_acknowledgements_means_zero_response_time(self):
        assert compute_statistics([make_alert("a-1")], now=NOW, tz=timezone.utc).average_response_time_minutes == 0.0

    def test_unattended_count(self):
        stale = make_alert("a-1", minutes_ago=25 * 60)
        fresh = make_alert("a-2", minutes_ago=5)
        stats = compute_statistics([stale, fresh], now=NOW, tz=timezone.utc, unattended_hours=24)
        assert stats.unattended_alerts == 1

    def test_top_vehicles_sorted_descending(self):
        alerts = [
            make_alert("a-1", vehicle_id="veh-1"),
            make_alert("a-2", vehicle_id="veh-2", vehicle_registration="XYZ-9"),
            make_alert("a-3", vehicle_id="veh-2", vehicle_registration="XYZ-9"),
        ]
        stats = compute_statistics(alerts, now=NOW, tz=timezone.utc)
        assert [(v.vehicle_id, v.count) for v in stats.alerts_by_vehicle] == [("veh-2", 2), ("veh-1", 1)]
        assert stats.alerts_by_vehicle[0].vehicle_registration == "XYZ-9"
        assert stats.alerts_by_driver[0].count == 3

    def test_empty_set(self):
        stats = compute_statistics([], now=NOW, tz=timezone.utc)
        assert stats.total_alerts == 0
        assert stats.alerts_by_vehicle == []
