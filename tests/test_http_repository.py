# tests/test_http_repository.py
"""HTTP alert store client tests using httpx.MockTransport."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json
import httpx
import pytest
from datetime import datetime, timezone
from app.schemas.alert import AlertAction, AlertFilters, AlertHistoryEntry, AlertSeverity, AlertStatus
from app.services.alert_repository import HttpAlertRepository, filters_to_params
from app.services.alert_set import AlertSet
from app.services.errors import Conflict, NotFound, StoreUnavailable, ValidationFailed
from app.services.sync_engine import SyncEngine

T0 = "2024-03-01T08:00:00Z"


def alert_payload(alert_id="alert-1", **overrides):
    data = {
        "id": alert_id,
        "alert_type": "speeding",
        "severity": "high",
        "status": "new",
        "vehicle_id": "veh-1",
        "timestamp": T0,
        "created_at": T0,
        "updated_at": T0,
    }
    data.update(overrides)
    return data


def make_repo(handler):
    return HttpAlertRepository(base_url="http://video-server/api", token="secret", timeout=1,
                               transport=httpx.MockTransport(handler))


class TestReads:
    @pytest.mark.asyncio
    async def test_list_alerts_unwraps_envelope_and_sends_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"alerts": [alert_payload("a-1"), alert_payload("a-2")]})

        repo = make_repo(handler)
        alerts = await repo.list_alerts(AlertFilters(severity=[AlertSeverity.CRITICAL, AlertSeverity.HIGH]))
        await repo.close()

        assert [a.id for a in alerts] == ["a-1", "a-2"]
        assert alerts[0].timestamp == datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
        assert seen["auth"] == "Bearer secret"
        assert seen["params"] == {"severity": "critical,high"}

    @pytest.mark.asyncio
    async def test_get_alert_plain_body(self):
        repo = make_repo(lambda request: httpx.Response(200, json=alert_payload(status="acknowledged")))
        alert = await repo.get_alert("alert-1")
        assert alert.status == AlertStatus.ACKNOWLEDGED

    @pytest.mark.asyncio
    async def test_evidence(self):
        body = {
            "screenshots": [{"id": "s-1", "alert_id": "alert-1", "camera_id": "cam", "url": "http://x/s.jpg"}],
            "video_clips": [{"id": "v-1", "alert_id": "alert-1", "camera_id": "cam", "url": "http://x/v.mp4",
                             "duration": 10}],
        }
        repo = make_repo(lambda request: httpx.Response(200, json=body))
        screenshots, clips = await repo.get_evidence("alert-1")
        assert screenshots[0].id == "s-1"
        assert clips[0].duration == 10

    @pytest.mark.asyncio
    async def test_escalation_rules(self):
        rules = [{"id": "r-1", "alert_type": "speeding", "severity": "high", "time_threshold_minutes": 15,
                  "escalate_to_role": "manager"}]
        repo = make_repo(lambda request: httpx.Response(200, json={"rules": rules}))
        assert (await repo.list_escalation_rules())[0].target == "manager"


class TestWrites:
    @pytest.mark.asyncio
    async def test_persist_transition_body(self):
        captured = {}

        def handler(request):
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"alert": alert_payload(status="acknowledged",
                                                                    updated_at="2024-03-01T08:05:00Z")})

        entry = AlertHistoryEntry(id="h-1", alert_id="alert-1", action=AlertAction.ACKNOWLEDGED,
                                  user_id="op-1", timestamp=datetime(2024, 3, 1, 8, 5, tzinfo=timezone.utc))
        repo = make_repo(handler)
        stored = await repo.persist_transition(
            "alert-1", "acknowledge",
            {"status": AlertStatus.ACKNOWLEDGED, "acknowledged_at": entry.timestamp},
            [entry],
        )

        assert captured["path"] == "/api/alerts/alert-1/transitions"
        assert captured["body"]["kind"] == "acknowledge"
        assert captured["body"]["fields"]["status"] == "acknowledged"
        assert captured["body"]["history"][0]["action"] == "acknowledged"
        assert captured["body"]["notes"] == []
        assert stored.status == AlertStatus.ACKNOWLEDGED


class TestErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code, error", [
        (404, NotFound),
        (409, Conflict),
        (422, ValidationFailed),
        (400, ValidationFailed),
        (500, StoreUnavailable),
        (503, StoreUnavailable),
    ])
    async def test_status_mapping(self, status_code, error):
        repo = make_repo(lambda request: httpx.Response(status_code, json={"message": "nope"}))
        with pytest.raises(error):
            await repo.get_alert("alert-1")

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(StoreUnavailable):
            await make_repo(handler).list_alerts()

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(StoreUnavailable):
            await make_repo(handler).get_history("alert-1")

    @pytest.mark.asyncio
    async def test_ping_reports_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        assert await make_repo(handler).ping() is False

    @pytest.mark.asyncio
    async def test_non_json_body_is_store_unavailable(self):
        repo = make_repo(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        with pytest.raises(StoreUnavailable):
            await repo.list_alerts()

    @pytest.mark.asyncio
    async def test_malformed_row_is_store_unavailable(self):
        bad = alert_payload("a-2", severity="apocalyptic")
        repo = make_repo(lambda request: httpx.Response(200, json={"alerts": [alert_payload("a-1"), bad]}))
        with pytest.raises(StoreUnavailable) as exc:
            await repo.list_alerts()
        assert "Alert" in exc.value.message

    @pytest.mark.asyncio
    async def test_malformed_body_fails_refresh_cleanly(self):
        repo = make_repo(lambda request: httpx.Response(200, json={"alerts": {"oops": 1}}))
        engine = SyncEngine(AlertSet(), repo, interval=1, timeout=1)
        assert not await engine.refresh()
        assert engine.alert_set.last_error is not None


class TestParams:
    def test_defaults_are_omitted(self):
        assert filters_to_params(AlertFilters()) == {}
        assert filters_to_params(None) == {}

    def test_flags_and_search(self):
        params = filters_to_params(AlertFilters(escalated_only=True, search="abc"))
        assert params == {"escalated_only": "true", "search": "abc"}
