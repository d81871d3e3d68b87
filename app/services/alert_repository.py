# app/services/alert_repository.py
"""
Repository client for the Alert Store (the video server's REST API).

The engine only talks to the store through this surface:
    list_alerts / get_alert / get_history (reads)
    persist_transition / append_note (writes)
    get_evidence / list_escalation_rules (read-mostly extras)

Every call is an I/O boundary. Transport failures become StoreUnavailable,
HTTP 404 → NotFound, 409 → Conflict, 400/422 → ValidationFailed.
Bodies that are not JSON or do not parse as alerts are also StoreUnavailable.
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx
from pydantic import ValidationError
from pydantic_core import to_jsonable_python

from app.config import settings
from app.schemas.alert import (
    Alert, AlertFilters, AlertHistoryEntry, AlertNote, AlertScreenshot, AlertVideoClip,
)
from app.schemas.escalation_rule import EscalationRule
from app.services.errors import Conflict, NotFound, StoreUnavailable, ValidationFailed
from app.utils.logger import get_logger

logger = get_logger(__name__)


class AlertRepository(ABC):
    @abstractmethod
    async def list_alerts(self, filters: Optional[AlertFilters] = None) -> list[Alert]:
        ...

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Alert:
        ...

    @abstractmethod
    async def get_history(self, alert_id: str) -> list[AlertHistoryEntry]:
        ...

    @abstractmethod
    async def persist_transition(self, alert_id: str, kind: str, fields: dict,
                                 history: list[AlertHistoryEntry],
                                 notes: list[AlertNote] = ()) -> Alert:
        """Apply one transition atomically and return the stored alert."""

    @abstractmethod
    async def append_note(self, alert_id: str, note: AlertNote) -> AlertNote:
        ...

    @abstractmethod
    async def get_evidence(self, alert_id: str) -> tuple[list[AlertScreenshot], list[AlertVideoClip]]:
        ...

    @abstractmethod
    async def list_escalation_rules(self) -> list[EscalationRule]:
        ...

    async def ping(self) -> bool:
        return True

    async def close(self):
        pass


def filters_to_params(filters: Optional[AlertFilters]) -> dict:
    """Flatten filters into query params; list values become comma-separated."""
    if filters is None:
        return {}
    params = {}
    for key, value in filters.model_dump(exclude_defaults=True).items():
        if isinstance(value, list):
            params[key] = ",".join(str(getattr(v, "value", v)) for v in value)
        elif isinstance(value, bool):
            params[key] = "true" if value else "false"
        else:
            params[key] = str(to_jsonable_python(value))
    return params


class HttpAlertRepository(AlertRepository):
    def __init__(self, base_url: str = None, token: str = None, timeout: float = None,
                 transport: httpx.AsyncBaseTransport = None):
        headers = {"Content-Type": "application/json"}
        token = token if token is not None else settings.ALERT_STORE_TOKEN
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.ALERT_STORE_URL,
            headers=headers,
            timeout=timeout or settings.REFRESH_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def _request(self, method: str, path: str, alert_id: str = None, **kwargs) -> dict:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise StoreUnavailable(f"Alert store timed out on {method} {path}", alert_id) from e
        except httpx.TransportError as e:
            raise StoreUnavailable(f"Alert store unreachable: {e}", alert_id) from e

        if response.status_code == 404:
            raise NotFound(f"Alert {alert_id} not found", alert_id)
        if response.status_code == 409:
            raise Conflict(_error_message(response, "Concurrent update"), alert_id)
        if response.status_code in (400, 422):
            raise ValidationFailed(_error_message(response, "Rejected by alert store"), alert_id)
        if response.status_code >= 400:
            raise StoreUnavailable(
                f"Alert store returned HTTP {response.status_code} on {method} {path}", alert_id)
        try:
            return response.json()
        except ValueError as e:
            raise StoreUnavailable(f"Alert store sent a non-JSON body on {method} {path}", alert_id) from e

    async def list_alerts(self, filters: Optional[AlertFilters] = None) -> list[Alert]:
        data = await self._request("GET", "/alerts", params=filters_to_params(filters))
        return [_parse(Alert, row) for row in _rows(data, "alerts", "data")]

    async def get_alert(self, alert_id: str) -> Alert:
        data = await self._request("GET", f"/alerts/{alert_id}", alert_id)
        return _parse(Alert, _unwrap(data, "alert"), alert_id)

    async def get_history(self, alert_id: str) -> list[AlertHistoryEntry]:
        data = await self._request("GET", f"/alerts/{alert_id}/history", alert_id)
        return [_parse(AlertHistoryEntry, row, alert_id) for row in _rows(data, "history", alert_id=alert_id)]

    async def persist_transition(self, alert_id: str, kind: str, fields: dict,
                                 history: list[AlertHistoryEntry],
                                 notes: list[AlertNote] = ()) -> Alert:
        body = {
            "kind": kind,
            "fields": to_jsonable_python(fields),
            "history": [h.model_dump(mode="json") for h in history],
            "notes": [n.model_dump(mode="json") for n in notes],
        }
        data = await self._request("POST", f"/alerts/{alert_id}/transitions", alert_id, json=body)
        return _parse(Alert, _unwrap(data, "alert"), alert_id)

    async def append_note(self, alert_id: str, note: AlertNote) -> AlertNote:
        data = await self._request("POST", f"/alerts/{alert_id}/notes", alert_id,
                                   json=note.model_dump(mode="json"))
        return _parse(AlertNote, _unwrap(data, "note"), alert_id)

    async def get_evidence(self, alert_id: str):
        data = await self._request("GET", f"/alerts/{alert_id}/screenshots", alert_id)
        if not isinstance(data, dict):
            raise StoreUnavailable("Alert store sent a malformed evidence payload", alert_id)
        screenshots = [_parse(AlertScreenshot, s, alert_id) for s in data.get("screenshots", [])]
        clips = [_parse(AlertVideoClip, c, alert_id) for c in data.get("video_clips", [])]
        return screenshots, clips

    async def list_escalation_rules(self) -> list[EscalationRule]:
        data = await self._request("GET", "/escalation-rules")
        return [_parse(EscalationRule, row) for row in _rows(data, "rules")]

    async def ping(self) -> bool:
        try:
            response = await self._client.get("/health", timeout=3)
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Alert store ping failed: {e}")
            return False

    async def close(self):
        await self._client.aclose()


def _unwrap(data, key: str):
    """Store responses come either bare or inside a {key: ...} envelope."""
    if isinstance(data, dict) and key in data:
        return data[key]
    return data


def _rows(data, *keys, alert_id: str = None) -> list:
    if isinstance(data, dict):
        for key in keys:
            if key in data:
                data = data[key]
                break
        else:
            data = []
    if not isinstance(data, list):
        raise StoreUnavailable("Alert store sent a malformed list payload", alert_id)
    return data


def _parse(model, row, alert_id: str = None):
    try:
        return model.model_validate(row)
    except ValidationError as e:
        raise StoreUnavailable(
            f"Alert store sent a malformed {model.__name__} ({e.error_count()} invalid fields)", alert_id) from e


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        return body.get("message") or body.get("detail") or default
    return default
