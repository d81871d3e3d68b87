# app/services/alert_set.py
"""
The in-memory alert set for one client session.

Only the state machine's command path (via AlertService) and the sync engine's
merge write to it; queries read snapshots. Order is newest-first.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Iterable, Optional

from app.schemas.alert import Alert


class AlertSet:
    def __init__(self, alerts: Iterable[Alert] = ()):
        self._alerts: dict[str, Alert] = {}
        self._order: list[str] = []
        self.lock = asyncio.Lock()
        self.unread_count = 0
        self.last_error: Optional[str] = None
        self.last_refreshed_at: Optional[datetime] = None
        self.loaded = False
        self._command_locks: dict[str, list] = {}   # id -> [lock, users]
        self._in_flight: dict[str, int] = {}
        for alert in alerts:
            self._alerts[alert.id] = alert
            self._order.append(alert.id)

    def __len__(self):
        return len(self._order)

    def __contains__(self, alert_id: str):
        return alert_id in self._alerts

    def get(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    def snapshot(self) -> list[Alert]:
        """Point-in-time list, safe to iterate while the set keeps changing."""
        return [self._alerts[i] for i in self._order]

    def replace(self, alert: Alert):
        """Swap an already-known alert in place. Caller holds `lock`."""
        if alert.id not in self._alerts:
            raise KeyError(alert.id)
        self._alerts[alert.id] = alert

    def prepend(self, alerts: list[Alert]):
        """Insert unknown alerts at the front, keeping their relative order. Caller holds `lock`."""
        fresh = [a for a in alerts if a.id not in self._alerts]
        for alert in fresh:
            self._alerts[alert.id] = alert
        self._order[:0] = [a.id for a in fresh]
        return len(fresh)

    def mark_read(self, count: int = 1):
        self.unread_count = max(0, self.unread_count - count)

    @asynccontextmanager
    async def command_lock(self, alert_id: str):
        """Serialises commands on one alert so racing operators see each other's result.

        The lock is dropped once nobody holds or waits for it.
        """
        entry = self._command_locks.get(alert_id)
        if entry is None:
            entry = self._command_locks[alert_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if not entry[1]:
                del self._command_locks[alert_id]

    def held_command_locks(self) -> int:
        return len(self._command_locks)

    @asynccontextmanager
    async def in_flight(self, alert_id: str):
        self._in_flight[alert_id] = self._in_flight.get(alert_id, 0) + 1
        try:
            yield
        finally:
            remaining = self._in_flight[alert_id] - 1
            if remaining:
                self._in_flight[alert_id] = remaining
            else:
                del self._in_flight[alert_id]

    def is_in_flight(self, alert_id: str) -> bool:
        return alert_id in self._in_flight
