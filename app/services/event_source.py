# app/services/event_source.py
"""
Real-time alert feeds for the sync engine.

Either transport yields Alert objects; the merge downstream is idempotent and
drops stale versions, so duplicate or out-of-order delivery is harmless.
  - QueueEventSource:   push. The webhook (POST /alerts/events) publishes into it.
  - PollingEventSource: pull. Polls the store's active alerts on a fixed interval.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator

from app.config import settings
from app.schemas.alert import Alert, AlertFilters, AlertStatus
from app.services.alert_repository import AlertRepository
from app.services.errors import AlertEngineError
from app.utils.logger import get_logger

logger = get_logger(__name__)

ACTIVE_FILTER = AlertFilters(status=[
    AlertStatus.NEW, AlertStatus.ACKNOWLEDGED, AlertStatus.INVESTIGATING, AlertStatus.ESCALATED,
])


class AlertEventSource(ABC):
    @abstractmethod
    def events(self) -> AsyncIterator[Alert]:
        ...


class QueueEventSource(AlertEventSource):
    _STOP = object()

    def __init__(self, maxsize: int = 1000):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._stopped = False

    def publish(self, alert: Alert):
        """Non-blocking; drops the event when the consumer is far behind."""
        try:
            self._queue.put_nowait(alert)
        except asyncio.QueueFull:
            logger.warning(f"Event queue full, dropping push for alert {alert.id} (next refresh will catch up)")

    def stop(self):
        """Ends events() after the pushes already queued. Safe to call twice."""
        if self._stopped:
            return
        self._stopped = True
        try:
            self._queue.put_nowait(self._STOP)
        except asyncio.QueueFull:
            # make room for the sentinel; the next refresh catches up on the dropped push
            dropped = self._queue.get_nowait()
            logger.warning(f"Event queue full at shutdown, dropping push for alert {dropped.id}")
            self._queue.put_nowait(self._STOP)

    async def events(self):
        while True:
            item = await self._queue.get()
            if item is self._STOP:
                return
            yield item


class PollingEventSource(AlertEventSource):
    def __init__(self, repository: AlertRepository, interval: float = None,
                 filters: AlertFilters = ACTIVE_FILTER):
        self.repository = repository
        self.interval = interval if interval is not None else settings.POLL_INTERVAL_SECONDS
        self.filters = filters

    async def events(self):
        while True:
            try:
                alerts = await self.repository.list_alerts(self.filters)
            except AlertEngineError as e:
                logger.warning(f"Active-alert poll failed: {e.message}. Retry in {self.interval}s")
                alerts = []
            for alert in alerts:
                yield alert
            await asyncio.sleep(self.interval)
