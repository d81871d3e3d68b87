# app/services/sync_engine.py
"""
Keeps the in-memory alert set consistent with the Alert Store.

Three inputs feed the set:
  1. periodic full/filtered refresh       → refresh()
  2. push/poll events for single alerts   → handle_event() / consume()
  3. completed local commands             → AlertService writes the store echo directly

Merge rule (merge_alert): by id, newest `updated_at` wins, ties go to the store.
While a local command is in flight for an alert, the store must be strictly newer
to win, so a refresh racing the command cannot revert it.

A failed refresh keeps the last-known-good set and records the error; the next
tick is a fresh attempt.
"""

import asyncio
from typing import Optional

from app.config import settings
from app.schemas.alert import Alert, AlertFilters, utcnow
from app.services.alert_repository import AlertRepository
from app.services.alert_set import AlertSet
from app.services.errors import AlertEngineError, NotFound, StoreUnavailable
from app.services.event_source import AlertEventSource
from app.utils.logger import get_logger

logger = get_logger(__name__)


def _union_log(remote: list, local: list) -> list:
    """Append-only logs never shrink: keep remote order, then any local entries it lacks."""
    known = {item.id for item in remote}
    missing = [item for item in local if item.id not in known]
    if not missing:
        return remote
    return [*remote, *missing]


def merge_alert(local: Optional[Alert], incoming: Alert, in_flight: bool = False) -> Alert:
    if local is None:
        return incoming
    if in_flight:
        remote_wins = incoming.updated_at > local.updated_at
    else:
        remote_wins = incoming.updated_at >= local.updated_at
    if not remote_wins:
        return local

    history = _union_log(incoming.history, local.history)
    notes = _union_log(incoming.notes, local.notes)
    if history is incoming.history and notes is incoming.notes:
        return incoming
    return incoming.model_copy(update={"history": history, "notes": notes})


class SyncEngine:
    def __init__(self, alert_set: AlertSet, repository: AlertRepository,
                 interval: float = None, timeout: float = None):
        self.alert_set = alert_set
        self.repository = repository
        self.interval = interval if interval is not None else settings.SYNC_INTERVAL_SECONDS
        self.timeout = timeout if timeout is not None else settings.REFRESH_TIMEOUT_SECONDS

    def _merge_one(self, incoming: Alert) -> bool:
        """Merge a known alert. Caller holds the set lock. Returns True if it changed."""
        local = self.alert_set.get(incoming.id)
        merged = merge_alert(local, incoming, in_flight=self.alert_set.is_in_flight(incoming.id))
        if merged is local:
            return False
        self.alert_set.replace(merged)
        return True

    async def refresh(self, filters: AlertFilters = None) -> bool:
        """Pull alerts from the store and merge them. Returns False on failure."""
        try:
            incoming = await asyncio.wait_for(self.repository.list_alerts(filters), self.timeout)
        except asyncio.TimeoutError:
            self.alert_set.last_error = f"Alert refresh timed out after {self.timeout}s"
            logger.warning(self.alert_set.last_error)
            return False
        except AlertEngineError as e:
            self.alert_set.last_error = e.message
            logger.warning(f"Alert refresh failed: {e.message}")
            return False

        updated, fresh, seen = 0, [], set()
        async with self.alert_set.lock:
            for alert in incoming:
                if alert.id in seen:
                    continue
                seen.add(alert.id)
                if alert.id in self.alert_set:
                    updated += self._merge_one(alert)
                else:
                    fresh.append(alert)
            inserted = self.alert_set.prepend(fresh)
            if self.alert_set.loaded:
                self.alert_set.unread_count += inserted
            self.alert_set.loaded = True
            self.alert_set.last_error = None
            self.alert_set.last_refreshed_at = utcnow()

        logger.info(f"Alert refresh: {len(incoming)} fetched, {inserted} new, {updated} updated")
        return True

    async def handle_event(self, alert: Alert) -> Alert:
        """Merge one pushed alert. Returns the version now held in the set."""
        async with self.alert_set.lock:
            if alert.id in self.alert_set:
                if self._merge_one(alert):
                    logger.debug(f"Push update merged for alert {alert.id}")
            else:
                self.alert_set.prepend([alert])
                self.alert_set.unread_count += 1
                logger.info(f"New alert {alert.id} [{alert.severity.value}] {alert.alert_type.value} "
                            f"vehicle={alert.vehicle_registration or alert.vehicle_id}")
            return self.alert_set.get(alert.id)

    async def refresh_evidence(self, alert_id: str) -> Alert:
        """Re-pull screenshots and clips for one alert. Evidence belongs to the store."""
        if alert_id not in self.alert_set:
            raise NotFound(f"Alert {alert_id} not found", alert_id)
        try:
            screenshots, clips = await asyncio.wait_for(
                self.repository.get_evidence(alert_id), self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Evidence refresh for alert {alert_id} timed out after {self.timeout}s")
            raise StoreUnavailable(f"Evidence refresh timed out after {self.timeout}s", alert_id) from e
        async with self.alert_set.lock:
            local = self.alert_set.get(alert_id)
            updated = local.model_copy(update={"screenshots": screenshots, "video_clips": clips})
            self.alert_set.replace(updated)
        return updated

    async def run_forever(self):
        """Periodic full refresh. Never raises; each tick is independent."""
        logger.info(f"Alert sync started (every {self.interval}s)")
        while True:
            try:
                await self.refresh()
            except Exception as e:
                logger.error(f"Alert sync tick crashed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    async def consume(self, source: AlertEventSource):
        """Drain a push or poll feed into the set until the source ends."""
        async for alert in source.events():
            try:
                await self.handle_event(alert)
            except Exception as e:
                logger.error(f"Failed to merge pushed alert {alert.id}: {e}", exc_info=True)
