# app/services/sql_alert_repository.py
"""
Alert Store backed by the local database (ALERT_STORE_BACKEND=database).

Same surface as HttpAlertRepository. Each call opens a fresh session and commits
or rolls back as a unit, so a transition is either fully stored or not at all.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.database import SessionLocal
from app.models.alert import AlertRecord
from app.models.alert_history import AlertHistoryRecord
from app.models.alert_media import AlertScreenshotRecord, AlertVideoClipRecord
from app.models.alert_note import AlertNoteRecord
from app.models.escalation_rule import EscalationRuleRecord
from app.schemas.alert import (
    Alert, AlertFilters, AlertHistoryEntry, AlertNote, AlertScreenshot, AlertVideoClip,
)
from app.schemas.escalation_rule import EscalationRule
from app.services.alert_repository import AlertRepository
from app.services.errors import NotFound, StoreUnavailable, ValidationFailed
from app.utils.logger import get_logger

logger = get_logger(__name__)

_LOCATION_COLUMNS = ("latitude", "longitude", "address")
_ALERT_COLUMNS = {c.name for c in AlertRecord.__table__.columns}


def _plain(value):
    return value.value if isinstance(value, Enum) else value


def _to_alert(row: AlertRecord) -> Alert:
    data = {name: getattr(row, name) for name in _ALERT_COLUMNS if name not in _LOCATION_COLUMNS}
    if row.latitude is not None and row.longitude is not None:
        data["location"] = {"latitude": row.latitude, "longitude": row.longitude, "address": row.address}
    data["notes"] = [AlertNote.model_validate(n) for n in row.notes]
    data["history"] = [AlertHistoryEntry.model_validate(h) for h in row.history]
    data["screenshots"] = [AlertScreenshot.model_validate(s) for s in row.screenshots]
    data["video_clips"] = [AlertVideoClip.model_validate(c) for c in row.video_clips]
    return Alert.model_validate(data)


def _note_row(alert_id: str, note: AlertNote) -> AlertNoteRecord:
    return AlertNoteRecord(id=note.id, alert_id=alert_id, user_id=note.user_id, user_name=note.user_name,
                           content=note.content, is_internal=note.is_internal, created_at=note.created_at)


def _history_row(alert_id: str, entry: AlertHistoryEntry) -> AlertHistoryRecord:
    return AlertHistoryRecord(id=entry.id, alert_id=alert_id, action=entry.action.value,
                              user_id=entry.user_id, user_name=entry.user_name,
                              old_value=entry.old_value, new_value=entry.new_value,
                              details=entry.details, timestamp=entry.timestamp)


class SqlAlertRepository(AlertRepository):
    def __init__(self, session_factory: sessionmaker = SessionLocal, max_workers: int = None):
        self._session_factory = session_factory
        # SQLite in-memory databases share one connection; pass max_workers=1 for those
        self._executor = ThreadPoolExecutor(max_workers=max_workers or settings.DB_WORKERS,
                                            thread_name_prefix="alert-db")

    async def _run(self, fn, *args):
        """Sessions block, so session work runs on the repository's own threads."""
        return await asyncio.get_running_loop().run_in_executor(self._executor, fn, *args)

    async def list_alerts(self, filters: Optional[AlertFilters] = None) -> list[Alert]:
        return await self._run(self._list_alerts, filters)

    async def get_alert(self, alert_id: str) -> Alert:
        return await self._run(self._get_alert, alert_id)

    async def get_history(self, alert_id: str) -> list[AlertHistoryEntry]:
        return await self._run(self._get_history, alert_id)

    async def persist_transition(self, alert_id: str, kind: str, fields: dict,
                                 history: list[AlertHistoryEntry],
                                 notes: list[AlertNote] = ()) -> Alert:
        return await self._run(self._persist_transition, alert_id, kind, fields, history, notes)

    async def append_note(self, alert_id: str, note: AlertNote) -> AlertNote:
        return await self._run(self._append_note, alert_id, note)

    async def get_evidence(self, alert_id: str):
        return await self._run(self._get_evidence, alert_id)

    async def list_escalation_rules(self) -> list[EscalationRule]:
        return await self._run(self._list_escalation_rules)

    async def save_alert(self, alert: Alert) -> Alert:
        """Insert or overwrite the alert row (ingest and seeding). Notes and history are append-only."""
        return await self._run(self._save_alert, alert)

    async def ping(self) -> bool:
        return await self._run(self._ping)

    async def close(self):
        self._executor.shutdown(wait=False)

    # ── Session work ──────────────────────────────────────────────────────────

    def _load(self, db, alert_id: str) -> AlertRecord:
        row = db.get(AlertRecord, alert_id)
        if row is None:
            raise NotFound(f"Alert {alert_id} not found", alert_id)
        return row

    def _list_alerts(self, filters: Optional[AlertFilters] = None) -> list[Alert]:
        db = self._session_factory()
        try:
            q = db.query(AlertRecord)
            if filters is not None:
                if filters.status:
                    q = q.filter(AlertRecord.status.in_([_plain(s) for s in filters.status]))
                if filters.severity:
                    q = q.filter(AlertRecord.severity.in_([_plain(s) for s in filters.severity]))
                if filters.alert_type:
                    q = q.filter(AlertRecord.alert_type.in_([_plain(t) for t in filters.alert_type]))
                if filters.vehicle_ids:
                    q = q.filter(AlertRecord.vehicle_id.in_(filters.vehicle_ids))
                if filters.driver_ids:
                    q = q.filter(AlertRecord.driver_id.in_(filters.driver_ids))
                if filters.date_from:
                    q = q.filter(AlertRecord.timestamp >= filters.date_from)
                if filters.date_to:
                    q = q.filter(AlertRecord.timestamp <= filters.date_to)
            return [_to_alert(row) for row in q.order_by(AlertRecord.timestamp.desc()).all()]
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Database error listing alerts: {e}") from e
        finally:
            db.close()

    def _get_alert(self, alert_id: str) -> Alert:
        db = self._session_factory()
        try:
            return _to_alert(self._load(db, alert_id))
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Database error loading alert {alert_id}: {e}", alert_id) from e
        finally:
            db.close()

    def _get_history(self, alert_id: str) -> list[AlertHistoryEntry]:
        db = self._session_factory()
        try:
            self._load(db, alert_id)
            rows = (db.query(AlertHistoryRecord)
                    .filter(AlertHistoryRecord.alert_id == alert_id)
                    .order_by(AlertHistoryRecord.seq).all())
            return [AlertHistoryEntry.model_validate(r) for r in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Database error loading history of {alert_id}: {e}", alert_id) from e
        finally:
            db.close()

    def _persist_transition(self, alert_id: str, kind: str, fields: dict,
                                 history: list[AlertHistoryEntry],
                                 notes: list[AlertNote] = ()) -> Alert:
        unknown = set(fields) - _ALERT_COLUMNS
        if unknown:
            raise ValidationFailed(f"Unknown alert fields: {sorted(unknown)}", alert_id)

        db = self._session_factory()
        try:
            row = self._load(db, alert_id)
            for name, value in fields.items():
                setattr(row, name, _plain(value))
            row.notes.extend(_note_row(alert_id, note) for note in notes)
            row.history.extend(_history_row(alert_id, entry) for entry in history)
            db.commit()
            db.refresh(row)
            logger.debug(f"Persisted {kind} for alert {alert_id}")
            return _to_alert(row)
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreUnavailable(f"Database error persisting {kind} on {alert_id}: {e}", alert_id) from e
        finally:
            db.close()

    def _append_note(self, alert_id: str, note: AlertNote) -> AlertNote:
        db = self._session_factory()
        try:
            row = self._load(db, alert_id)
            existing = db.get(AlertNoteRecord, note.id)
            if existing is None:
                row.notes.append(_note_row(alert_id, note))
                db.commit()
                return note
            return AlertNote.model_validate(existing)
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreUnavailable(f"Database error adding note to {alert_id}: {e}", alert_id) from e
        finally:
            db.close()

    def _get_evidence(self, alert_id: str):
        db = self._session_factory()
        try:
            row = self._load(db, alert_id)
            return ([AlertScreenshot.model_validate(s) for s in row.screenshots],
                    [AlertVideoClip.model_validate(c) for c in row.video_clips])
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Database error loading evidence of {alert_id}: {e}", alert_id) from e
        finally:
            db.close()

    def _list_escalation_rules(self) -> list[EscalationRule]:
        db = self._session_factory()
        try:
            rows = db.query(EscalationRuleRecord).all()
            return [EscalationRule.model_validate(r) for r in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Database error loading escalation rules: {e}") from e
        finally:
            db.close()

    def _save_alert(self, alert: Alert) -> Alert:
        values = alert.model_dump(exclude={"location", "notes", "history", "screenshots", "video_clips"})
        values = {k: _plain(v) for k, v in values.items()}
        if alert.location is not None:
            values.update(latitude=alert.location.latitude, longitude=alert.location.longitude,
                          address=alert.location.address)

        db = self._session_factory()
        try:
            row = db.get(AlertRecord, alert.id)
            if row is None:
                row = AlertRecord(**values)
                db.add(row)
            else:
                for name, value in values.items():
                    setattr(row, name, value)
            known_notes = {n.id for n in row.notes}
            known_history = {h.id for h in row.history}
            known_shots = {s.id for s in row.screenshots}
            known_clips = {c.id for c in row.video_clips}
            row.notes.extend(_note_row(alert.id, n) for n in alert.notes if n.id not in known_notes)
            row.history.extend(_history_row(alert.id, h) for h in alert.history if h.id not in known_history)
            row.screenshots.extend(AlertScreenshotRecord(**s.model_dump())
                                   for s in alert.screenshots if s.id not in known_shots)
            row.video_clips.extend(AlertVideoClipRecord(**c.model_dump())
                                   for c in alert.video_clips if c.id not in known_clips)
            db.commit()
            db.refresh(row)
            return _to_alert(row)
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreUnavailable(f"Database error saving alert {alert.id}: {e}", alert.id) from e
        finally:
            db.close()

    def _ping(self) -> bool:
        db = self._session_factory()
        try:
            db.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Database ping failed: {e}")
            return False
        finally:
            db.close()
