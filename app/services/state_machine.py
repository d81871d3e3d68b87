# app/services/state_machine.py
"""
Alert lifecycle reducer.

apply(alert, command) validates a command against the current alert and returns a
Transition: the new alert plus the exact field changes, notes and history entries
to persist. The input alert is never mutated and nothing here does I/O.

Status graph:
    new → acknowledged → investigating → escalated → resolved → closed
    any non-terminal status may move to any other non-closed status; closing needs notes
    escalated is only reachable from new / acknowledged / investigating
    resolved is reachable from new / acknowledged / investigating / escalated (with notes)
    escalated → new | acknowledged declines the escalation and clears the flag

Repeating a command that already took effect (second acknowledge, escalate on an
escalated alert, close on a closed alert) returns Transition(changed=False).
Illegal requests raise InvalidTransition / ValidationFailed.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from app.config import settings
from app.schemas.alert import (
    Alert, AlertAction, AlertHistoryEntry, AlertNote, AlertStatus, as_utc, utcnow,
)
from app.services.errors import Conflict, InvalidTransition, ValidationFailed

S = AlertStatus

ALLOWED_TRANSITIONS = {
    S.NEW:           {S.ACKNOWLEDGED, S.INVESTIGATING, S.ESCALATED, S.RESOLVED, S.CLOSED},
    S.ACKNOWLEDGED:  {S.NEW, S.INVESTIGATING, S.ESCALATED, S.RESOLVED, S.CLOSED},
    S.INVESTIGATING: {S.NEW, S.ACKNOWLEDGED, S.ESCALATED, S.RESOLVED, S.CLOSED},
    S.ESCALATED:     {S.NEW, S.ACKNOWLEDGED, S.INVESTIGATING, S.RESOLVED, S.CLOSED},
    S.RESOLVED:      {S.NEW, S.ACKNOWLEDGED, S.INVESTIGATING, S.CLOSED},
    S.CLOSED:        set(),
}

ESCALATABLE = {S.NEW, S.ACKNOWLEDGED, S.INVESTIGATING}
RESOLVABLE = {S.NEW, S.ACKNOWLEDGED, S.INVESTIGATING, S.ESCALATED}
REVIEW_ACTIONS = {AlertAction.VIDEO_REVIEWED, AlertAction.SCREENSHOT_CAPTURED}

_UNSET = object()


def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return S(target) in ALLOWED_TRANSITIONS[S(current)]


# ── Commands ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Acknowledge:
    actor: str
    actor_name: Optional[str] = None


@dataclass(frozen=True)
class ChangeStatus:
    status: AlertStatus
    actor: str
    actor_name: Optional[str] = None
    extra: dict = field(default_factory=dict)   # notes / escalate_to / reason


@dataclass(frozen=True)
class AddNote:
    content: str
    actor: str
    actor_name: Optional[str] = None
    is_internal: bool = False
    note_id: Optional[str] = None


@dataclass(frozen=True)
class Escalate:
    target: str
    reason: str
    actor: str
    target_name: Optional[str] = None
    actor_name: Optional[str] = None


@dataclass(frozen=True)
class Close:
    notes: str
    actor: str
    actor_name: Optional[str] = None
    false_positive: bool = False


@dataclass(frozen=True)
class Resolve:
    notes: str
    actor: str
    actor_name: Optional[str] = None


@dataclass(frozen=True)
class Assign:
    assignee: str
    actor: str
    assignee_name: Optional[str] = None
    expected_assignee: object = _UNSET


@dataclass(frozen=True)
class MarkFalsePositive:
    reason: str
    actor: str
    actor_name: Optional[str] = None


@dataclass(frozen=True)
class RecordReview:
    kind: AlertAction
    actor: str
    camera_id: Optional[str] = None


Command = Union[Acknowledge, ChangeStatus, AddNote, Escalate, Close, Resolve,
                Assign, MarkFalsePositive, RecordReview]


@dataclass
class Transition:
    kind: str
    alert: Alert
    changed: bool
    fields: dict = field(default_factory=dict)
    history: list = field(default_factory=list)
    notes: list = field(default_factory=list)


# ── Helpers ──────────────────────────────────────────────────────────────────

def _new_id() -> str:
    return uuid.uuid4().hex


def _entry(alert: Alert, action: AlertAction, actor: str, actor_name: Optional[str],
           now: datetime, old=None, new=None, details=None) -> AlertHistoryEntry:
    return AlertHistoryEntry(
        id=_new_id(), alert_id=alert.id, action=action,
        user_id=actor, user_name=actor_name,
        old_value=None if old is None else str(getattr(old, "value", old)),
        new_value=None if new is None else str(getattr(new, "value", new)),
        details=details, timestamp=now,
    )


def _note(alert: Alert, content: str, actor: str, actor_name: Optional[str], now: datetime,
          is_internal: bool = False, note_id: Optional[str] = None) -> AlertNote:
    return AlertNote(
        id=note_id or _new_id(), alert_id=alert.id, user_id=actor, user_name=actor_name,
        content=content, is_internal=is_internal, created_at=now,
    )


def _unchanged(kind: str, alert: Alert) -> Transition:
    return Transition(kind=kind, alert=alert, changed=False)


def _finish(kind: str, alert: Alert, now: datetime, fields: dict,
            history: list, notes: Optional[list] = None) -> Transition:
    notes = notes or []
    fields = dict(fields)
    fields["updated_at"] = max(alert.updated_at, now)
    update = dict(fields)
    update["history"] = [*alert.history, *history]
    if notes:
        update["notes"] = [*alert.notes, *notes]
    return Transition(kind=kind, alert=alert.model_copy(update=update), changed=True,
                      fields=fields, history=history, notes=notes)


def _require_notes(alert: Alert, notes: Optional[str], min_length: int, what: str) -> str:
    text = (notes or "").strip()
    if len(text) < min_length:
        raise ValidationFailed(
            f"{what} notes must be at least {min_length} characters", alert.id)
    return text


def _reject(alert: Alert, target, message: str = None):
    raise InvalidTransition(
        message or f"Cannot move alert {alert.id} from {alert.status.value} to {S(target).value}",
        alert.id, current=alert.status, requested=S(target),
    )


# ── Reducers ─────────────────────────────────────────────────────────────────

def _acknowledge(alert: Alert, cmd: Acknowledge, now: datetime, min_len: int) -> Transition:
    if alert.status == S.ACKNOWLEDGED:
        return _unchanged("acknowledge", alert)
    if alert.status != S.NEW:
        # Someone already acknowledged and moved the alert on
        if alert.acknowledged_at is not None and not alert.is_terminal:
            return _unchanged("acknowledge", alert)
        _reject(alert, S.ACKNOWLEDGED)

    fields = {
        "status": S.ACKNOWLEDGED,
        "acknowledged_at": now,
        "acknowledged_by": cmd.actor,
        "acknowledged_by_name": cmd.actor_name,
    }
    history = [_entry(alert, AlertAction.ACKNOWLEDGED, cmd.actor, cmd.actor_name, now,
                      old=alert.status, new=S.ACKNOWLEDGED)]
    return _finish("acknowledge", alert, now, fields, history)


def _change_status(alert: Alert, cmd: ChangeStatus, now: datetime, min_len: int) -> Transition:
    target = S(cmd.status)
    extra = cmd.extra or {}

    if alert.is_terminal:
        _reject(alert, target, f"Alert {alert.id} is closed")
    if target == alert.status:
        return _unchanged("status_changed", alert)
    if target == S.CLOSED:
        _reject(alert, target, "Closing requires notes; use close()")
    if target not in ALLOWED_TRANSITIONS[alert.status]:
        _reject(alert, target)

    # Targets with their own side effects go through their own reducer
    if target == S.ESCALATED:
        return _escalate(alert, Escalate(
            target=extra.get("escalate_to") or "",
            reason=extra.get("reason") or "Escalated from dashboard",
            actor=cmd.actor, actor_name=cmd.actor_name,
            target_name=extra.get("escalate_to_name"),
        ), now, min_len)
    if target == S.RESOLVED:
        return _resolve(alert, Resolve(notes=extra.get("notes"), actor=cmd.actor,
                                       actor_name=cmd.actor_name), now, min_len)
    if target == S.ACKNOWLEDGED and alert.status == S.NEW:
        return _acknowledge(alert, Acknowledge(cmd.actor, cmd.actor_name), now, min_len)

    fields = {"status": target}
    details = extra.get("reason")
    if alert.status == S.ESCALATED and target in (S.NEW, S.ACKNOWLEDGED):
        fields["escalated"] = False
        details = details or "Escalation declined"
    history = [_entry(alert, AlertAction.STATUS_CHANGED, cmd.actor, cmd.actor_name, now,
                      old=alert.status, new=target, details=details)]
    return _finish("status_changed", alert, now, fields, history)


def _add_note(alert: Alert, cmd: AddNote, now: datetime, min_len: int) -> Transition:
    content = (cmd.content or "").strip()
    if not content:
        raise ValidationFailed("Note content is required", alert.id)
    if cmd.note_id and any(n.id == cmd.note_id for n in alert.notes):
        return _unchanged("note_added", alert)

    note = _note(alert, content, cmd.actor, cmd.actor_name, now,
                 is_internal=cmd.is_internal, note_id=cmd.note_id)
    history = [_entry(alert, AlertAction.NOTE_ADDED, cmd.actor, cmd.actor_name, now,
                      new=note.id, details="internal" if cmd.is_internal else None)]
    return _finish("note_added", alert, now, {}, history, [note])


def _escalate(alert: Alert, cmd: Escalate, now: datetime, min_len: int) -> Transition:
    if not (cmd.target or "").strip():
        raise ValidationFailed("Escalation target is required", alert.id)
    if alert.status == S.ESCALATED:
        return _unchanged("escalated", alert)
    if alert.status not in ESCALATABLE:
        _reject(alert, S.ESCALATED)

    fields = {
        "status": S.ESCALATED,
        "escalated": True,
        "escalated_at": now,
        "escalated_to": cmd.target.strip(),
        "escalated_to_name": cmd.target_name,
        "escalation_reason": cmd.reason,
    }
    history = [_entry(alert, AlertAction.ESCALATED, cmd.actor, cmd.actor_name, now,
                      old=alert.status, new=S.ESCALATED,
                      details=f"Escalated to {cmd.target.strip()}: {cmd.reason}")]
    return _finish("escalated", alert, now, fields, history)


def _close(alert: Alert, cmd: Close, now: datetime, min_len: int) -> Transition:
    text = _require_notes(alert, cmd.notes, min_len, "Closing")
    if alert.status == S.CLOSED:
        return _unchanged("closed", alert)

    note = _note(alert, text, cmd.actor, cmd.actor_name, now)
    fields = {
        "status": S.CLOSED,
        "closed_at": now,
        "closed_by": cmd.actor,
        "closed_by_name": cmd.actor_name,
    }
    if cmd.false_positive:
        fields["false_positive"] = True
    history = [
        _entry(alert, AlertAction.NOTE_ADDED, cmd.actor, cmd.actor_name, now, new=note.id),
        _entry(alert, AlertAction.CLOSED, cmd.actor, cmd.actor_name, now,
               old=alert.status, new=S.CLOSED,
               details="False positive" if cmd.false_positive else None),
    ]
    return _finish("closed", alert, now, fields, history, [note])


def _resolve(alert: Alert, cmd: Resolve, now: datetime, min_len: int) -> Transition:
    text = _require_notes(alert, cmd.notes, min_len, "Resolution")
    if alert.status == S.RESOLVED:
        return _unchanged("resolved", alert)
    if alert.status not in RESOLVABLE:
        _reject(alert, S.RESOLVED)

    note = _note(alert, text, cmd.actor, cmd.actor_name, now)
    fields = {"status": S.RESOLVED}
    if alert.resolved_at is None:
        fields.update(resolved_at=now, resolved_by=cmd.actor, resolved_by_name=cmd.actor_name)
    history = [
        _entry(alert, AlertAction.NOTE_ADDED, cmd.actor, cmd.actor_name, now, new=note.id),
        _entry(alert, AlertAction.RESOLVED, cmd.actor, cmd.actor_name, now,
               old=alert.status, new=S.RESOLVED),
    ]
    return _finish("resolved", alert, now, fields, history, [note])


def _assign(alert: Alert, cmd: Assign, now: datetime, min_len: int) -> Transition:
    assignee = (cmd.assignee or "").strip()
    if not assignee:
        raise ValidationFailed("Assignee is required", alert.id)
    if alert.is_terminal:
        _reject(alert, alert.status, f"Alert {alert.id} is closed")
    if cmd.expected_assignee is not _UNSET and cmd.expected_assignee != alert.assigned_to:
        raise Conflict(
            f"Alert {alert.id} was reassigned to {alert.assigned_to!r} in the meantime", alert.id)
    if assignee == alert.assigned_to:
        return _unchanged("assigned", alert)

    fields = {"assigned_to": assignee, "assigned_to_name": cmd.assignee_name}
    history = [_entry(alert, AlertAction.ASSIGNED, cmd.actor, None, now,
                      old=alert.assigned_to, new=assignee)]
    return _finish("assigned", alert, now, fields, history)


def _mark_false_positive(alert: Alert, cmd: MarkFalsePositive, now: datetime, min_len: int) -> Transition:
    return _close(alert, Close(notes=cmd.reason, actor=cmd.actor, actor_name=cmd.actor_name,
                               false_positive=True), now, min_len)


def _record_review(alert: Alert, cmd: RecordReview, now: datetime, min_len: int) -> Transition:
    try:
        action = AlertAction(cmd.kind)
    except ValueError:
        action = None
    if action not in REVIEW_ACTIONS:
        raise ValidationFailed(f"Unknown review kind: {cmd.kind!r}", alert.id)

    kind = action.value
    history = [_entry(alert, action, cmd.actor, None, now,
                      details=f"camera {cmd.camera_id}" if cmd.camera_id else None)]
    return _finish(kind, alert, now, {}, history)


_REDUCERS = {
    Acknowledge: _acknowledge,
    ChangeStatus: _change_status,
    AddNote: _add_note,
    Escalate: _escalate,
    Close: _close,
    Resolve: _resolve,
    Assign: _assign,
    MarkFalsePositive: _mark_false_positive,
    RecordReview: _record_review,
}


def apply(alert: Alert, command: Command, now: Optional[datetime] = None,
          min_notes_length: Optional[int] = None) -> Transition:
    """Validate `command` against `alert` and compute its outcome."""
    reducer = _REDUCERS.get(type(command))
    if reducer is None:
        raise TypeError(f"Unsupported command: {type(command).__name__}")
    now = as_utc(now) if now is not None else utcnow()
    if min_notes_length is None:
        min_notes_length = settings.CLOSING_NOTES_MIN_LENGTH
    return reducer(alert, command, now, min_notes_length)
