# app/schemas/alert_commands.py
"""Request bodies for the alert command endpoints."""

from pydantic import BaseModel, Field
from typing import Optional

from app.schemas.alert import Alert, AlertStatus


class AcknowledgeRequest(BaseModel):
    user_id: str
    user_name: Optional[str] = None


class StatusChangeRequest(BaseModel):
    status: AlertStatus
    user_id: str
    user_name: Optional[str] = None
    notes: Optional[str] = None          # Required when status == resolved
    escalate_to: Optional[str] = None    # Required when status == escalated
    reason: Optional[str] = None


class AddNoteRequest(BaseModel):
    content: str
    user_id: str
    user_name: Optional[str] = None
    is_internal: bool = False


class EscalateRequest(BaseModel):
    escalate_to: str
    reason: str = "Escalated by operator"
    user_id: str
    escalate_to_name: Optional[str] = None


class CloseRequest(BaseModel):
    closing_notes: str
    user_id: str
    user_name: Optional[str] = None
    false_positive: bool = False


class ResolveRequest(BaseModel):
    notes: str
    user_id: str
    user_name: Optional[str] = None


class AssignRequest(BaseModel):
    assigned_to: str
    assigned_to_name: Optional[str] = None
    user_id: str
    expected_assignee: Optional[str] = None   # Guard against concurrent reassignment


class MarkFalseRequest(BaseModel):
    reason: str
    user_id: str


class ReviewRequest(BaseModel):
    kind: str = "video_reviewed"              # video_reviewed | screenshot_captured
    user_id: str
    camera_id: Optional[str] = None


class BulkAcknowledgeRequest(BaseModel):
    alert_ids: list[str] = Field(default_factory=list)
    user_id: str


class BulkAcknowledgeResult(BaseModel):
    alert_id: str
    success: bool
    error: Optional[str] = None
    alert: Optional[Alert] = None
