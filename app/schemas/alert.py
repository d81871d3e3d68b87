# app/schemas/alert.py
"""
In-memory alert model shared by the state machine, sync engine and query engine.
Mirrors the Alert Store's JSON payloads; all timestamps are normalised to UTC.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class AlertStatus(str, Enum):
    NEW = "new"                      # Just triggered, not acknowledged
    ACKNOWLEDGED = "acknowledged"    # Seen by operator
    INVESTIGATING = "investigating"  # Under review
    ESCALATED = "escalated"          # Sent to management
    RESOLVED = "resolved"            # Issue resolved
    CLOSED = "closed"                # Officially closed with notes


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class AlertType(str, Enum):
    HARSH_BRAKING = "harsh_braking"
    SPEEDING = "speeding"
    COLLISION_DETECTED = "collision_detected"
    LANE_DEPARTURE = "lane_departure"
    DRIVER_DISTRACTION = "driver_distraction"
    DROWSINESS = "drowsiness"
    UNAUTHORIZED_STOP = "unauthorized_stop"
    GEOFENCE_VIOLATION = "geofence_violation"
    VEHICLE_TAMPER = "vehicle_tamper"
    CAMERA_OFFLINE = "camera_offline"
    SYSTEM_ERROR = "system_error"
    CUSTOM = "custom"


class AlertAction(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    ASSIGNED = "assigned"
    NOTE_ADDED = "note_added"
    STATUS_CHANGED = "status_changed"
    ESCALATED = "escalated"
    SCREENSHOT_CAPTURED = "screenshot_captured"
    VIDEO_REVIEWED = "video_reviewed"
    RESOLVED = "resolved"
    CLOSED = "closed"


# Lower rank sorts first
SEVERITY_RANK = {
    AlertSeverity.CRITICAL: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.MEDIUM: 3,
    AlertSeverity.LOW: 4,
    AlertSeverity.INFO: 5,
}

TERMINAL_STATUSES = frozenset({AlertStatus.CLOSED})
DONE_STATUSES = frozenset({AlertStatus.RESOLVED, AlertStatus.CLOSED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Naive datetimes from the store are UTC; aware ones are converted."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


class _UtcModel(BaseModel):
    @field_validator("*", mode="after")
    @classmethod
    def _normalise_datetimes(cls, value):
        return as_utc(value)

    class Config:
        from_attributes = True


class GeoLocation(BaseModel):
    latitude: float
    longitude: float
    address: Optional[str] = None


class AlertScreenshot(_UtcModel):
    id: str
    alert_id: str
    camera_id: str
    camera_name: Optional[str] = None
    url: str
    thumbnail_url: Optional[str] = None
    timestamp: Optional[datetime] = None
    capture_offset: float = 0       # Seconds relative to alert (-5, 0, +5)


class AlertVideoClip(_UtcModel):
    id: str
    alert_id: str
    camera_id: str
    camera_name: Optional[str] = None
    url: str
    thumbnail_url: Optional[str] = None
    duration: float = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    format: Optional[str] = None


class AlertNote(_UtcModel):
    id: str
    alert_id: str
    user_id: str
    user_name: Optional[str] = None
    content: str
    is_internal: bool = False
    created_at: datetime

    class Config:
        from_attributes = True
        frozen = True


class AlertHistoryEntry(_UtcModel):
    id: str
    alert_id: str
    action: AlertAction
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    details: Optional[str] = None
    timestamp: datetime

    class Config:
        from_attributes = True
        frozen = True


class Alert(_UtcModel):
    id: str

    alert_type: AlertType
    severity: AlertSeverity
    status: AlertStatus = AlertStatus.NEW
    title: str = ""
    description: str = ""

    vehicle_id: str
    vehicle_registration: Optional[str] = None
    driver_id: Optional[str] = None
    driver_name: Optional[str] = None

    timestamp: datetime              # When the triggering event happened
    location: Optional[GeoLocation] = None

    camera_ids: list[str] = Field(default_factory=list)
    screenshots: list[AlertScreenshot] = Field(default_factory=list)
    video_clips: list[AlertVideoClip] = Field(default_factory=list)

    assigned_to: Optional[str] = None
    assigned_to_name: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    acknowledged_by_name: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_by_name: Optional[str] = None
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    closed_by_name: Optional[str] = None

    escalated: bool = False
    escalated_at: Optional[datetime] = None
    escalated_to: Optional[str] = None
    escalated_to_name: Optional[str] = None
    escalation_reason: Optional[str] = None

    notes: list[AlertNote] = Field(default_factory=list)
    history: list[AlertHistoryEntry] = Field(default_factory=list)

    requires_action: bool = False
    auto_resolved: bool = False
    false_positive: bool = False
    tags: list[str] = Field(default_factory=list)

    created_at: datetime
    updated_at: datetime

    @property
    def is_open(self) -> bool:
        return self.status not in DONE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AlertFilters(_UtcModel):
    """Conjunctive filter. Empty lists and None mean "no constraint"."""
    status: list[AlertStatus] = Field(default_factory=list)
    severity: list[AlertSeverity] = Field(default_factory=list)
    alert_type: list[AlertType] = Field(default_factory=list)
    vehicle_ids: list[str] = Field(default_factory=list)
    driver_ids: list[str] = Field(default_factory=list)
    assigned_to: list[str] = Field(default_factory=list)
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    escalated_only: bool = False
    requires_action_only: bool = False
    search: Optional[str] = None


class VehicleAlertCount(BaseModel):
    vehicle_id: str
    vehicle_registration: Optional[str] = None
    count: int


class DriverAlertCount(BaseModel):
    driver_id: str
    driver_name: Optional[str] = None
    count: int


class AlertStatistics(BaseModel):
    total_alerts: int = 0
    new_alerts: int = 0
    acknowledged_alerts: int = 0
    investigating_alerts: int = 0
    escalated_alerts: int = 0
    critical_alerts: int = 0
    resolved_today: int = 0
    unattended_alerts: int = 0
    average_response_time_minutes: float = 0.0
    alerts_by_type: dict[str, int] = Field(default_factory=dict)
    alerts_by_severity: dict[str, int] = Field(default_factory=dict)
    alerts_by_vehicle: list[VehicleAlertCount] = Field(default_factory=list)
    alerts_by_driver: list[DriverAlertCount] = Field(default_factory=list)


class AlertQueryResult(BaseModel):
    alerts: list[Alert]
    statistics: AlertStatistics
    total: int
