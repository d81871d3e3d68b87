# app/models/alert.py
"""
Alerts table — one row per safety/compliance alert.
Notes, history and evidence live in their own tables and are loaded through relationships.
"""

from sqlalchemy import Boolean, Column, DateTime, Float, JSON, String, Text
from sqlalchemy.orm import relationship
from app.database import Base


class AlertRecord(Base):
    __tablename__ = "alerts"

    id = Column(String(64), primary_key=True)
    alert_type = Column(String(50), nullable=False, index=True)
    severity = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="new", index=True)
    title = Column(String(255), nullable=False, default="")
    description = Column(Text, nullable=False, default="")

    vehicle_id = Column(String(64), nullable=False, index=True)
    vehicle_registration = Column(String(50))
    driver_id = Column(String(64), index=True)
    driver_name = Column(String(200))

    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    latitude = Column(Float)
    longitude = Column(Float)
    address = Column(String(500))
    camera_ids = Column(JSON, nullable=False, default=list)

    assigned_to = Column(String(64), index=True)
    assigned_to_name = Column(String(200))
    acknowledged_at = Column(DateTime(timezone=True))
    acknowledged_by = Column(String(64))
    acknowledged_by_name = Column(String(200))
    resolved_at = Column(DateTime(timezone=True))
    resolved_by = Column(String(64))
    resolved_by_name = Column(String(200))
    closed_at = Column(DateTime(timezone=True))
    closed_by = Column(String(64))
    closed_by_name = Column(String(200))

    escalated = Column(Boolean, nullable=False, default=False)
    escalated_at = Column(DateTime(timezone=True))
    escalated_to = Column(String(64))
    escalated_to_name = Column(String(200))
    escalation_reason = Column(Text)

    requires_action = Column(Boolean, nullable=False, default=False)
    auto_resolved = Column(Boolean, nullable=False, default=False)
    false_positive = Column(Boolean, nullable=False, default=False)
    tags = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    notes = relationship("AlertNoteRecord", order_by="AlertNoteRecord.created_at",
                         cascade="all, delete-orphan")
    history = relationship("AlertHistoryRecord", order_by="AlertHistoryRecord.seq",
                           cascade="all, delete-orphan")
    screenshots = relationship("AlertScreenshotRecord", order_by="AlertScreenshotRecord.capture_offset",
                               cascade="all, delete-orphan")
    video_clips = relationship("AlertVideoClipRecord", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<AlertRecord {self.id} type={self.alert_type} status={self.status}>"
