# app/models/alert_media.py
"""
Evidence captured by the video subsystem for an alert.
Written by the capture pipeline, read by the engine's evidence refresh.
"""

from sqlalchemy import Column, DateTime, Float, ForeignKey, String
from app.database import Base


class AlertScreenshotRecord(Base):
    __tablename__ = "alert_screenshots"

    id = Column(String(64), primary_key=True)
    alert_id = Column(String(64), ForeignKey("alerts.id"), nullable=False, index=True)
    camera_id = Column(String(64), nullable=False)
    camera_name = Column(String(200))
    url = Column(String(1000), nullable=False)
    thumbnail_url = Column(String(1000))
    timestamp = Column(DateTime(timezone=True))
    capture_offset = Column(Float, nullable=False, default=0)   # Seconds relative to alert


class AlertVideoClipRecord(Base):
    __tablename__ = "alert_video_clips"

    id = Column(String(64), primary_key=True)
    alert_id = Column(String(64), ForeignKey("alerts.id"), nullable=False, index=True)
    camera_id = Column(String(64), nullable=False)
    camera_name = Column(String(200))
    url = Column(String(1000), nullable=False)
    thumbnail_url = Column(String(1000))
    duration = Column(Float, nullable=False, default=0)
    start_time = Column(DateTime(timezone=True))
    end_time = Column(DateTime(timezone=True))
    format = Column(String(20))
