# app/models/alert_note.py
"""Operator notes. Rows are inserted once and never updated."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text
from app.database import Base


class AlertNoteRecord(Base):
    __tablename__ = "alert_notes"

    id = Column(String(64), primary_key=True)
    alert_id = Column(String(64), ForeignKey("alerts.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    user_name = Column(String(200))
    content = Column(Text, nullable=False)
    is_internal = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<AlertNoteRecord {self.id} alert={self.alert_id} by={self.user_id}>"
