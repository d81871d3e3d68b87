# app/models/alert_history.py
"""
Audit trail — append-only.
`seq` preserves the order in which transitions were persisted; timestamps alone can tie.
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from app.database import Base


class AlertHistoryRecord(Base):
    __tablename__ = "alert_history"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, nullable=False)
    alert_id = Column(String(64), ForeignKey("alerts.id"), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    user_id = Column(String(64))
    user_name = Column(String(200))
    old_value = Column(Text)
    new_value = Column(Text)
    details = Column(Text)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<AlertHistoryRecord {self.seq} alert={self.alert_id} action={self.action}>"
