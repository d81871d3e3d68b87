# app/models/escalation_rule.py
"""
Escalation rules, keyed by (alert_type, severity).
Maintained by administrators; the engine only reads them.
"""

from sqlalchemy import Boolean, Column, Integer, JSON, String, UniqueConstraint
from app.database import Base


class EscalationRuleRecord(Base):
    __tablename__ = "escalation_rules"
    __table_args__ = (UniqueConstraint("alert_type", "severity", name="uq_escalation_rule_key"),)

    id = Column(String(64), primary_key=True)
    alert_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    time_threshold_minutes = Column(Integer, nullable=False)
    escalate_to_role = Column(String(100), nullable=False)
    escalate_to_users = Column(JSON, nullable=False, default=list)
    notification_channels = Column(JSON, nullable=False, default=list)
    enabled = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<EscalationRuleRecord {self.alert_type}/{self.severity} after {self.time_threshold_minutes}m>"
