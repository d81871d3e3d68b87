# app/schemas/escalation_rule.py
from pydantic import BaseModel, Field
from typing import Optional

from app.schemas.alert import AlertSeverity, AlertType


class EscalationRule(BaseModel):
    """Configured outside the engine; read-only here."""
    id: str
    alert_type: AlertType
    severity: AlertSeverity
    time_threshold_minutes: int          # Escalate if not resolved within X minutes
    escalate_to_role: str                # manager | director | ...
    escalate_to_users: list[str] = Field(default_factory=list)
    notification_channels: list[str] = Field(default_factory=list)   # email | sms | push | bell
    enabled: bool = True

    class Config:
        from_attributes = True

    @property
    def target(self) -> Optional[str]:
        """First named user wins over the role."""
        if self.escalate_to_users:
            return self.escalate_to_users[0]
        return self.escalate_to_role or None
