# Fleet alert store — Database Models
# Import all models here for SQLAlchemy discovery

from app.models.alert import AlertRecord                      # noqa
from app.models.alert_note import AlertNoteRecord             # noqa
from app.models.alert_history import AlertHistoryRecord       # noqa
from app.models.alert_media import AlertScreenshotRecord, AlertVideoClipRecord  # noqa
from app.models.escalation_rule import EscalationRuleRecord   # noqa
