# app/database.py
"""
Database connection, session management, and table creation.
Backs the "database" Alert Store backend and the escalation rule table.
All models are imported in create_tables() so one call creates every table.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from app.config import settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,       # Auto-reconnect if DB connection drops
        "pool_size": 10,
        "max_overflow": 20,
    }


engine = create_engine(settings.DATABASE_URL, echo=False, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def create_tables(bind=None):
    """Creates all alert-store tables. Safe to call multiple times."""
    from app.models.alert import AlertRecord                      # noqa
    from app.models.alert_note import AlertNoteRecord             # noqa
    from app.models.alert_history import AlertHistoryRecord       # noqa
    from app.models.alert_media import AlertScreenshotRecord, AlertVideoClipRecord  # noqa
    from app.models.escalation_rule import EscalationRuleRecord   # noqa

    Base.metadata.create_all(bind=bind or engine)
