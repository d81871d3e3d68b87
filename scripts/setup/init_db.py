# scripts/setup/init_db.py
"""
Initialize database — creates all tables and seeds default escalation rules.
Only needed for ALERT_STORE_BACKEND=database.
Usage: python scripts/setup/init_db.py [--no-seed]
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

import argparse

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from app.database import SessionLocal, create_tables, engine
from app.config import settings
from app.models.escalation_rule import EscalationRuleRecord
from app.schemas.alert import AlertSeverity, AlertType
from app.services.escalation_scheduler import DEFAULT_THRESHOLD_MINUTES

# Severities that get an automatic escalation rule out of the box
SEEDED_SEVERITIES = (AlertSeverity.CRITICAL, AlertSeverity.HIGH, AlertSeverity.MEDIUM)
DEFAULT_ROLE = "fleet_manager"


def seed_escalation_rules(session) -> int:
    """Adds one rule per (alert_type, severity) pair that has none yet. Returns rows added."""
    existing = {(r.alert_type, r.severity) for r in session.query(EscalationRuleRecord).all()}
    added = 0
    for alert_type in AlertType:
        for severity in SEEDED_SEVERITIES:
            if (alert_type.value, severity.value) in existing:
                continue
            session.add(EscalationRuleRecord(
                id=f"rule-{alert_type.value}-{severity.value}",
                alert_type=alert_type.value,
                severity=severity.value,
                time_threshold_minutes=DEFAULT_THRESHOLD_MINUTES[severity],
                escalate_to_role=DEFAULT_ROLE,
                escalate_to_users=[],
                notification_channels=["email", "bell"],
                enabled=True,
            ))
            added += 1
    session.commit()
    return added


def main():
    parser = argparse.ArgumentParser(description="Create alert store tables")
    parser.add_argument("--no-seed", action="store_true", help="Skip default escalation rules")
    args = parser.parse_args()

    print("🗄️  Fleet Alert Engine DB Initialization")
    print("=" * 40)
    print(f"📡 Database: {settings.DATABASE_URL}")

    # Test connection
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("✅ Database connection OK")
    except SQLAlchemyError as e:
        print(f"❌ Cannot connect to database: {e}")
        print("\nMake sure PostgreSQL is running:")
        print("  docker-compose up -d db")
        print("  # or: sudo systemctl start postgresql")
        sys.exit(1)

    print("\n📋 Creating tables...")
    create_tables()
    tables = sorted(inspect(engine).get_table_names())
    print(f"\n📊 Tables in database ({len(tables)} total):")
    for t in tables:
        print(f"   ✓ {t}")

    if not args.no_seed:
        session = SessionLocal()
        try:
            added = seed_escalation_rules(session)
        finally:
            session.close()
        print(f"\n⏱️  Escalation rules seeded: {added} new")

    print("\n🎉 Database ready! You can now start the backend:")
    print("   ALERT_STORE_BACKEND=database uvicorn app.main:app --host 0.0.0.0 --port 8080 --reload")


if __name__ == "__main__":
    main()
