"""
Migration script to add the accessibility scan tables.

This script:
1. Creates scans, scan_findings, scan_jobs tables (if missing)
2. Adds per-severity counter columns to scans (if missing)
3. Adds the queue claim index on scan_jobs (state, priority, created_at)

Run with:
    python -m migrations.migrate_scan_tables_v1
"""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import create_engine, inspect, text

from app.config import get_settings
from app.models.scan import Scan, ScanFinding, ScanJob

settings = get_settings()

COUNTER_COLUMNS = ("serious_issues", "moderate_issues", "minor_issues")


def migrate_scan_tables_v1(engine=None):
    """Create scan tables and backfill columns added after the first rollout."""
    engine = engine or create_engine(settings.database_url_sync, echo=True)
    inspector = inspect(engine)

    with engine.begin() as conn:
        existing_tables = set(inspector.get_table_names())

        for model in (Scan, ScanFinding, ScanJob):
            table_name = model.__tablename__
            if table_name not in existing_tables:
                print(f"Creating table: {table_name}")
                model.__table__.create(bind=conn)
            else:
                print(f"Table already exists: {table_name}")

        if "scans" in existing_tables:
            scan_columns = {col["name"] for col in inspector.get_columns("scans")}
            for column in COUNTER_COLUMNS:
                if column not in scan_columns:
                    print(f"Adding column: scans.{column}")
                    conn.execute(text(f"ALTER TABLE scans ADD COLUMN {column} INTEGER NOT NULL DEFAULT 0"))
                else:
                    print(f"Column already exists: scans.{column}")

        print("Ensuring index: idx_scan_jobs_claim_order")
        conn.execute(
            text(
                "CREATE INDEX IF NOT EXISTS idx_scan_jobs_claim_order "
                "ON scan_jobs (state, priority, created_at)"
            )
        )

    print("Migration complete: scan tables v1")


if __name__ == "__main__":
    migrate_scan_tables_v1()
