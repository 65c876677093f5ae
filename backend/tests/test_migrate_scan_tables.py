from sqlalchemy import create_engine, inspect, text

from migrations.migrate_scan_tables_v1 import COUNTER_COLUMNS, migrate_scan_tables_v1


def test_migration_creates_tables_and_is_idempotent(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'scans.db'}")

    migrate_scan_tables_v1(engine)
    migrate_scan_tables_v1(engine)

    inspector = inspect(engine)
    assert {"scans", "scan_findings", "scan_jobs"} <= set(inspector.get_table_names())
    assert "idx_scan_jobs_claim_order" in {index["name"] for index in inspector.get_indexes("scan_jobs")}
    engine.dispose()


def test_migration_backfills_counter_columns(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'legacy.db'}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE scans (id VARCHAR(36) PRIMARY KEY, url VARCHAR(2048) NOT NULL)"))

    migrate_scan_tables_v1(engine)

    columns = {column["name"] for column in inspect(engine).get_columns("scans")}
    assert set(COUNTER_COLUMNS) <= columns
    engine.dispose()
