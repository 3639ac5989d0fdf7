"""Tests for database migration helpers."""
from datetime import datetime

import pytest
from sqlalchemy import create_engine as sa_create_engine, text
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from timeclock.db.migrations import run_migrations
from timeclock.models.device import Device
from timeclock.models.ledger import TimeClockEntry
from timeclock.models.sync import SyncLog


@pytest.fixture(name="migration_engine")
def migration_engine_fixture():
    """In-memory SQLite engine with full schema, for testing migrations."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="legacy_engine")
def legacy_engine_fixture():
    """SQLite DB shaped like the first schema, before the added columns."""
    engine = sa_create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    with engine.connect() as conn:
        conn.execute(text(
            "CREATE TABLE device (id VARCHAR PRIMARY KEY, company_id VARCHAR, ip_address VARCHAR)"
        ))
        conn.execute(text(
            "CREATE TABLE timeclockentry (id INTEGER PRIMARY KEY, employee_id VARCHAR, "
            "clock_in DATETIME, clock_out DATETIME)"
        ))
        conn.execute(text(
            "CREATE TABLE synclog (id INTEGER PRIMARY KEY, device_id VARCHAR, status VARCHAR)"
        ))
        conn.commit()
    yield engine


def _columns(engine, table):
    with engine.connect() as conn:
        return {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})"))}


class TestRunMigrations:
    def test_run_migrations_does_not_raise(self, migration_engine):
        """Migration should complete without errors on a fresh DB."""
        run_migrations(migration_engine)

    def test_run_migrations_is_idempotent(self, migration_engine):
        """Running migrations twice must not raise (columns already exist)."""
        run_migrations(migration_engine)
        run_migrations(migration_engine)  # second call must be safe

    def test_adds_missing_columns_to_old_schema(self, legacy_engine):
        run_migrations(legacy_engine)
        assert {"pending_punches", "settings_json"} <= _columns(legacy_engine, "device")
        assert {"company_id", "device_id"} <= _columns(legacy_engine, "timeclockentry")
        assert "sync_details_json" in _columns(legacy_engine, "synclog")

    def test_creates_employee_clock_in_index(self, legacy_engine):
        run_migrations(legacy_engine)
        with legacy_engine.connect() as conn:
            names = {row[1] for row in conn.execute(text("PRAGMA index_list(timeclockentry)"))}
        assert "ix_timeclockentry_employee_clock_in" in names

    def test_sync_details_column_exists_after_migration(self, migration_engine):
        """synclog.sync_details_json is queryable after migration."""
        run_migrations(migration_engine)
        with Session(migration_engine) as s:
            log = SyncLog(
                company_id="c1",
                device_id="d1",
                sync_type="attendance",
                sync_details_json='{"total_logs": 4}',
            )
            s.add(log)
            s.commit()

            result = s.exec(select(SyncLog)).first()
            assert result.sync_details_json == '{"total_logs": 4}'

    def test_new_columns_default_to_none(self, migration_engine):
        """New nullable columns default to None."""
        run_migrations(migration_engine)
        with Session(migration_engine) as s:
            device = Device(company_id="c1", ip_address="10.0.0.5")
            entry = TimeClockEntry(employee_id="e1", clock_in=datetime(2025, 1, 6, 8, 0))
            s.add(device)
            s.add(entry)
            s.commit()
            s.refresh(device)
            s.refresh(entry)

            assert device.settings_json is None
            assert device.pending_punches == 0
            assert entry.device_id is None
            assert entry.company_id is None
