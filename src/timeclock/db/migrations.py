"""
Database migrations for the sync service.

Uses SQLite ALTER TABLE ADD COLUMN and CREATE INDEX IF NOT EXISTS for
incremental schema evolution. Each migration is idempotent.

Called automatically from get_engine() after create_all() so both fresh
installs and existing DBs are handled without manual steps.
"""
from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times. Supports SQLite only (uses PRAGMA table_info).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # Device: backlog counter reset after each attendance pull
        _add_column_if_missing(conn, "device", "pending_punches", "INTEGER DEFAULT 0")
        _add_column_if_missing(conn, "device", "settings_json", "TEXT")

        # TimeClockEntry: tenancy and source terminal
        _add_column_if_missing(conn, "timeclockentry", "company_id", "VARCHAR")
        _add_column_if_missing(conn, "timeclockentry", "device_id", "VARCHAR")

        # SyncLog: structured run details
        _add_column_if_missing(conn, "synclog", "sync_details_json", "TEXT")

        # Dedupe and open-entry lookups filter on employee + clock_in
        conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_timeclockentry_employee_clock_in "
            "ON timeclockentry (employee_id, clock_in)"
        ))

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "REAL", "TEXT".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
