"""SQLModel engine singleton and session dependency."""
from typing import Generator

from sqlmodel import Session, SQLModel, create_engine

from timeclock.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args = {
                "check_same_thread": False,  # shared across the event loop and FastAPI threads
                "timeout": settings.db_timeout_seconds,
            }
        _engine = create_engine(settings.database_url, connect_args=connect_args)
        # Import all models so metadata is populated before create_all
        from timeclock.models.device import Device, DeviceUserMapping, EmployeeProfile  # noqa
        from timeclock.models.ledger import TimeClockEntry  # noqa
        from timeclock.models.sync import SyncLog  # noqa
        SQLModel.metadata.create_all(_engine)
        from timeclock.db.migrations import run_migrations
        run_migrations(_engine)
    return _engine


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session."""
    with Session(get_engine()) as session:
        yield session
