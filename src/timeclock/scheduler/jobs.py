"""
APScheduler jobs for periodic device pulls.

Attendance is pulled from every active, addressable device on a fixed
interval; the user directory is refreshed nightly. Each job iterates the
devices sequentially and never raises, so one unreachable terminal can't
stop the scheduler. Unreachable devices still get a finalized "failed"
SyncLog from the orchestrator.
"""
import logging
from datetime import datetime
from typing import List, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session, select

from timeclock.config import get_settings
from timeclock.models.device import Device

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to pass to the orchestrator.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _attendance_sync,
        trigger="interval",
        minutes=settings.sync_interval_minutes,
        id="attendance_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"engine": engine},
    )
    scheduler.add_job(
        _user_sync,
        trigger="cron",
        hour=settings.user_sync_hour,
        minute=0,
        id="user_sync",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


def _active_devices(engine) -> List[Tuple[str, str]]:
    """(device_id, company_id) for active devices with an IP configured."""
    with Session(engine) as s:
        devices = s.exec(
            select(Device).where(
                Device.is_active == True,  # noqa: E712
                Device.ip_address.is_not(None),
            )
        ).all()
        return [(d.id, d.company_id) for d in devices if d.ip_address]


async def _run_for_all_devices(engine, action: str) -> None:
    from timeclock.sync.orchestrator import SyncOrchestrator

    orchestrator = SyncOrchestrator(engine=engine)
    try:
        devices = _active_devices(engine)
    except Exception as exc:
        logger.error("Scheduled %s could not list devices: %s", action, exc)
        return

    for device_id, company_id in devices:
        try:
            summary = await orchestrator.run(action, device_id, company_id)
            if summary.success:
                logger.info("Scheduled %s for %s: %s", action, device_id, summary.message)
            else:
                logger.warning("Scheduled %s for %s failed: %s", action, device_id, summary.error)
        except Exception as exc:
            logger.error("Scheduled %s for %s raised: %s", action, device_id, exc)


async def _attendance_sync(engine) -> None:
    """Interval job: pull punches from every device. Idempotent."""
    logger.info("Attendance sync starting at %s", datetime.utcnow().isoformat())
    await _run_for_all_devices(engine, "sync_attendance")


async def _user_sync(engine) -> None:
    """Nightly job: refresh device user directories."""
    logger.info("User sync starting at %s", datetime.utcnow().isoformat())
    await _run_for_all_devices(engine, "sync_users")
