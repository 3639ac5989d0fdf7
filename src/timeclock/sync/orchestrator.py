"""
SyncOrchestrator — runs one device operation end to end.

Flow for every action:
  1. Validate the device row (exists, has an IP) before anything else
  2. Take the per-device lock for the whole run
  3. Create SyncLog (status="in_progress")
  4. Open a DeviceSession, do the protocol work, disconnect
  5. (attendance) reconcile punches into the ledger
     (users)      upsert DeviceUserMapping metadata
  6. Update Device status fields, finalize SyncLog, return a summary

On any unexpected exception or cancellation: finalize SyncLog as "failed"
and re-raise. A SyncLog row is only ever finalized from "in_progress", so
it cannot be finalized twice.
"""
import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session, select

from timeclock.config import Settings, get_settings
from timeclock.device.decoder import AttendancePunch
from timeclock.device.session import DeviceResult, DeviceSession
from timeclock.models.device import Device, DeviceUserMapping, EmployeeProfile
from timeclock.models.sync import SyncLog
from timeclock.sync.reconciliation import ReconciliationEngine, summarize_errors
from timeclock.sync.user_catalog import UserCatalogSync

logger = logging.getLogger(__name__)

TEST_CONNECTION = "test_connection"
SYNC_ATTENDANCE = "sync_attendance"
SYNC_USERS = "sync_users"
GET_DEVICE_INFO = "get_device_info"

SYNC_TYPES = {
    TEST_CONNECTION: "connection_test",
    SYNC_ATTENDANCE: "attendance",
    SYNC_USERS: "users",
    GET_DEVICE_INFO: "device_info",
}

# One lock per device id for the life of the process
_device_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)


class DeviceNotFoundError(LookupError):
    """The referenced Device row does not exist."""


class DeviceNotConfiguredError(ValueError):
    """The Device row has no IP address."""


class InvalidSyncOptionsError(ValueError):
    """start_date / end_date could not be parsed."""


class SyncSummary(BaseModel):
    """Compact result returned to callers; full detail lives in SyncLog."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    synced: Optional[int] = None
    failed: Optional[int] = None
    total: Optional[int] = None
    device_info: Optional[Dict[str, str]] = Field(default=None, alias="deviceInfo")
    users: Optional[List[Dict[str, Any]]] = None

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_date_bound(value: Optional[str], *, end: bool = False) -> Optional[datetime]:
    """
    Parse an ISO date or datetime option into a naive datetime.

    A bare end date ("2025-01-06") covers the whole day.
    """
    if value is None or not str(value).strip():
        return None
    value = str(value).strip()
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise InvalidSyncOptionsError(f"Invalid date: {value!r}") from exc
    parsed = parsed.replace(tzinfo=None)  # terminals record local wall-clock time
    if end and len(value) == 10:
        parsed = datetime.combine(parsed.date(), time.max)
    return parsed


def filter_punches(
    punches: List[AttendancePunch],
    start: Optional[datetime],
    end: Optional[datetime],
) -> List[AttendancePunch]:
    """Inclusive client-side date filter."""
    return [
        p for p in punches
        if (start is None or p.timestamp >= start) and (end is None or p.timestamp <= end)
    ]


class SyncOrchestrator:
    """Dispatches device actions and owns the audit trail for each run."""

    def __init__(
        self,
        engine,
        session_factory: Optional[Callable[..., DeviceSession]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            session_factory: callable(ip, port, timeout=...) returning a
                DeviceSession. Defaults to DeviceSession; tests pass fakes.
            settings: defaults to get_settings().
        """
        self.engine = engine
        self.session_factory = session_factory or DeviceSession
        self.settings = settings or get_settings()

    async def run(
        self,
        action: str,
        device_id: str,
        company_id: str,
        user_id: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> SyncSummary:
        """
        Execute one action against one device.

        Raises:
            DeviceNotFoundError, DeviceNotConfiguredError, InvalidSyncOptionsError:
                before any log row is written or session opened.
            Any unexpected exception (after the SyncLog is finalized as failed).
        """
        if action not in SYNC_TYPES:
            return SyncSummary(success=False, error="Unknown action")

        options = options or {}
        bounds = (
            parse_date_bound(options.get("start_date")),
            parse_date_bound(options.get("end_date"), end=True),
        )
        device = self._load_device(device_id)
        logger.info("Processing %s for device %s", action, device_id)

        async with _device_locks[device_id]:
            log = self._create_sync_log(company_id, device_id, SYNC_TYPES[action], user_id)
            try:
                if self._another_run_in_progress(device_id, log.id):
                    message = "Another sync is already in progress for this device"
                    logger.warning("%s: %s", message, device_id)
                    self._finish_sync_log(log, status="failed", error_message=message)
                    return SyncSummary(success=False, error=message)

                session = self.session_factory(
                    device.ip_address,
                    device.port or self.settings.device_default_port,
                    timeout=self.settings.device_timeout_seconds,
                )
                if action == TEST_CONNECTION:
                    return await self._test_connection(session, device_id, log)
                if action == SYNC_ATTENDANCE:
                    return await self._sync_attendance(session, device_id, company_id, log, bounds)
                if action == SYNC_USERS:
                    return await self._sync_users(session, device_id, company_id, log)
                return await self._get_device_info(session, log)

            except (Exception, asyncio.CancelledError) as exc:
                logger.exception("%s failed for device %s", action, device_id)
                self._finish_sync_log(
                    log, status="failed", error_message=str(exc) or type(exc).__name__
                )
                raise

    # ─── Actions ──────────────────────────────────────────────────────────────

    async def _test_connection(self, session: DeviceSession, device_id: str, log: SyncLog) -> SyncSummary:
        async with session.connected() as conn:
            self._record_heartbeat(device_id, conn)

        self._finish_sync_log(
            log,
            status="completed" if conn.success else "failed",
            error_message=conn.error,
            details={"deviceInfo": conn.device_info},
        )
        return SyncSummary(
            success=conn.success,
            message="Connection successful" if conn.success else "Connection failed",
            error=conn.error,
            device_info=conn.device_info,
        )

    async def _sync_attendance(
        self,
        session: DeviceSession,
        device_id: str,
        company_id: str,
        log: SyncLog,
        bounds: Tuple[Optional[datetime], Optional[datetime]],
    ) -> SyncSummary:
        start, end = bounds
        fetched: Optional[DeviceResult] = None
        async with session.connected() as conn:
            if conn.success:
                fetched = await session.get_attendance_logs(
                    start.isoformat() if start else None,
                    end.isoformat() if end else None,
                )

        failure = self._fail_if_unsuccessful(log, conn, fetched)
        if failure is not None:
            return failure

        punches = filter_punches(fetched.logs, start, end)
        identity_map = self._load_identity_map(device_id, company_id)
        result = ReconciliationEngine(
            self.engine,
            identity_map,
            company_id=company_id,
            device_id=device_id,
            dedupe_window=timedelta(seconds=self.settings.dedupe_window_seconds),
        ).reconcile(punches)

        self._mark_synced(device_id)
        self._finish_sync_log(
            log,
            status=self._final_status(result.synced, result.failed),
            records_synced=result.synced,
            records_failed=result.failed,
            error_message=result.error_summary(self.settings.error_message_limit),
            details={
                "total_logs": len(fetched.logs),
                "filtered_out": len(fetched.logs) - len(punches),
                "synced": result.synced,
                "failed": result.failed,
                "duplicates": result.duplicates,
            },
        )
        return SyncSummary(
            success=True,
            message=f"Synced {result.synced} records, {result.failed} failed",
            synced=result.synced,
            failed=result.failed,
            total=len(punches),
        )

    async def _sync_users(
        self, session: DeviceSession, device_id: str, company_id: str, log: SyncLog
    ) -> SyncSummary:
        fetched: Optional[DeviceResult] = None
        async with session.connected() as conn:
            if conn.success:
                fetched = await session.get_users()

        failure = self._fail_if_unsuccessful(log, conn, fetched)
        if failure is not None:
            return failure

        result = UserCatalogSync(self.engine, device_id, company_id).upsert_users(fetched.users)
        self._finish_sync_log(
            log,
            status=self._final_status(result.synced, result.failed),
            records_synced=result.synced,
            records_failed=result.failed,
            error_message=summarize_errors(result.errors, self.settings.error_message_limit),
            details={"total_users": len(fetched.users)},
        )
        return SyncSummary(
            success=True,
            message=f"Synced {result.synced} users from device",
            synced=result.synced,
            failed=result.failed,
            users=[u.to_dict() for u in fetched.users],
        )

    async def _get_device_info(self, session: DeviceSession, log: SyncLog) -> SyncSummary:
        async with session.connected() as conn:
            pass

        self._finish_sync_log(
            log,
            status="completed" if conn.success else "failed",
            error_message=conn.error,
            details={"deviceInfo": conn.device_info},
        )
        return SyncSummary(success=conn.success, device_info=conn.device_info, error=conn.error)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _final_status(synced: int, failed: int) -> str:
        # Partial failures still complete; only an all-failed run is "failed"
        return "failed" if failed > 0 and synced == 0 else "completed"

    def _fail_if_unsuccessful(
        self, log: SyncLog, conn: DeviceResult, fetched: Optional[DeviceResult]
    ) -> Optional[SyncSummary]:
        """Finalize the log as failed if connect or fetch failed; return the summary."""
        for step in (conn, fetched):
            if step is not None and not step.success:
                self._finish_sync_log(log, status="failed", error_message=step.error)
                return SyncSummary(success=False, error=step.error)
        return None

    def _load_device(self, device_id: str) -> Device:
        with Session(self.engine) as s:
            device = s.get(Device, device_id)
        if device is None:
            raise DeviceNotFoundError("Device not found")
        if not device.ip_address:
            raise DeviceNotConfiguredError("Device IP address not configured")
        return device

    def _load_identity_map(self, device_id: str, company_id: str) -> Dict[str, str]:
        """
        device_user_id → employee_id for this device.

        Explicit DeviceUserMapping rows win; profiles whose time_clock_id
        matches a device user id fill the gaps.
        """
        with Session(self.engine) as s:
            profiles = s.exec(
                select(EmployeeProfile).where(
                    EmployeeProfile.company_id == company_id,
                    EmployeeProfile.time_clock_id.is_not(None),
                )
            ).all()
            mappings = s.exec(
                select(DeviceUserMapping).where(
                    DeviceUserMapping.device_id == device_id,
                    DeviceUserMapping.employee_id.is_not(None),
                )
            ).all()

        lookup = {p.time_clock_id: p.id for p in profiles}
        lookup.update({m.device_user_id: m.employee_id for m in mappings})
        return lookup

    def _another_run_in_progress(self, device_id: str, own_log_id: int) -> bool:
        stale_before = datetime.utcnow() - timedelta(seconds=self.settings.sync_lock_stale_seconds)
        with Session(self.engine) as s:
            other = s.exec(
                select(SyncLog.id).where(
                    SyncLog.device_id == device_id,
                    SyncLog.status == "in_progress",
                    SyncLog.id < own_log_id,
                    SyncLog.started_at >= stale_before,
                )
            ).first()
        return other is not None

    def _record_heartbeat(self, device_id: str, conn: DeviceResult) -> None:
        """Refresh reachability on every test; cache device info only on success."""
        with Session(self.engine) as s:
            device = s.get(Device, device_id)
            device.sync_status = "online" if conn.success else "offline"
            device.last_heartbeat_at = datetime.utcnow()
            if conn.success and conn.device_info:
                settings = json.loads(device.settings_json or "{}")
                settings["deviceInfo"] = conn.device_info
                device.settings_json = json.dumps(settings)
            s.add(device)
            s.commit()

    def _mark_synced(self, device_id: str) -> None:
        with Session(self.engine) as s:
            device = s.get(Device, device_id)
            device.last_sync_at = datetime.utcnow()
            device.sync_status = "online"
            device.pending_punches = 0
            s.add(device)
            s.commit()

    def _create_sync_log(
        self, company_id: str, device_id: str, sync_type: str, triggered_by: Optional[str]
    ) -> SyncLog:
        log = SyncLog(
            company_id=company_id,
            device_id=device_id,
            sync_type=sync_type,
            status="in_progress",
            triggered_by=triggered_by,
            started_at=datetime.utcnow(),
        )
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_sync_log(
        self,
        log: SyncLog,
        *,
        status: str,
        records_synced: int = 0,
        records_failed: int = 0,
        error_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        with Session(self.engine) as s:
            db_log = s.get(SyncLog, log.id)
            if db_log.status != "in_progress":
                logger.warning("Sync log %s already finalized as %s", log.id, db_log.status)
                return
            db_log.status = status
            db_log.completed_at = datetime.utcnow()
            db_log.records_synced = records_synced
            db_log.records_failed = records_failed
            db_log.error_message = error_message
            db_log.sync_details_json = json.dumps(details) if details is not None else None
            s.add(db_log)
            s.commit()
        logger.info(
            "Sync log %s finalized: %s (%d synced, %d failed)",
            log.id, status, records_synced, records_failed,
        )
