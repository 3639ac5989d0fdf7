"""Device sync trigger, status and audit-log routes."""
import json
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlmodel import Session, select

from timeclock.db.engine import get_engine, get_session
from timeclock.models.device import Device
from timeclock.models.sync import SyncLog
from timeclock.sync.orchestrator import (
    DeviceNotConfiguredError,
    DeviceNotFoundError,
    InvalidSyncOptionsError,
    SyncOrchestrator,
)

router = APIRouter()


class SyncOptions(BaseModel):
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class DeviceSyncRequest(BaseModel):
    action: Literal["test_connection", "sync_attendance", "sync_users", "get_device_info"]
    device_id: str
    company_id: str
    user_id: Optional[str] = None
    options: Optional[SyncOptions] = None


class DeviceStatusResponse(BaseModel):
    device_id: str
    sync_status: str
    last_heartbeat_at: Optional[datetime]
    last_sync_at: Optional[datetime]
    pending_punches: int
    device_info: Optional[Dict[str, Any]]


class SyncLogResponse(BaseModel):
    id: int
    sync_type: str
    status: str
    triggered_by: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    records_synced: int
    records_failed: int
    error_message: Optional[str]
    sync_details: Optional[Dict[str, Any]]


def get_orchestrator() -> SyncOrchestrator:
    """Dependency; overridden in tests to inject a fake device session."""
    return SyncOrchestrator(engine=get_engine())


@router.post("/sync")
async def sync_device(
    request: DeviceSyncRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Run one device action synchronously and return its summary.
    IDs are trusted as given; authorization happens upstream.
    """
    options = request.options.model_dump() if request.options else None
    try:
        summary = await orchestrator.run(
            request.action,
            request.device_id,
            request.company_id,
            user_id=request.user_id,
            options=options,
        )
    except DeviceNotFoundError as exc:
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})
    except (DeviceNotConfiguredError, InvalidSyncOptionsError) as exc:
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})
    return summary.to_response()


@router.get("/{device_id}/status", response_model=DeviceStatusResponse)
def device_status(device_id: str, session: Session = Depends(get_session)):
    """Current reachability and sync counters for one device."""
    device = session.get(Device, device_id)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    settings = json.loads(device.settings_json or "{}")
    return DeviceStatusResponse(
        device_id=device.id,
        sync_status=device.sync_status,
        last_heartbeat_at=device.last_heartbeat_at,
        last_sync_at=device.last_sync_at,
        pending_punches=device.pending_punches,
        device_info=settings.get("deviceInfo"),
    )


@router.get("/{device_id}/sync-logs", response_model=List[SyncLogResponse])
def list_sync_logs(
    device_id: str,
    limit: int = 20,
    session: Session = Depends(get_session),
):
    """Audit trail for one device, newest first."""
    logs = session.exec(
        select(SyncLog)
        .where(SyncLog.device_id == device_id)
        .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
        .limit(limit)
    ).all()
    return [
        SyncLogResponse(
            id=log.id,
            sync_type=log.sync_type,
            status=log.status,
            triggered_by=log.triggered_by,
            started_at=log.started_at,
            completed_at=log.completed_at,
            records_synced=log.records_synced,
            records_failed=log.records_failed,
            error_message=log.error_message,
            sync_details=json.loads(log.sync_details_json) if log.sync_details_json else None,
        )
        for log in logs
    ]
