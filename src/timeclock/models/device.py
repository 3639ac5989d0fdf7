"""Terminal registry and device-local identity models."""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


def _new_id() -> str:
    return str(uuid.uuid4())


class Device(SQLModel, table=True):
    """
    One row per registered time-clock terminal.

    Rows are created by the device-registration admin UI. The sync engine
    only touches the status, heartbeat, sync and settings cache fields.
    """

    id: str = Field(default_factory=_new_id, primary_key=True)
    company_id: str = Field(index=True)
    device_name: str = ""
    ip_address: Optional[str] = None
    port: Optional[int] = 4370
    is_active: bool = True

    sync_status: str = "unknown"  # "online", "offline", "unknown"
    last_heartbeat_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    pending_punches: int = 0

    # JSON blob; "deviceInfo" key caches the last metadata read from the terminal
    settings_json: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)


class DeviceUserMapping(SQLModel, table=True):
    """
    Links a terminal's enrolled user to an employee.

    Metadata columns are refreshed by UserCatalogSync. employee_id is owned
    by the enrollment workflow and is never written during a sync.
    """

    __table_args__ = (
        UniqueConstraint("device_id", "device_user_id", name="uq_device_user"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: Optional[str] = Field(default=None, index=True)
    device_id: str = Field(foreign_key="device.id", index=True)
    device_user_id: str
    employee_id: Optional[str] = Field(default=None, index=True)

    device_user_name: Optional[str] = None
    card_number: Optional[str] = None
    fingerprint_count: int = 0
    last_synced_at: Optional[datetime] = None


class EmployeeProfile(SQLModel, table=True):
    """Minimal view of the HR profile table; read-only for this service."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    company_id: str = Field(index=True)
    full_name: str = ""
    # Badge number keyed into terminals when no explicit mapping exists
    time_clock_id: Optional[str] = Field(default=None, index=True)
