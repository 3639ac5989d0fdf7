"""Sync audit log model."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncLog(SQLModel, table=True):
    """
    Records each device operation for audit and debugging.

    Created once with status "in_progress" when a run starts and finalized
    exactly once ("completed" or "failed").
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: str = Field(index=True)
    device_id: str = Field(index=True)
    sync_type: str  # "connection_test", "attendance", "users", "device_info"
    status: str = "in_progress"  # "in_progress", "completed", "failed"
    triggered_by: Optional[str] = None  # user id; None for scheduled runs
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    records_synced: int = 0
    records_failed: int = 0
    error_message: Optional[str] = None
    sync_details_json: Optional[str] = None
