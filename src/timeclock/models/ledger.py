"""Attendance ledger model shared with the broader time-tracking module."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class TimeClockEntry(SQLModel, table=True):
    """
    One clock-in/clock-out pair.

    An entry with clock_out NULL is "open": the employee is currently
    clocked in. Check-in punches create entries, check-out punches close
    the most recent open one.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: Optional[str] = Field(default=None, index=True)
    employee_id: str = Field(index=True)
    device_id: Optional[str] = None

    clock_in: datetime
    clock_in_method: Optional[str] = None  # "fingerprint", "card", "face", ...
    clock_out: Optional[datetime] = None
    clock_out_method: Optional[str] = None

    status: str = "clocked_in"  # "clocked_in", "completed"
    created_at: datetime = Field(default_factory=datetime.utcnow)
