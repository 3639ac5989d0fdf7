"""
ReconciliationEngine — merges decoded punches into the TimeClockEntry ledger.

Per punch, after grouping by employee and ordering by timestamp:
  1. Resolve employee_id from the preloaded identity map   (else MappingError)
  2. Skip duplicates: an entry of that employee already has clock_in within
     the dedupe window (or, for check-outs, clock_out within it)
  3. check_in  → insert an open entry                     (else PersistenceError)
  4. check_out → close the most recent open entry          (none → PairingError)

Failures are counted and their messages collected; they never abort the
batch. Duplicates count as neither synced nor failed.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from timeclock.device.decoder import CHECK_IN, AttendancePunch
from timeclock.models.ledger import TimeClockEntry

logger = logging.getLogger(__name__)

DEFAULT_DEDUPE_WINDOW = timedelta(seconds=60)


class ReconciliationError(Exception):
    """Base for per-punch failures. The punch is skipped and counted failed."""


class MappingError(ReconciliationError):
    """The device user is not linked to any employee."""


class PersistenceError(ReconciliationError):
    """A ledger write failed."""


class PairingError(ReconciliationError):
    """A check-out arrived with no open entry to close."""


@dataclass
class ReconciliationResult:
    synced: int = 0
    failed: int = 0
    duplicates: int = 0
    errors: List[str] = field(default_factory=list)

    def record_failure(self, exc: ReconciliationError) -> None:
        self.failed += 1
        self.errors.append(str(exc))

    def error_summary(self, limit: int = 5) -> Optional[str]:
        """First `limit` errors joined, with a count of the rest. None if no errors."""
        return summarize_errors(self.errors, limit)


def summarize_errors(errors: List[str], limit: int = 5) -> Optional[str]:
    if not errors:
        return None
    summary = "; ".join(errors[:limit])
    hidden = len(errors) - limit
    if hidden > 0:
        summary += f" (…and {hidden} more)"
    return summary


class ReconciliationEngine:
    """Applies one run's punches to the ledger."""

    def __init__(
        self,
        engine,
        identity_map: Dict[str, str],
        *,
        company_id: Optional[str] = None,
        device_id: Optional[str] = None,
        dedupe_window: timedelta = DEFAULT_DEDUPE_WINDOW,
    ):
        """
        Args:
            engine: SQLAlchemy engine.
            identity_map: device_user_id → employee_id, loaded once per run.
            company_id: stamped on inserted entries.
            device_id: stamped on inserted entries.
            dedupe_window: half-width of the duplicate window around a punch.
        """
        self.engine = engine
        self.identity_map = identity_map
        self.company_id = company_id
        self.device_id = device_id
        self.dedupe_window = dedupe_window

    def reconcile(self, punches: Iterable[AttendancePunch]) -> ReconciliationResult:
        result = ReconciliationResult()
        by_employee = self._group_by_employee(punches, result)

        with Session(self.engine) as s:
            for employee_id, employee_punches in by_employee.items():
                # Same-employee punches must apply oldest first or pairing breaks
                employee_punches.sort(key=lambda p: p.timestamp)
                for punch in employee_punches:
                    try:
                        applied = self._apply(s, employee_id, punch)
                    except ReconciliationError as exc:
                        logger.warning("Punch %s@%s not reconciled: %s",
                                       punch.device_user_id, punch.timestamp, exc)
                        result.record_failure(exc)
                        continue
                    if applied:
                        result.synced += 1
                    else:
                        result.duplicates += 1

        logger.info(
            "Reconciliation done: %d synced, %d failed, %d duplicates",
            result.synced, result.failed, result.duplicates,
        )
        return result

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _group_by_employee(
        self, punches: Iterable[AttendancePunch], result: ReconciliationResult
    ) -> Dict[str, List[AttendancePunch]]:
        grouped: Dict[str, List[AttendancePunch]] = defaultdict(list)
        for punch in punches:
            employee_id = self.identity_map.get(punch.device_user_id)
            if not employee_id:
                result.record_failure(
                    MappingError(f"No mapping for device user {punch.device_user_id}")
                )
                continue
            grouped[employee_id].append(punch)
        return grouped

    def _window(self, ts: datetime) -> Tuple[datetime, datetime]:
        return ts - self.dedupe_window, ts + self.dedupe_window

    def _is_duplicate(self, s: Session, employee_id: str, punch: AttendancePunch) -> bool:
        low, high = self._window(punch.timestamp)
        existing = s.exec(
            select(TimeClockEntry.id).where(
                TimeClockEntry.employee_id == employee_id,
                TimeClockEntry.clock_in >= low,
                TimeClockEntry.clock_in <= high,
            )
        ).first()
        if existing is None and punch.direction != CHECK_IN:
            existing = s.exec(
                select(TimeClockEntry.id).where(
                    TimeClockEntry.employee_id == employee_id,
                    TimeClockEntry.clock_out >= low,
                    TimeClockEntry.clock_out <= high,
                )
            ).first()
        return existing is not None

    def _apply(self, s: Session, employee_id: str, punch: AttendancePunch) -> bool:
        """Apply one punch. Returns False for a duplicate, True when written."""
        if self._is_duplicate(s, employee_id, punch):
            logger.debug("Skipping duplicate entry for %s at %s", employee_id, punch.timestamp)
            return False

        if punch.direction == CHECK_IN:
            self._clock_in(s, employee_id, punch)
        else:
            self._clock_out(s, employee_id, punch)
        return True

    def _clock_in(self, s: Session, employee_id: str, punch: AttendancePunch) -> None:
        entry = TimeClockEntry(
            company_id=self.company_id,
            device_id=self.device_id,
            employee_id=employee_id,
            clock_in=punch.timestamp,
            clock_in_method=punch.verify_method,
            status="clocked_in",
        )
        try:
            s.add(entry)
            s.commit()
        except SQLAlchemyError as exc:
            s.rollback()
            raise PersistenceError(
                f"Failed to insert clock-in for {employee_id}: {exc}"
            ) from exc

    def _clock_out(self, s: Session, employee_id: str, punch: AttendancePunch) -> None:
        open_entry = s.exec(
            select(TimeClockEntry)
            .where(
                TimeClockEntry.employee_id == employee_id,
                TimeClockEntry.clock_out.is_(None),
            )
            .order_by(TimeClockEntry.clock_in.desc())
            .limit(1)
        ).first()
        if open_entry is None:
            raise PairingError(f"No open entry for clock-out: {employee_id}")

        open_entry.clock_out = punch.timestamp
        open_entry.clock_out_method = punch.verify_method
        open_entry.status = "completed"
        try:
            s.add(open_entry)
            s.commit()
        except SQLAlchemyError as exc:
            s.rollback()
            raise PersistenceError(
                f"Failed to update clock-out for {employee_id}: {exc}"
            ) from exc
