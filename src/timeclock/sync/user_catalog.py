"""
UserCatalogSync — refreshes DeviceUserMapping rows from a terminal's user directory.

Idempotency: rows are keyed by the (device_id, device_user_id) unique
constraint. An existing row has its metadata updated in place; a missing
one is inserted with employee_id left NULL for the enrollment workflow.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from timeclock.device.decoder import DeviceUser
from timeclock.models.device import DeviceUserMapping

logger = logging.getLogger(__name__)


@dataclass
class UserSyncResult:
    synced: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class UserCatalogSync:
    """Upserts device-enrolled user metadata for one device."""

    def __init__(self, engine, device_id: str, company_id: Optional[str] = None):
        self.engine = engine
        self.device_id = device_id
        self.company_id = company_id

    def upsert_users(self, users: Iterable[DeviceUser]) -> UserSyncResult:
        """Upsert every user; a failed row is tallied and the batch continues."""
        result = UserSyncResult()
        with Session(self.engine) as s:
            for user in users:
                try:
                    self._upsert(s, user)
                except SQLAlchemyError as exc:
                    s.rollback()
                    logger.warning("Failed to upsert device user %s: %s", user.user_id, exc)
                    result.failed += 1
                    result.errors.append(f"Failed to upsert device user {user.user_id}: {exc}")
                    continue
                result.synced += 1
        return result

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _find(self, s: Session, device_user_id: str) -> Optional[DeviceUserMapping]:
        return s.exec(
            select(DeviceUserMapping).where(
                DeviceUserMapping.device_id == self.device_id,
                DeviceUserMapping.device_user_id == device_user_id,
            )
        ).first()

    def _apply_metadata(self, mapping: DeviceUserMapping, user: DeviceUser) -> None:
        mapping.device_user_name = user.user_name
        mapping.card_number = user.card_number or None
        mapping.fingerprint_count = user.fingerprint_count
        mapping.last_synced_at = datetime.utcnow()
        if mapping.company_id is None:
            mapping.company_id = self.company_id

    def _upsert(self, s: Session, user: DeviceUser) -> None:
        existing = self._find(s, user.user_id)
        if existing is None:
            mapping = DeviceUserMapping(device_id=self.device_id, device_user_id=user.user_id)
            self._apply_metadata(mapping, user)
            s.add(mapping)
            try:
                s.commit()
                return
            except IntegrityError:
                # Inserted concurrently by another run: fall through to update
                s.rollback()
                existing = self._find(s, user.user_id)
                if existing is None:
                    raise

        self._apply_metadata(existing, user)
        s.add(existing)
        s.commit()
