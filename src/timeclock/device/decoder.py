"""
Payload decoders: convert raw terminal replies into typed records.

Attendance buffer (ATTLOG_RRQ), one punch per line, tab-delimited:

  field  name           → our field
  0      deviceUserId   → device_user_id (kept as string)
  1      timestamp      → timestamp ("YYYY-MM-DD HH:MM:SS", device-local)
  2      statusCode     → direction (0 = check_in, anything else = check_out)
  3      verifyCode     → verify_method (see VERIFY_METHODS)
  4      workCode       → work_code
  5      reserved       (ignored)

User directory (USERTEMP_RRQ), one user per line, tab-delimited:

  user_id, name, card_no, password, group, timezone, verify_mode[, fingerprint_count]

Device info (GET_DEVICE_INFO): "key=value" pairs separated by newlines or
NUL bytes; some firmwares prefix option keys with "~".

Decoders are tolerant: malformed lines are dropped and the rest of the
buffer is still returned. No DB access here.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Union

logger = logging.getLogger(__name__)

CHECK_IN = "check_in"
CHECK_OUT = "check_out"

VERIFY_METHODS: Dict[int, str] = {
    0: "password",
    1: "fingerprint",
    2: "card",
    3: "password+fingerprint",
    4: "password+card",
    5: "fingerprint+card",
    6: "password+fingerprint+card",
    7: "face",
}

_TIMESTAMP_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S")

DEFAULT_DEVICE_INFO: Dict[str, str] = {
    "deviceName": "ZKTeco Device",
    "serialNumber": "Unknown",
    "firmwareVersion": "Unknown",
}


class ProtocolDecodeError(ValueError):
    """Raised when a single line of a device payload cannot be decoded."""


@dataclass(frozen=True)
class AttendancePunch:
    """One decoded punch. Transient: consumed by reconciliation, never stored."""

    device_user_id: str
    timestamp: datetime
    direction: str  # CHECK_IN or CHECK_OUT
    verify_method: str
    work_code: str = ""


@dataclass(frozen=True)
class DeviceUser:
    """One enrolled user as reported by the terminal."""

    user_id: str
    user_name: str
    card_number: str = ""
    fingerprint_count: int = 0

    def to_dict(self) -> Dict[str, Union[str, int]]:
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "cardNumber": self.card_number,
            "fingerprintCount": self.fingerprint_count,
        }


def _as_text(raw: Union[bytes, str]) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


def _split_lines(raw: Union[bytes, str]) -> List[str]:
    text = _as_text(raw).replace("\x00", "\n")
    return [line.strip("\r") for line in text.split("\n") if line.strip()]


def verify_method_name(code: str) -> str:
    """Map a verify code to its name; unknown or non-numeric codes → "unknown"."""
    try:
        return VERIFY_METHODS.get(int(code), "unknown")
    except (TypeError, ValueError):
        return "unknown"


def parse_punch_timestamp(value: str) -> datetime:
    value = value.strip()
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise ProtocolDecodeError(f"Unrecognised punch timestamp: {value!r}")


def decode_attendance_line(line: str) -> AttendancePunch:
    """
    Decode one attendance line.

    Raises:
        ProtocolDecodeError: fewer than 3 fields, bad timestamp or non-numeric status.
    """
    parts = line.split("\t")
    if len(parts) < 3:
        raise ProtocolDecodeError(f"Expected at least 3 fields, got {len(parts)}")

    user_id = parts[0].strip()
    if not user_id:
        raise ProtocolDecodeError("Empty device user id")

    try:
        status_code = int(parts[2].strip())
    except ValueError as exc:
        raise ProtocolDecodeError(f"Non-numeric status code: {parts[2]!r}") from exc

    return AttendancePunch(
        device_user_id=user_id,
        timestamp=parse_punch_timestamp(parts[1]),
        # Binary simplification: break/overtime states all count as check-out
        direction=CHECK_IN if status_code == 0 else CHECK_OUT,
        verify_method=verify_method_name(parts[3] if len(parts) > 3 else "0"),
        work_code=parts[4].strip() if len(parts) > 4 else "",
    )


def decode_attendance_logs(raw: Union[bytes, str]) -> List[AttendancePunch]:
    """
    Decode an ATTLOG_RRQ buffer into punches, preserving buffer order.

    Lines with fewer than 3 fields are dropped silently; other malformed
    lines are dropped with a debug log entry.
    """
    punches: List[AttendancePunch] = []
    for line in _split_lines(raw):
        try:
            punches.append(decode_attendance_line(line))
        except ProtocolDecodeError as exc:
            logger.debug("Dropping attendance line %r: %s", line, exc)
    return punches


def decode_users(raw: Union[bytes, str]) -> List[DeviceUser]:
    """Decode a USERTEMP_RRQ buffer. Lines with fewer than 2 fields are dropped."""
    users: List[DeviceUser] = []
    for line in _split_lines(raw):
        parts = line.split("\t")
        if len(parts) < 2 or not parts[0].strip():
            logger.debug("Dropping user line %r", line)
            continue

        fingerprint_count = 0
        if len(parts) > 7:
            try:
                fingerprint_count = max(0, int(parts[7].strip()))
            except ValueError:
                logger.debug("Bad fingerprint count in user line %r", line)

        users.append(DeviceUser(
            user_id=parts[0].strip(),
            user_name=parts[1].strip(),
            card_number=parts[2].strip() if len(parts) > 2 else "",
            fingerprint_count=fingerprint_count,
        ))
    return users


def encode_user_line(user: DeviceUser) -> bytes:
    """Serialise a user for USER_WRQ, in the same layout decode_users reads."""
    fields = [
        user.user_id,
        user.user_name,
        user.card_number,
        "",  # password
        "1",  # group
        "1",  # timezone
        "0",  # verify_mode (device default)
        str(user.fingerprint_count),
    ]
    return "\t".join(fields).encode("utf-8")


def decode_device_info(raw: Union[bytes, str]) -> Dict[str, str]:
    """Decode GET_DEVICE_INFO key=value pairs. Returns {} for an empty payload."""
    info: Dict[str, str] = {}
    for line in _split_lines(raw):
        key, sep, value = line.partition("=")
        key = key.strip().lstrip("~")
        if not sep or not key:
            continue
        info[key] = value.strip()
    return info
