"""
Frame codec for the time-clock terminal command protocol.

Every frame is a fixed 8-byte little-endian header followed by an
optional payload:

    offset  size  field
    0       2     command
    2       2     sessionId
    4       2     replyId
    6       2     dataLength   (payload bytes that follow)

Replies use the same header. The device answers every command with
ACK_OK on success; any other reply code is treated as a refusal.
"""
import struct
from typing import NamedTuple

# ── Command codes ─────────────────────────────────────────────────────────────

CMD_CONNECT = 1000
CMD_EXIT = 1001
CMD_GET_DEVICE_INFO = 11
CMD_ATTLOG_RRQ = 13
CMD_USER_WRQ = 8
CMD_USERTEMP_RRQ = 9

# ── Reply codes ───────────────────────────────────────────────────────────────

CMD_ACK_OK = 2000
CMD_ACK_ERROR = 2001
CMD_ACK_UNAUTH = 2005

HEADER_FORMAT = "<HHHH"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 8
MAX_PAYLOAD = 0xFFFF

COMMAND_NAMES = {
    CMD_CONNECT: "CONNECT",
    CMD_EXIT: "EXIT",
    CMD_GET_DEVICE_INFO: "GET_DEVICE_INFO",
    CMD_ATTLOG_RRQ: "ATTLOG_RRQ",
    CMD_USER_WRQ: "USER_WRQ",
    CMD_USERTEMP_RRQ: "USERTEMP_RRQ",
    CMD_ACK_OK: "ACK_OK",
    CMD_ACK_ERROR: "ACK_ERROR",
    CMD_ACK_UNAUTH: "ACK_UNAUTH",
}


class FrameHeader(NamedTuple):
    command: int
    session_id: int
    reply_id: int
    data_length: int


def encode_header(command: int, session_id: int, reply_id: int, data_length: int = 0) -> bytes:
    """Pack a header. Raises ValueError if a field does not fit in uint16."""
    for name, value in (
        ("command", command),
        ("session_id", session_id),
        ("reply_id", reply_id),
        ("data_length", data_length),
    ):
        if not 0 <= value <= 0xFFFF:
            raise ValueError(f"{name} out of uint16 range: {value}")
    return struct.pack(HEADER_FORMAT, command, session_id, reply_id, data_length)


def decode_header(raw: bytes) -> FrameHeader:
    """Unpack the first 8 bytes of a frame."""
    if len(raw) < HEADER_SIZE:
        raise ValueError(f"Frame header needs {HEADER_SIZE} bytes, got {len(raw)}")
    return FrameHeader(*struct.unpack(HEADER_FORMAT, raw[:HEADER_SIZE]))


def encode_frame(command: int, session_id: int, reply_id: int, payload: bytes = b"") -> bytes:
    """Header plus payload, ready to write to the socket."""
    if len(payload) > MAX_PAYLOAD:
        raise ValueError(f"Payload too large for one frame: {len(payload)} bytes")
    return encode_header(command, session_id, reply_id, len(payload)) + payload


def command_name(code: int) -> str:
    return COMMAND_NAMES.get(code, str(code))
