"""
Async session with a time-clock terminal.

One DeviceSession per run and per device. The session/reply counters live
on the instance, so concurrent syncs of different devices never share
protocol state.

Public data methods never raise: transport failures, timeouts and device
refusals come back as DeviceResult(success=False, error=...). Internally,
frame exchange raises ConnectivityError and the public boundary converts it.

The session token is the sessionId the device puts in its CONNECT reply; a
random local token is assigned only when the device replies with 0.

Usage:
    session = DeviceSession("192.168.1.201", 4370)
    async with session.connected() as conn:
        if conn.success:
            result = await session.get_attendance_logs()
    # disconnected here on every path
"""
import asyncio
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from timeclock.device import protocol
from timeclock.device.decoder import (
    DEFAULT_DEVICE_INFO,
    AttendancePunch,
    DeviceUser,
    decode_attendance_logs,
    decode_device_info,
    decode_users,
    encode_user_line,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 4370
DEFAULT_TIMEOUT = 5.0


class ConnectivityError(RuntimeError):
    """Raised when the device is unreachable, times out, or refuses a command."""


@dataclass
class DeviceResult:
    """Outcome of one session operation."""

    success: bool
    error: Optional[str] = None
    device_info: Optional[Dict[str, str]] = None
    logs: List[AttendancePunch] = field(default_factory=list)
    users: List[DeviceUser] = field(default_factory=list)


class DeviceSession:
    """
    Disconnected → connect() → Connected → disconnect() → Disconnected.

    Call disconnect() after every successful connect(); connected() does
    this for you.
    """

    def __init__(self, ip: str, port: Optional[int] = None, timeout: float = DEFAULT_TIMEOUT):
        self.ip = ip
        self.port = port or DEFAULT_PORT
        self.timeout = timeout
        self.session_id = 0
        self.reply_id = 0
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and self.session_id != 0

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def connect(self) -> DeviceResult:
        """
        Open the transport, handshake, and read device metadata.

        Never raises. On success the device info is attached to the result
        (falling back to placeholder values if the device returns none).
        """
        logger.info("Connecting to device at %s:%s", self.ip, self.port)
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.ip, self.port), timeout=self.timeout
            )
            header, _ = await self._send_command(protocol.CMD_CONNECT)
        except asyncio.CancelledError:
            await self._close_transport()
            raise
        except asyncio.TimeoutError:
            await self._close_transport()
            return DeviceResult(success=False, error="Connection timeout - device not responding")
        except (ConnectivityError, OSError) as exc:
            await self._close_transport()
            logger.warning("Connection to %s:%s failed: %s", self.ip, self.port, exc)
            return DeviceResult(success=False, error=str(exc) or "Connection failed")

        # The device normally assigns the session; 0 means "pick your own".
        self.session_id = header.session_id or random.randint(1, 0xFFFF)
        logger.info("Connected to %s, session ID: %d", self.ip, self.session_id)

        info = await self.get_device_info()
        return DeviceResult(
            success=True,
            device_info=info.device_info or dict(DEFAULT_DEVICE_INFO),
        )

    async def disconnect(self) -> None:
        """Best-effort EXIT and socket close. Failures are logged, never raised."""
        try:
            if self._writer is not None and self.session_id:
                await self._send_command(protocol.CMD_EXIT)
        except (ConnectivityError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Disconnect from %s failed: %s", self.ip, exc)
        finally:
            self.session_id = 0
            await self._close_transport()
        logger.info("Disconnected from %s", self.ip)

    @asynccontextmanager
    async def connected(self) -> AsyncIterator[DeviceResult]:
        """Yield the connect() result; disconnect on exit if it succeeded."""
        result = await self.connect()
        try:
            yield result
        finally:
            if result.success:
                await self.disconnect()

    # ── Data operations ───────────────────────────────────────────────────────

    async def get_device_info(self) -> DeviceResult:
        try:
            _, payload = await self._send_command(protocol.CMD_GET_DEVICE_INFO)
        except (ConnectivityError, OSError, asyncio.TimeoutError) as exc:
            return self._failure("get device info", exc)
        return DeviceResult(success=True, device_info=decode_device_info(payload))

    async def get_attendance_logs(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> DeviceResult:
        """
        Read the full punch buffer.

        The date bounds are not sent to the device (ATTLOG_RRQ takes no
        range); callers filter the decoded punches.
        """
        logger.info("Fetching attendance logs from %s (%s → %s)", self.ip, start_date, end_date)
        try:
            _, payload = await self._send_command(protocol.CMD_ATTLOG_RRQ)
        except (ConnectivityError, OSError, asyncio.TimeoutError) as exc:
            return self._failure("fetch attendance logs", exc)
        return DeviceResult(success=True, logs=decode_attendance_logs(payload))

    async def get_users(self) -> DeviceResult:
        logger.info("Fetching users from %s", self.ip)
        try:
            _, payload = await self._send_command(protocol.CMD_USERTEMP_RRQ)
        except (ConnectivityError, OSError, asyncio.TimeoutError) as exc:
            return self._failure("fetch users", exc)
        return DeviceResult(success=True, users=decode_users(payload))

    async def push_user(self, user: DeviceUser) -> DeviceResult:
        """Write one user record to the terminal (USER_WRQ)."""
        try:
            await self._send_command(protocol.CMD_USER_WRQ, encode_user_line(user))
        except (ConnectivityError, OSError, asyncio.TimeoutError) as exc:
            return self._failure(f"push user {user.user_id}", exc)
        return DeviceResult(success=True)

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _failure(self, what: str, exc: BaseException) -> DeviceResult:
        if isinstance(exc, asyncio.TimeoutError):
            message = f"Timed out trying to {what} - device not responding"
        else:
            message = f"Failed to {what}: {exc}"
        logger.warning("%s (%s)", message, self.ip)
        return DeviceResult(success=False, error=message)

    def _next_reply_id(self) -> int:
        self.reply_id = (self.reply_id + 1) & 0xFFFF
        return self.reply_id

    async def _send_command(self, command: int, payload: bytes = b"") -> Tuple[Any, bytes]:
        """
        Write one frame and read the reply frame.

        Returns:
            (reply header, reply payload)

        Raises:
            ConnectivityError: not connected, connection dropped, or the
                device replied with anything other than ACK_OK.
            asyncio.TimeoutError: no reply within self.timeout.
        """
        if self._reader is None or self._writer is None:
            raise ConnectivityError("Not connected")

        frame = protocol.encode_frame(command, self.session_id, self._next_reply_id(), payload)
        self._writer.write(frame)
        await asyncio.wait_for(self._writer.drain(), timeout=self.timeout)

        try:
            raw_header = await asyncio.wait_for(
                self._reader.readexactly(protocol.HEADER_SIZE), timeout=self.timeout
            )
            header = protocol.decode_header(raw_header)
            data = b""
            if header.data_length:
                data = await asyncio.wait_for(
                    self._reader.readexactly(header.data_length), timeout=self.timeout
                )
        except asyncio.IncompleteReadError as exc:
            raise ConnectivityError(
                f"Connection closed during {protocol.command_name(command)}"
            ) from exc

        if header.command != protocol.CMD_ACK_OK:
            raise ConnectivityError(
                f"Device rejected {protocol.command_name(command)} "
                f"with {protocol.command_name(header.command)}"
            )
        return header, data

    async def _close_transport(self) -> None:
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=self.timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.debug("Error closing socket to %s: %s", self.ip, exc)
