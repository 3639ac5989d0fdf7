"""Shared test fixtures."""
import asyncio
from typing import Dict, Generator, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from timeclock.config import Settings
from timeclock.device import protocol
from timeclock.device.decoder import DeviceUser, decode_attendance_logs
from timeclock.device.session import DeviceResult, DeviceSession
from timeclock.models.device import Device, DeviceUserMapping, EmployeeProfile  # noqa: F401
from timeclock.models.ledger import TimeClockEntry  # noqa: F401
from timeclock.models.sync import SyncLog  # noqa: F401
from timeclock.sync.orchestrator import SyncOrchestrator

COMPANY_ID = "company-1"
EMPLOYEE_ID = "employee-1"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="device")
def device_fixture(test_session: Session) -> Device:
    """A registered, addressable terminal."""
    device = Device(
        company_id=COMPANY_ID,
        device_name="Front door",
        ip_address="192.168.1.201",
        port=4370,
    )
    test_session.add(device)
    test_session.commit()
    test_session.refresh(device)
    return device


@pytest.fixture(name="mapped_employee")
def mapped_employee_fixture(test_session: Session, device: Device) -> str:
    """Device user "1" enrolled as EMPLOYEE_ID."""
    test_session.add(DeviceUserMapping(
        company_id=COMPANY_ID,
        device_id=device.id,
        device_user_id="1",
        employee_id=EMPLOYEE_ID,
        device_user_name="Employee 1",
    ))
    test_session.commit()
    return EMPLOYEE_ID


# ─── Fake device session ──────────────────────────────────────────────────────

class FakeDeviceSession(DeviceSession):
    """DeviceSession with canned results instead of a socket."""

    def __init__(
        self,
        ip: str,
        port: Optional[int] = None,
        timeout: float = 5.0,
        *,
        connect_ok: bool = True,
        connect_error: str = "Connection timeout - device not responding",
        device_info: Optional[Dict[str, str]] = None,
        attendance_buffer: str = "",
        users: Optional[List[DeviceUser]] = None,
        logs_error: Optional[str] = None,
        users_error: Optional[str] = None,
    ):
        super().__init__(ip, port, timeout)
        self.connect_ok = connect_ok
        self.connect_error = connect_error
        self.info = device_info or {"deviceName": "ZKTeco Terminal", "serialNumber": "ZKT1921681201"}
        self.attendance_buffer = attendance_buffer
        self.users = users or []
        self.logs_error = logs_error
        self.users_error = users_error
        self.calls: List[str] = []

    async def connect(self) -> DeviceResult:
        self.calls.append("connect")
        if not self.connect_ok:
            return DeviceResult(success=False, error=self.connect_error)
        self.session_id = 4321
        return DeviceResult(success=True, device_info=dict(self.info))

    async def disconnect(self) -> None:
        self.calls.append("disconnect")
        self.session_id = 0

    async def get_attendance_logs(self, start_date=None, end_date=None) -> DeviceResult:
        self.calls.append("get_attendance_logs")
        if self.logs_error:
            return DeviceResult(success=False, error=self.logs_error)
        return DeviceResult(success=True, logs=decode_attendance_logs(self.attendance_buffer))

    async def get_users(self) -> DeviceResult:
        self.calls.append("get_users")
        if self.users_error:
            return DeviceResult(success=False, error=self.users_error)
        return DeviceResult(success=True, users=list(self.users))


@pytest.fixture(name="make_orchestrator")
def make_orchestrator_fixture(engine):
    """
    Build an orchestrator whose sessions are FakeDeviceSessions.

    Returns (orchestrator, sessions) where sessions collects every session
    the orchestrator created, in order.
    """

    def _make(**fake_kwargs):
        sessions: List[FakeDeviceSession] = []

        def factory(ip, port=None, timeout=5.0):
            session = FakeDeviceSession(ip, port, timeout, **fake_kwargs)
            sessions.append(session)
            return session

        orchestrator = SyncOrchestrator(engine, session_factory=factory, settings=Settings())
        return orchestrator, sessions

    return _make


# ─── Fake terminal (real TCP, real framing) ───────────────────────────────────

class FakeTerminal:
    """Minimal asyncio TCP server speaking the terminal framing."""

    def __init__(self):
        self.session_id = 0x1234
        self.replies: Dict[int, bytes] = {}
        self.reply_codes: Dict[int, int] = {}
        self.silent = set()  # commands that never get a reply
        self.close_on = set()  # commands that drop the connection instead of replying
        self.received: List[protocol.FrameHeader] = []
        self.payloads: List[bytes] = []
        self.port = 0
        self._server = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        self._server.close()
        await self._server.wait_closed()

    def commands(self) -> List[int]:
        return [h.command for h in self.received]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                header = protocol.decode_header(await reader.readexactly(protocol.HEADER_SIZE))
                payload = b""
                if header.data_length:
                    payload = await reader.readexactly(header.data_length)
                self.received.append(header)
                self.payloads.append(payload)

                if header.command in self.close_on:
                    break
                if header.command in self.silent:
                    continue

                session_id = self.session_id if header.command == protocol.CMD_CONNECT else header.session_id
                writer.write(protocol.encode_frame(
                    self.reply_codes.get(header.command, protocol.CMD_ACK_OK),
                    session_id,
                    header.reply_id,
                    self.replies.get(header.command, b""),
                ))
                await writer.drain()
                if header.command == protocol.CMD_EXIT:
                    break
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


@pytest.fixture
async def terminal():
    t = FakeTerminal()
    await t.start()
    yield t
    await t.stop()
