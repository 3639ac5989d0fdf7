"""
Capture raw replies from a real terminal and save them as test fixtures.

The payload layouts assumed by timeclock.device.decoder have to be
checked against real hardware. Run this on the same network as a
terminal:

    python scripts/capture_device_payloads.py 192.168.1.201 [--port 4370]

Outputs (overwrite tests/fixtures/):
    device_info.bin       — raw GET_DEVICE_INFO payload
    attendance_logs.bin   — raw ATTLOG_RRQ payload
    users.bin             — raw USERTEMP_RRQ payload
    decoded.json          — what the decoders make of the three payloads
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

# Allow running from repo root without installing the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from timeclock.device import protocol
from timeclock.device.decoder import decode_attendance_logs, decode_device_info, decode_users
from timeclock.device.session import ConnectivityError, DeviceSession

FIXTURES_DIR = Path(__file__).parent.parent / "tests" / "fixtures"

COMMANDS = [
    ("device_info.bin", protocol.CMD_GET_DEVICE_INFO),
    ("attendance_logs.bin", protocol.CMD_ATTLOG_RRQ),
    ("users.bin", protocol.CMD_USERTEMP_RRQ),
]


def _save(name: str, data: bytes) -> None:
    path = FIXTURES_DIR / name
    path.write_bytes(data)
    print(f"  Saved {path} ({len(data)} bytes)")


async def _capture(ip: str, port: int, timeout: float) -> int:
    FIXTURES_DIR.mkdir(parents=True, exist_ok=True)
    session = DeviceSession(ip, port, timeout=timeout)

    print(f"Connecting to {ip}:{port}...")
    async with session.connected() as conn:
        if not conn.success:
            print(f"Connection failed: {conn.error}")
            return 1
        print(f"   Session ID: {session.session_id}\n")

        payloads = {}
        for name, command in COMMANDS:
            print(f"   Sending {protocol.command_name(command)}...")
            try:
                _, data = await session._send_command(command)
            except (ConnectivityError, OSError, asyncio.TimeoutError) as exc:
                print(f"   {protocol.command_name(command)} failed: {exc}")
                continue
            _save(name, data)
            payloads[name] = data

    decoded = {
        "device_info": decode_device_info(payloads.get("device_info.bin", b"")),
        "attendance_logs": [
            {**p.__dict__, "timestamp": p.timestamp.isoformat()}
            for p in decode_attendance_logs(payloads.get("attendance_logs.bin", b""))
        ],
        "users": [u.to_dict() for u in decode_users(payloads.get("users.bin", b""))],
    }
    (FIXTURES_DIR / "decoded.json").write_text(json.dumps(decoded, indent=2))

    print("\nSummary:")
    print(f"   Device info keys: {sorted(decoded['device_info'])}")
    print(f"   Punches decoded:  {len(decoded['attendance_logs'])}")
    print(f"   Users decoded:    {len(decoded['users'])}")
    print("\nThe fixtures contain employee data; review before committing.")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Capture raw terminal payloads")
    parser.add_argument("ip", help="Terminal IP address")
    parser.add_argument("--port", type=int, default=4370)
    parser.add_argument("--timeout", type=float, default=5.0)
    args = parser.parse_args()
    sys.exit(asyncio.run(_capture(args.ip, args.port, args.timeout)))


if __name__ == "__main__":
    main()
