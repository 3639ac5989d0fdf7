"""
Main entrypoint: runs the sync scheduler, or a single device operation.

The HTTP API runs separately under uvicorn.

Usage:
    python -m timeclock                                   # starts scheduler
    python -m timeclock sync DEVICE_ID --company-id C     # one-shot attendance pull
    python -m timeclock sync DEVICE_ID --company-id C --action test_connection
    uvicorn timeclock.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import argparse
import asyncio
import json
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_once(args: argparse.Namespace) -> int:
    from timeclock.db.engine import get_engine
    from timeclock.sync.orchestrator import (
        DeviceNotConfiguredError,
        DeviceNotFoundError,
        InvalidSyncOptionsError,
        SyncOrchestrator,
    )

    orchestrator = SyncOrchestrator(engine=get_engine())
    try:
        summary = await orchestrator.run(
            args.action,
            args.device_id,
            args.company_id,
            user_id=args.user_id,
            options={"start_date": args.start_date, "end_date": args.end_date},
        )
    except (DeviceNotFoundError, DeviceNotConfiguredError, InvalidSyncOptionsError) as exc:
        logger.error("%s", exc)
        return 2

    print(json.dumps(summary.to_response(), indent=2))
    return 0 if summary.success else 1


async def _run_scheduler() -> None:
    from timeclock.config import get_settings
    from timeclock.db.engine import get_engine
    from timeclock.scheduler.jobs import build_scheduler

    settings = get_settings()
    scheduler = build_scheduler(get_engine())
    scheduler.start()
    logger.info(
        "Scheduler started (attendance every %d min, users nightly at %02d:00 UTC)",
        settings.sync_interval_minutes,
        settings.user_sync_hour,
    )
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="timeclock", description="Time-clock terminal sync")
    sub = parser.add_subparsers(dest="command")

    sync = sub.add_parser("sync", help="Run one operation against one device")
    sync.add_argument("device_id")
    sync.add_argument("--company-id", required=True)
    sync.add_argument(
        "--action",
        default="sync_attendance",
        choices=["test_connection", "sync_attendance", "sync_users", "get_device_info"],
    )
    sync.add_argument("--user-id", default=None, help="Recorded as triggered_by")
    sync.add_argument("--start-date", default=None, help="ISO date, inclusive")
    sync.add_argument("--end-date", default=None, help="ISO date, inclusive")
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    if args.command == "sync":
        sys.exit(asyncio.run(_run_once(args)))
    asyncio.run(_run_scheduler())


if __name__ == "__main__":
    main()
