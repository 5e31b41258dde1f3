#!/usr/bin/env python3
"""
MailRelay - Standalone Watchdog Runner

Runs the relay watchdog outside the web process (cron service).

    python run_watchdog.py          # sweep every WATCHDOG_INTERVAL_MINUTES
    python run_watchdog.py --once   # single sweep, print summary, exit

With CONTINUATION_MODE=http, restarts are posted to the web service at
SELF_INVOKE_BASE_URL; with inprocess they run in this process.
"""
import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv

# Setup logging first
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

load_dotenv()

REQUIRED_VARS = ["DATABASE_URL"]
missing = [var for var in REQUIRED_VARS if not os.getenv(var)]
if missing:
    logger.error(f"Missing required environment variables: {missing}")
    sys.exit(1)

# Import after env validation
from mailrelay.core.config import settings
from mailrelay.core.database import AsyncSessionLocal, engine
from mailrelay.jobs.registry import build_registry
from mailrelay.jobs.watchdog import PeriodicWatchdog
from mailrelay.services.scheduler import TaskSupervisor, build_scheduler


async def main(once: bool) -> int:
    logger.info("=" * 60)
    logger.info("MailRelay Watchdog")
    logger.info("=" * 60)
    logger.info(f"Started at: {datetime.now(timezone.utc).isoformat()}")
    logger.info(f"Continuation mode: {settings.CONTINUATION_MODE}")

    supervisor = TaskSupervisor("watchdog")
    scheduler = build_scheduler(settings, supervisor)
    registry = build_registry(settings, AsyncSessionLocal, scheduler)
    watchdog = PeriodicWatchdog(
        registry.job_store,
        registry.lock_manager,
        scheduler,
        registry.adapters,
        settings,
        initial_delay_seconds=0,
    )

    try:
        if once:
            summary = await watchdog.run_now()
            print(json.dumps(summary, indent=2))
            return 1 if summary["errors"] else 0

        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, shutdown.set)

        await watchdog.start()
        logger.info("Watchdog running. Press Ctrl+C to stop.")
        await shutdown.wait()
        logger.info("Shutdown signal received")
        return 0
    finally:
        await watchdog.stop()
        await supervisor.drain(timeout=settings.INVOCATION_TIME_BUDGET_SECONDS)
        await registry.close()
        await engine.dispose()
        logger.info("Watchdog shutdown complete")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="MailRelay watchdog")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.once)))
