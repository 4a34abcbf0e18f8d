"""
Reconciliation background worker.

Rebuilds every derived aggregate once a day at the configured hour (UTC).
"""
import argparse
import asyncio
import signal
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog

from commission_engine.config import get_settings
from commission_engine.core.reconciliation import ReconciliationEngine
from commission_engine.database.connection import close_db, get_session_factory
from commission_engine.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_daily_reconciliation(engine: Optional[ReconciliationEngine] = None) -> Dict[str, Any]:
    """
    Run one full reconciliation.

    Returns:
        Dict[str, Any]: Reconciliation report
    """
    logger.info("daily_reconciliation_started")
    engine = engine or ReconciliationEngine()

    session_factory = get_session_factory()
    async with session_factory() as db:
        report = await engine.recompute_all(db)

    if report.creators_drifted or report.payouts_drifted:
        logger.warning(
            "reconciliation_drift_detected",
            run_id=report.run_id,
            creators_drifted=report.creators_drifted,
            payouts_drifted=report.payouts_drifted,
        )
    return report.to_dict()


def seconds_until_next_run(target_hour: int, now: Optional[datetime] = None) -> float:
    """
    Seconds until the next scheduled run.

    Args:
        target_hour: Hour of day to run (24-hour format, UTC)
        now: Clock override

    Returns:
        float: Seconds until next run
    """
    now = now or datetime.now(timezone.utc)
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()
    logger.info(
        "reconciliation_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )
    return seconds_until


async def start_reconciliation_worker(target_hour: int = 2) -> None:
    """
    Start the reconciliation worker.

    Args:
        target_hour: Hour of day to run (UTC)
    """
    setup_logging()
    logger.info("reconciliation_worker_starting", target_hour=target_hour)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=seconds_until_next_run(target_hour))
                break
            except asyncio.TimeoutError:
                pass

            try:
                await run_daily_reconciliation()
            except Exception as e:
                # One failed run must not stop the schedule
                logger.error("reconciliation_execution_error", error=str(e))

    finally:
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--hour",
        type=int,
        default=get_settings().reconciliation_hour,
        help="Hour of day to run reconciliation (0-23, UTC)",
    )
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    args = parser.parse_args()

    if args.once:
        setup_logging()
        asyncio.run(_run_once())
    else:
        asyncio.run(start_reconciliation_worker(target_hour=args.hour))


async def _run_once() -> None:
    try:
        await run_daily_reconciliation()
    finally:
        await close_db()


if __name__ == "__main__":
    main()
