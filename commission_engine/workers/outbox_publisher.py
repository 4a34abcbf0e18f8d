"""
Outbox publisher background worker.

Continuously polls the outbox table and delivers alerts.
"""
import asyncio
import signal

import structlog

from commission_engine.config import get_settings
from commission_engine.core.outbox import OutboxPublisher
from commission_engine.database.connection import close_db
from commission_engine.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """Run the publisher until SIGINT or SIGTERM."""
    setup_logging()
    settings = get_settings()

    logger.info("outbox_publisher_worker_starting", alerts_enabled=settings.alerts_enabled)

    publisher = OutboxPublisher(
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, publisher.stop)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
