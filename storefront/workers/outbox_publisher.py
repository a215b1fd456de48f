"""
Outbox publisher background worker.

Continuously polls the outbox table and delivers events (order.confirmed,
payment.needs_review, ...) to the notification webhook.
"""
import asyncio
import signal
from typing import Any

import structlog

from storefront.core.outbox import OutboxPublisher
from storefront.database.connection import close_db
from storefront.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs until SIGINT/SIGTERM.
    """
    setup_logging()

    logger.info("outbox_publisher_worker_starting")

    publisher = OutboxPublisher(batch_size=100, poll_interval_seconds=1.0)

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    finally:
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
