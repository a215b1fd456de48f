"""
Status poller background worker.

Recovers lost webhooks: every status_poll_interval_seconds, asks each gateway
for the native status of payment intents that are still open.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from storefront.config import get_settings
from storefront.core.provisioning import ProvisioningService
from storefront.core.reconciler import PaymentReconciler
from storefront.core.reconciliation import StatusPoller
from storefront.database.connection import close_db
from storefront.gateways.registry import GatewayRegistry
from storefront.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_status_poller(interval_seconds: Optional[int] = None, once: bool = False) -> None:
    """
    Start the status poller worker.

    Args:
        interval_seconds: Seconds between passes (default: from settings)
        once: Run a single pass and exit
    """
    setup_logging()
    interval = interval_seconds or get_settings().status_poll_interval_seconds
    logger.info("status_poller_worker_starting", interval_seconds=interval)

    registry = GatewayRegistry()
    provisioning = ProvisioningService()
    poller = StatusPoller(PaymentReconciler(registry, provisioning))

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("status_poller_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                # Pick up gateway configuration changes between passes
                await registry.load()
                await poller.poll_once()
            except SQLAlchemyError as e:
                logger.error("status_poll_pass_failed", error=str(e))

            if once:
                break

            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 5)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        await provisioning.close()
        await close_db()
        logger.info("status_poller_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Gateway status poller")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between passes")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    asyncio.run(start_status_poller(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
