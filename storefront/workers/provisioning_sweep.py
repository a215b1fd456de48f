"""
Provisioning sweep background worker.

Retries credential issuance for paid orders whose line items are still
unprovisioned (issuer outage, crash between payment and provisioning).
"""
import asyncio
import signal
from typing import Any, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from storefront.config import get_settings
from storefront.core.provisioning import ProvisioningService
from storefront.database.connection import close_db
from storefront.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_provisioning_sweep(
    interval_seconds: Optional[int] = None,
    limit: int = 100,
    once: bool = False,
) -> None:
    """
    Start the provisioning sweep worker.

    Args:
        interval_seconds: Seconds between sweeps (default: from settings)
        limit: Maximum orders per sweep
        once: Run a single sweep and exit
    """
    setup_logging()
    interval = interval_seconds or get_settings().provisioning_sweep_interval_seconds
    logger.info("provisioning_sweep_worker_starting", interval_seconds=interval)

    provisioning = ProvisioningService()
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("provisioning_sweep_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await provisioning.retry_failed(limit=limit)
            except SQLAlchemyError as e:
                logger.error("provisioning_sweep_failed", error=str(e))

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
        logger.info("provisioning_sweep_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Provisioning retry sweep")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between sweeps")
    parser.add_argument("--limit", type=int, default=100, help="Orders per sweep")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    asyncio.run(
        start_provisioning_sweep(interval_seconds=args.interval, limit=args.limit, once=args.once)
    )


if __name__ == "__main__":
    main()
