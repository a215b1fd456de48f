"""
Transactional outbox publisher.

Events (order.confirmed, payment.completed, payment.needs_review,
provisioning.failed, ...) are written in the same transaction as the state
change they describe, then delivered here: POSTed to the notification
webhook when one is configured, logged otherwise.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.config import get_settings
from storefront.database.connection import get_session_factory
from storefront.database.models import OutboxEvent, utcnow
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Publisher = Callable[[Dict[str, Any]], Awaitable[None]]


class OutboxPublisher:
    """
    Publishes events from the outbox table.

    Delivery is at-least-once: an event is marked published only after the
    publisher returned, so consumers must tolerate repeats (the event id is
    included for deduplication).
    """

    def __init__(
        self,
        publisher_func: Optional[Publisher] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize outbox publisher.

        Args:
            publisher_func: Coroutine delivering one event (default: notification webhook)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval when the outbox is empty
            session_factory: Optional session factory
            transport: Optional httpx transport for the default publisher
        """
        self.publisher_func = publisher_func or self._default_publisher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._session_factory = session_factory
        self._transport = transport
        self._running = False

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def _default_publisher(self, event_data: Dict[str, Any]) -> None:
        """POST the event to the notification webhook, or just log it."""
        settings = get_settings()
        if not settings.notification_webhook_url:
            logger.info(
                "outbox_event_published_default",
                event_type=event_data.get("event_type"),
                aggregate_id=event_data.get("aggregate_id"),
            )
            return

        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            response = await client.post(settings.notification_webhook_url, json=event_data)
            response.raise_for_status()

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if published successfully, False otherwise
        """
        event_data = {
            "id": event.id,
            "aggregate_id": str(event.aggregate_id),
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": event.created_at.isoformat(),
        }
        try:
            await self.publisher_func(event_data)
        except httpx.HTTPError as e:
            logger.error("outbox_event_publish_failed", event_id=event.id, error=str(e))
            return False

        metrics.record_outbox_event_published(event.event_type)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
        )
        return True

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Delivery stops at the first failure so that events of one aggregate
        are never published out of order.

        Returns:
            int: Number of events published
        """
        async with self.session_factory() as db:
            events = await self._fetch_unpublished_events(db)
            if not events:
                return 0

            published_ids = []
            for event in events:
                if not await self._publish_event(event):
                    break
                published_ids.append(event.id)

            if published_ids:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(published_ids))
                    .values(published=True, published_at=utcnow())
                )
                await db.commit()

        logger.info(
            "outbox_batch_processed",
            total=len(events),
            published=len(published_ids),
        )
        return len(published_ids)

    async def start(self) -> None:
        """Continuously poll for unpublished events until stop() is called."""
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                except SQLAlchemyError as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published_count = 0
                if published_count == 0:
                    await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Number of unpublished events."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(OutboxEvent.id)).where(OutboxEvent.published.is_(False))
            )
            return int(result.scalar_one())
