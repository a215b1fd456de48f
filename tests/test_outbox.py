"""
Tests for the transactional outbox publisher.
"""
import json
import uuid
from typing import Any, Dict, List

import httpx
import pytest
from sqlalchemy import select

from storefront.config import get_settings
from storefront.core.events import write_outbox_event
from storefront.core.outbox import OutboxPublisher
from storefront.database.models import OutboxEvent


@pytest.fixture
def add_events(session_factory: Any) -> Any:
    async def _add(*event_types: str) -> uuid.UUID:
        aggregate_id = uuid.uuid4()
        async with session_factory() as db:
            for event_type in event_types:
                write_outbox_event(
                    db,
                    aggregate_id=aggregate_id,
                    aggregate_type="order",
                    event_type=event_type,
                    payload={"order_number": "CS-20260101-ABC123"},
                )
            await db.commit()
        return aggregate_id

    return _add


async def published_flags(session_factory: Any) -> List[bool]:
    async with session_factory() as db:
        result = await db.execute(select(OutboxEvent.published).order_by(OutboxEvent.id))
        return list(result.scalars().all())


class TestOutboxPublisher:
    """Test suite for outbox delivery."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_process_batch_publishes_in_order(
        self, session_factory: Any, add_events: Any
    ) -> None:
        delivered: List[Dict[str, Any]] = []

        async def publish(event: Dict[str, Any]) -> None:
            delivered.append(event)

        aggregate_id = await add_events("payment.completed", "order.confirmed")
        publisher = OutboxPublisher(publisher_func=publish, session_factory=session_factory)

        assert await publisher.process_batch() == 2
        assert [e["event_type"] for e in delivered] == ["payment.completed", "order.confirmed"]
        assert delivered[0]["aggregate_id"] == str(aggregate_id)
        assert await published_flags(session_factory) == [True, True]
        assert await publisher.process_batch() == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_delivery_stops_at_first_failure(
        self, session_factory: Any, add_events: Any
    ) -> None:
        """Later events stay queued so one aggregate's events are never reordered."""
        calls = 0

        async def flaky(event: Dict[str, Any]) -> None:
            nonlocal calls
            calls += 1
            if calls == 2:
                raise httpx.ConnectError("notification service down")

        await add_events("payment.completed", "order.confirmed", "order.refunded")
        publisher = OutboxPublisher(publisher_func=flaky, session_factory=session_factory)

        assert await publisher.process_batch() == 1
        assert await published_flags(session_factory) == [True, False, False]
        assert await publisher.get_pending_count() == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_batch_size(self, session_factory: Any, add_events: Any) -> None:
        async def publish(event: Dict[str, Any]) -> None:
            return None

        await add_events("a", "b", "c")
        publisher = OutboxPublisher(publisher_func=publish, batch_size=2, session_factory=session_factory)

        assert await publisher.process_batch() == 2
        assert await publisher.get_pending_count() == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_default_publisher_posts_to_notification_webhook(
        self, session_factory: Any, add_events: Any, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        received: List[Dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == "https://hooks.example.com/storefront"
            received.append(json.loads(request.content))
            return httpx.Response(204)

        monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/storefront")
        get_settings.cache_clear()
        await add_events("order.confirmed")
        publisher = OutboxPublisher(
            session_factory=session_factory, transport=httpx.MockTransport(handler)
        )

        assert await publisher.process_batch() == 1
        assert received[0]["event_type"] == "order.confirmed"
        assert received[0]["payload"] == {"order_number": "CS-20260101-ABC123"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_default_publisher_rejected_event_stays_queued(
        self, session_factory: Any, add_events: Any, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/storefront")
        get_settings.cache_clear()
        await add_events("order.confirmed")
        publisher = OutboxPublisher(
            session_factory=session_factory,
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        assert await publisher.process_batch() == 0
        assert await publisher.get_pending_count() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_default_publisher_without_webhook_only_logs(
        self, session_factory: Any, add_events: Any
    ) -> None:
        await add_events("order.confirmed")
        publisher = OutboxPublisher(session_factory=session_factory)

        assert await publisher.process_batch() == 1
        assert await publisher.get_pending_count() == 0
