"""
Tests for credential provisioning and the retry sweep.
"""
import json
import uuid
from decimal import Decimal
from typing import Any, Dict, List

import httpx
import pytest
from sqlalchemy import select

from storefront.core.exceptions import NotFoundError, ProvisioningFailure
from storefront.core.orchestrator import CheckoutRequest, OrderOrchestrator
from storefront.core.provisioning import HttpCredentialIssuer, ProvisioningService
from storefront.database.models import Order, OutboxEvent, ProvisioningResult


async def order_id_of(session_factory: Any, order_number: str) -> uuid.UUID:
    async with session_factory() as db:
        result = await db.execute(select(Order.id).where(Order.order_number == order_number))
        return result.scalar_one()


async def outbox_events(session_factory: Any, event_type: str) -> List[OutboxEvent]:
    async with session_factory() as db:
        result = await db.execute(
            select(OutboxEvent).where(OutboxEvent.event_type == event_type).order_by(OutboxEvent.id)
        )
        return list(result.scalars().all())


@pytest.fixture
def failed_order(
    orchestrator: OrderOrchestrator,
    make_product: Any,
    fund_balance: Any,
    cart_item: Any,
    issuer: Any,
) -> Any:
    """A paid balance order whose only line item failed its first provisioning attempt."""

    async def _order() -> str:
        await fund_balance("user-1", "50.00")
        product = await make_product()
        issuer.failing_products.add(str(product.id))
        result = await orchestrator.checkout(
            CheckoutRequest(
                user_id="user-1",
                settlement_method="balance",
                line_items=[cart_item(product, quantity=2)],
                buyer={"email": "buyer@example.com"},
            )
        )
        return result.order_numbers[0]

    return _order


class TestProvisioningService:
    """Test suite for line item provisioning."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failure_recorded_without_reversing_payment(
        self, failed_order: Any, orchestrator: OrderOrchestrator, session_factory: Any, ledger: Any
    ) -> None:
        order_number = await failed_order()

        order = await orchestrator.get_order(order_number)
        assert order["status"] == "processing"
        assert order["line_items"][0]["provisioning_status"] == "failed"
        assert order["line_items"][0]["provisioning_attempts"] == 1
        # Paid amount stays debited
        assert await ledger.get_balance("user-1") == Decimal("10.00")

        async with session_factory() as db:
            attempt = (await db.execute(select(ProvisioningResult))).scalar_one()
        assert attempt.success is False
        assert attempt.error == "credential service unavailable"

        failed = await outbox_events(session_factory, "provisioning.failed")
        assert failed[0].payload["attempt"] == 1
        assert failed[0].payload["gave_up"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retry_sweep_confirms_order(
        self,
        failed_order: Any,
        provisioning: ProvisioningService,
        orchestrator: OrderOrchestrator,
        session_factory: Any,
        issuer: Any,
    ) -> None:
        order_number = await failed_order()
        issuer.failing_products.clear()

        assert await provisioning.retry_failed() == {"attempted": 1, "confirmed": 1}

        order = await orchestrator.get_order(order_number)
        assert order["status"] == "confirmed"
        assert order["line_items"][0]["provisioning_attempts"] == 2
        confirmed = await outbox_events(session_factory, "order.confirmed")
        assert len(confirmed) == 1
        accounts = confirmed[0].payload["credentials"][0]["accounts"]
        assert len(accounts) == 2

        # Nothing left to retry
        assert await provisioning.retry_failed() == {"attempted": 0, "confirmed": 0}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sweep_gives_up_after_max_attempts(
        self,
        failed_order: Any,
        provisioning: ProvisioningService,
        session_factory: Any,
        issuer: Any,
    ) -> None:
        await failed_order()

        assert await provisioning.retry_failed() == {"attempted": 1, "confirmed": 0}
        assert await provisioning.retry_failed() == {"attempted": 1, "confirmed": 0}
        assert await provisioning.retry_failed() == {"attempted": 0, "confirmed": 0}

        assert len(issuer.calls) == 3
        failed = await outbox_events(session_factory, "provisioning.failed")
        assert [e.payload["gave_up"] for e in failed] == [False, False, True]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_issuer_receives_line_item_configuration(
        self, failed_order: Any, issuer: Any
    ) -> None:
        order_number = await failed_order()

        call = issuer.calls[0]
        assert call["order_number"] == order_number
        assert call["idempotency_key"].startswith(f"{order_number}:")
        assert call["quantity"] == 2
        assert call["duration_months"] == 12
        assert call["buyer_email"] == "buyer@example.com"
        assert len(call["accounts"]) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancelled_order_not_provisioned(
        self,
        failed_order: Any,
        provisioning: ProvisioningService,
        session_factory: Any,
        issuer: Any,
    ) -> None:
        order_number = await failed_order()
        order_id = await order_id_of(session_factory, order_number)
        async with session_factory() as db:
            order = (await db.execute(select(Order).where(Order.id == order_id))).scalar_one()
            order.status = "cancelled"
            await db.commit()
        issuer.failing_products.clear()

        summary = await provisioning.provision_order(order_id)

        assert summary["status"] == "cancelled"
        assert len(issuer.calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order(self, provisioning: ProvisioningService) -> None:
        with pytest.raises(NotFoundError):
            await provisioning.provision_order(uuid.uuid4())

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_one_order_error_does_not_block_others(
        self, failed_order: Any, provisioning: ProvisioningService, session_factory: Any, issuer: Any
    ) -> None:
        order_number = await failed_order()
        issuer.failing_products.clear()

        summaries = await provisioning.provision_orders(
            [uuid.uuid4(), await order_id_of(session_factory, order_number)]
        )

        assert "error" in summaries[0]
        assert summaries[1]["status"] == "confirmed"


class TestHttpCredentialIssuer:
    """Test suite for the HTTP credential issuer."""

    CONFIG: Dict[str, Any] = {
        "idempotency_key": "CS-20260101-ABC123:line-1",
        "product_id": "p-1",
        "product_name": "Premium 12 months",
        "duration_months": 12,
        "quantity": 1,
        "accounts": [{"devices": 1, "adult_channels": False}],
        "buyer_email": "buyer@example.com",
    }

    def _issuer(self, handler: Any) -> HttpCredentialIssuer:
        return HttpCredentialIssuer(
            base_url="https://provisioning.internal/",
            api_key="prov-key",
            timeout=5,
            transport=httpx.MockTransport(handler),
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_issue(self) -> None:
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"credentials": [{"username": "u1", "password": "p1"}]})

        credentials = await self._issuer(handler).issue("CS-20260101-ABC123", self.CONFIG)

        assert credentials == [{"username": "u1", "password": "p1"}]
        request = seen[0]
        assert str(request.url) == "https://provisioning.internal/accounts"
        assert request.headers["Idempotency-Key"] == "CS-20260101-ABC123:line-1"
        assert request.headers["Authorization"] == "Bearer prov-key"
        assert json.loads(request.content)["order_number"] == "CS-20260101-ABC123"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code,retryable",
        [(503, True), (429, True), (400, False), (409, False)],
    )
    async def test_http_errors(self, status_code: int, retryable: bool) -> None:
        issuer = self._issuer(lambda request: httpx.Response(status_code, text="nope"))

        with pytest.raises(ProvisioningFailure) as exc_info:
            await issuer.issue("CS-20260101-ABC123", self.CONFIG)

        assert exc_info.value.retryable is retryable

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        with pytest.raises(ProvisioningFailure) as exc_info:
            await self._issuer(handler).issue("CS-20260101-ABC123", self.CONFIG)

        assert exc_info.value.retryable is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>"),
            httpx.Response(200, json={"accounts": []}),
        ],
    )
    async def test_unusable_response(self, response: httpx.Response) -> None:
        with pytest.raises(ProvisioningFailure):
            await self._issuer(lambda request: response).issue("CS-20260101-ABC123", self.CONFIG)
