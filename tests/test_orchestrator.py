"""
Tests for checkout, deposit, cancel and refund flows.
"""
import json
import re
from decimal import Decimal
from typing import Any, Dict, List

import pytest
from sqlalchemy import func, select

from storefront.core.exceptions import (
    AmountOutOfRange,
    IllegalTransition,
    InsufficientBalance,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from storefront.core.orchestrator import (
    CheckoutRequest,
    OrderOrchestrator,
    generate_order_number,
)
from storefront.database.models import BalanceTransaction, Order, PaymentIntent

from conftest import build_nowpayments, sign_nowpayments

BUYER = {"email": "buyer@example.com", "name": "Jane Buyer"}


def checkout_request(method: str, items: List[Dict[str, Any]], **overrides: Any) -> CheckoutRequest:
    fields: Dict[str, Any] = {
        "user_id": "user-1",
        "settlement_method": method,
        "line_items": items,
        "buyer": BUYER,
    }
    fields.update(overrides)
    return CheckoutRequest(**fields)


async def count_rows(session_factory: Any, model: Any) -> int:
    async with session_factory() as db:
        result = await db.execute(select(func.count()).select_from(model))
        return result.scalar_one()


class TestOrderNumbers:
    """Test suite for order number generation."""

    @pytest.mark.unit
    def test_format(self) -> None:
        assert re.fullmatch(r"CS-\d{8}-[0-9A-Z]{6}", generate_order_number())

    @pytest.mark.unit
    def test_numbers_differ(self) -> None:
        assert len({generate_order_number() for _ in range(50)}) == 50


class TestBalanceCheckout:
    """Test suite for carts settled from stored balance."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_provisioning_isolated_to_its_order(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        fund_balance: Any,
        cart_item: Any,
        issuer: Any,
        ledger: Any,
    ) -> None:
        """Item 2's credential failure leaves items 1 and 3 confirmed."""
        await fund_balance("user-1", "100.00")
        products = [
            await make_product(name="Basic", price="20.00"),
            await make_product(name="Family", price="10.00"),
            await make_product(name="Premium", price="30.00"),
        ]
        issuer.failing_products.add(str(products[1].id))

        result = await orchestrator.checkout(
            checkout_request("balance", [cart_item(p) for p in products])
        )

        assert result.settlement_method == "balance"
        assert result.checkout_url is None
        assert result.failed_items == []
        assert len(result.order_numbers) == 3
        assert await ledger.get_balance("user-1") == Decimal("40.00")

        statuses = [
            (await orchestrator.get_order(number))["status"] for number in result.order_numbers
        ]
        assert statuses == ["confirmed", "processing", "confirmed"]

        failed = await orchestrator.get_order(result.order_numbers[1])
        assert failed["line_items"][0]["provisioning_status"] == "failed"
        assert failed["line_items"][0]["provisioning_attempts"] == 1
        assert failed["payment_status"] is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_multi_unit_line_item(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        fund_balance: Any,
        cart_item: Any,
        issuer: Any,
    ) -> None:
        await fund_balance("user-1", "100.00")
        product = await make_product(price="15.00", max_devices=2)

        result = await orchestrator.checkout(
            checkout_request("balance", [cart_item(product, quantity=3, devices=2)])
        )

        order = await orchestrator.get_order(result.order_numbers[0])
        assert order["total_amount"] == "45.00"
        assert order["line_items"][0]["quantity"] == 3
        assert len(issuer.calls[0]["accounts"]) == 3
        assert issuer.calls[0]["accounts"][0]["devices"] == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_insufficient_balance_has_no_side_effects(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        fund_balance: Any,
        cart_item: Any,
        ledger: Any,
        session_factory: Any,
    ) -> None:
        await fund_balance("user-1", "25.00")
        products = [await make_product(price="20.00"), await make_product(price="10.00")]

        with pytest.raises(InsufficientBalance) as exc_info:
            await orchestrator.checkout(
                checkout_request("balance", [cart_item(p) for p in products])
            )

        assert exc_info.value.http_status == 402
        assert await ledger.get_balance("user-1") == Decimal("25.00")
        assert await count_rows(session_factory, Order) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cart_total_debited_once(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        fund_balance: Any,
        cart_item: Any,
        session_factory: Any,
    ) -> None:
        await fund_balance("user-1", "100.00")
        products = [await make_product(price="20.00"), await make_product(price="10.00")]

        result = await orchestrator.checkout(
            checkout_request("balance", [cart_item(p) for p in products])
        )

        assert len(result.order_numbers) == 2
        async with session_factory() as db:
            debits = (
                await db.execute(
                    select(BalanceTransaction).where(BalanceTransaction.type == "purchase")
                )
            ).scalars().all()
        assert len(debits) == 1
        assert debits[0].amount == Decimal("-30.00")
        assert debits[0].reference == result.checkout_id
        assert debits[0].balance_after == Decimal("70.00")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_persist_failure_credits_its_amount_back(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        fund_balance: Any,
        cart_item: Any,
        ledger: Any,
        session_factory: Any,
        mocker: Any,
    ) -> None:
        """Only the order that could not be created is credited back."""
        await fund_balance("user-1", "100.00")
        products = [
            await make_product(name="Basic", price="20.00"),
            await make_product(name="Premium", price="30.00"),
        ]
        original_build = OrderOrchestrator._build_order

        def failing_build(request: Any, checkout_id: Any, plan: Any, *args: Any) -> Order:
            if plan.position == 2:
                raise RuntimeError("database unavailable")
            return original_build(request, checkout_id, plan, *args)

        mocker.patch.object(OrderOrchestrator, "_build_order", side_effect=failing_build)

        result = await orchestrator.checkout(
            checkout_request("balance", [cart_item(p) for p in products])
        )

        assert len(result.order_numbers) == 1
        assert result.failed_items[0]["position"] == 2
        assert result.failed_items[0]["error"] == "internal_error"
        assert await ledger.get_balance("user-1") == Decimal("80.00")
        async with session_factory() as db:
            rows = await db.execute(
                select(BalanceTransaction.type, BalanceTransaction.amount).order_by(
                    BalanceTransaction.id
                )
            )
            entries = [(kind, amount) for kind, amount in rows.all()]
        assert ("purchase", Decimal("-50.00")) in entries
        assert ("refund", Decimal("30.00")) in entries

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_no_order_persisted_credits_whole_debit_back(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        fund_balance: Any,
        cart_item: Any,
        ledger: Any,
        session_factory: Any,
        mocker: Any,
    ) -> None:
        await fund_balance("user-1", "100.00")
        products = [await make_product(price="20.00"), await make_product(price="30.00")]
        mocker.patch.object(
            OrderOrchestrator, "_build_order", side_effect=RuntimeError("database unavailable")
        )

        with pytest.raises(RuntimeError):
            await orchestrator.checkout(
                checkout_request("balance", [cart_item(p) for p in products])
            )

        assert await ledger.get_balance("user-1") == Decimal("100.00")
        assert await count_rows(session_factory, Order) == 0
        async with session_factory() as db:
            types = await db.execute(
                select(BalanceTransaction.type).order_by(BalanceTransaction.id)
            )
            assert list(types.scalars().all()) == ["purchase", "refund"]


class TestGatewayCheckout:
    """Test suite for carts charged through a gateway."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_one_intent_with_fee(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        cart_item: Any,
        nowpayments_stub: Any,
        session_factory: Any,
    ) -> None:
        products = [await make_product(price="10.00"), await make_product(price="20.00")]

        result = await orchestrator.checkout(
            checkout_request("nowpayments", [cart_item(p) for p in products])
        )

        assert result.checkout_url == "https://nowpayments.io/payment/?iid=4500001"
        assert len(result.order_numbers) == 2
        assert nowpayments_stub.invoices[0]["price_amount"] == 30.9
        assert "/checkout/success?checkout=" in nowpayments_stub.invoices[0]["success_url"]

        async with session_factory() as db:
            intent = (await db.execute(select(PaymentIntent))).scalar_one()
            orders = (await db.execute(select(Order))).scalars().all()
        assert intent.amount_requested == Decimal("30.00")
        assert intent.fee_amount == Decimal("0.90")
        assert intent.amount_charged == Decimal("30.90")
        assert intent.external_reference == "4500001"
        assert intent.status == "pending"
        assert {order.payment_intent_id for order in orders} == {intent.id}
        assert {order.status for order in orders} == {"new"}

        listed = await orchestrator.list_checkout_orders(
            orders[0].checkout_id
        )
        assert sorted(o["order_number"] for o in listed) == sorted(result.order_numbers)
        assert all(o["payment_status"] == "pending" for o in listed)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_below_gateway_minimum(
        self,
        orchestrator: OrderOrchestrator,
        registry: Any,
        make_product: Any,
        cart_item: Any,
        nowpayments_stub: Any,
        session_factory: Any,
    ) -> None:
        registry.register(build_nowpayments(nowpayments_stub, min_amount="50.00"))
        product = await make_product(price="20.00")

        with pytest.raises(AmountOutOfRange) as exc_info:
            await orchestrator.checkout(checkout_request("nowpayments", [cart_item(product)]))

        assert exc_info.value.to_dict()["error"]["details"]["minimum"] == "50.00"
        assert nowpayments_stub.invoices == []
        assert await count_rows(session_factory, Order) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_upstream_failure_cancels_orders(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        cart_item: Any,
        nowpayments_stub: Any,
        session_factory: Any,
    ) -> None:
        nowpayments_stub.fail_with = 503
        product = await make_product()

        with pytest.raises(UpstreamError):
            await orchestrator.checkout(checkout_request("nowpayments", [cart_item(product)]))

        async with session_factory() as db:
            intent = (await db.execute(select(PaymentIntent))).scalar_one()
            order = (await db.execute(select(Order))).scalar_one()
        assert intent.status == "failed"
        assert intent.error_message
        assert order.status == "cancelled"


class TestCheckoutValidation:
    """Test suite for rejected carts."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "mutate,message",
        [
            (lambda item: {**item, "quantity": 0, "unit_configuration": []}, "quantity"),
            (lambda item: {**item, "quantity": 2}, "account configurations"),
            (
                lambda item: {**item, "unit_configuration": [{"devices": 4}]},
                "devices must be between 1 and 3",
            ),
            (
                lambda item: {**item, "unit_configuration": [{"devices": 1, "mac_address": ""}]},
                "MAC address",
            ),
        ],
    )
    async def test_invalid_line_item(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        cart_item: Any,
        session_factory: Any,
        mutate: Any,
        message: str,
    ) -> None:
        product = await make_product(max_devices=3)

        with pytest.raises(ValidationError, match=message):
            await orchestrator.checkout(
                checkout_request("nowpayments", [mutate(cart_item(product))])
            )

        assert await count_rows(session_factory, Order) == 0
        assert await count_rows(session_factory, PaymentIntent) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_cart(self, orchestrator: OrderOrchestrator, session_factory: Any) -> None:
        with pytest.raises(ValidationError, match="empty"):
            await orchestrator.checkout(checkout_request("balance", []))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_email(
        self, orchestrator: OrderOrchestrator, make_product: Any, cart_item: Any
    ) -> None:
        product = await make_product()

        with pytest.raises(ValidationError, match="e-mail"):
            await orchestrator.checkout(
                checkout_request("balance", [cart_item(product)], buyer={"email": "nobody"})
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_product(
        self, orchestrator: OrderOrchestrator, make_product: Any, cart_item: Any
    ) -> None:
        product = await make_product(is_active=False)

        with pytest.raises(ValidationError, match="not available"):
            await orchestrator.checkout(checkout_request("balance", [cart_item(product)]))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_payment_method(
        self, orchestrator: OrderOrchestrator, make_product: Any, cart_item: Any
    ) -> None:
        product = await make_product()

        with pytest.raises(ValidationError, match="Unsupported payment method"):
            await orchestrator.checkout(checkout_request("paypal", [cart_item(product)]))


class TestCheckoutIdempotency:
    """Test suite for Idempotency-Key handling."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_replay_returns_original_result(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        cart_item: Any,
        nowpayments_stub: Any,
        session_factory: Any,
    ) -> None:
        product = await make_product()
        request = checkout_request("nowpayments", [cart_item(product)], idempotency_key="cart-42")

        first = await orchestrator.checkout(request)
        second = await orchestrator.checkout(request)

        assert second == first
        assert len(nowpayments_stub.invoices) == 1
        assert await count_rows(session_factory, Order) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_key_of_another_user_rejected(
        self, orchestrator: OrderOrchestrator, make_product: Any, cart_item: Any
    ) -> None:
        product = await make_product()
        await orchestrator.checkout(
            checkout_request("nowpayments", [cart_item(product)], idempotency_key="cart-42")
        )

        with pytest.raises(ValidationError):
            await orchestrator.checkout(
                checkout_request(
                    "nowpayments",
                    [cart_item(product)],
                    user_id="user-2",
                    idempotency_key="cart-42",
                )
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_submission_releases_key(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        cart_item: Any,
        nowpayments_stub: Any,
    ) -> None:
        product = await make_product()
        request = checkout_request("nowpayments", [cart_item(product)], idempotency_key="cart-7")
        nowpayments_stub.fail_with = 502

        with pytest.raises(UpstreamError):
            await orchestrator.checkout(request)

        nowpayments_stub.fail_with = None
        result = await orchestrator.checkout(request)

        assert result.checkout_url is not None


class TestCancelAndRefund:
    """Test suite for buyer cancel and refunds."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_buyer_cancel(
        self, orchestrator: OrderOrchestrator, make_product: Any, cart_item: Any
    ) -> None:
        products = [await make_product(), await make_product()]
        result = await orchestrator.checkout(
            checkout_request("nowpayments", [cart_item(p) for p in products])
        )

        cancelled = await orchestrator.cancel_payment(result.order_numbers[0])

        assert cancelled["status"] == "cancelled"
        assert cancelled["payment_status"] == "failed"
        sibling = await orchestrator.get_order(result.order_numbers[1])
        assert sibling["status"] == "cancelled"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_balance_order_cannot_be_cancelled(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        cart_item: Any,
        fund_balance: Any,
    ) -> None:
        await fund_balance("user-1", "50.00")
        product = await make_product()
        result = await orchestrator.checkout(checkout_request("balance", [cart_item(product)]))

        with pytest.raises(ValidationError):
            await orchestrator.cancel_payment(result.order_numbers[0])

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_after_completion_rejected(
        self,
        orchestrator: OrderOrchestrator,
        reconciler: Any,
        make_product: Any,
        cart_item: Any,
    ) -> None:
        product = await make_product()
        result = await orchestrator.checkout(checkout_request("nowpayments", [cart_item(product)]))
        payload = {"invoice_id": 4500001, "payment_status": "finished"}
        await reconciler.handle(
            "nowpayments",
            json.dumps(payload).encode(),
            {"x-nowpayments-sig": sign_nowpayments(payload)},
        )

        with pytest.raises(IllegalTransition):
            await orchestrator.cancel_payment(result.order_numbers[0])

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_balance_order(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        cart_item: Any,
        fund_balance: Any,
        ledger: Any,
    ) -> None:
        await fund_balance("user-1", "50.00")
        product = await make_product(price="20.00")
        result = await orchestrator.checkout(checkout_request("balance", [cart_item(product)]))
        number = result.order_numbers[0]

        refunded = await orchestrator.refund_payment(number)

        assert refunded["refunded"] is True
        assert refunded["status"] == "confirmed"
        assert await ledger.get_balance("user-1") == Decimal("50.00")

        with pytest.raises(IllegalTransition):
            await orchestrator.refund_payment(number)
        assert await ledger.get_balance("user-1") == Decimal("50.00")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_unprovisioned_balance_order_cancels_it(
        self,
        orchestrator: OrderOrchestrator,
        make_product: Any,
        cart_item: Any,
        fund_balance: Any,
        issuer: Any,
    ) -> None:
        await fund_balance("user-1", "50.00")
        product = await make_product(price="20.00")
        issuer.failing_products.add(str(product.id))
        result = await orchestrator.checkout(checkout_request("balance", [cart_item(product)]))

        refunded = await orchestrator.refund_payment(result.order_numbers[0])

        assert refunded["status"] == "cancelled"
        assert refunded["refunded"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_gateway_payment(
        self,
        orchestrator: OrderOrchestrator,
        reconciler: Any,
        make_product: Any,
        cart_item: Any,
    ) -> None:
        products = [await make_product(), await make_product()]
        result = await orchestrator.checkout(
            checkout_request("nowpayments", [cart_item(p) for p in products])
        )
        payload = {"invoice_id": 4500001, "payment_status": "finished"}
        await reconciler.handle(
            "nowpayments",
            json.dumps(payload).encode(),
            {"x-nowpayments-sig": sign_nowpayments(payload)},
        )

        refunded = await orchestrator.refund_payment(result.order_numbers[0])

        assert refunded["payment_status"] == "refunded"
        assert refunded["refunded"] is True
        # Credentials were already delivered
        assert refunded["status"] == "confirmed"
        sibling = await orchestrator.get_order(result.order_numbers[1])
        assert sibling["refunded"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_of_unpaid_order_rejected(
        self, orchestrator: OrderOrchestrator, make_product: Any, cart_item: Any
    ) -> None:
        product = await make_product()
        result = await orchestrator.checkout(checkout_request("nowpayments", [cart_item(product)]))

        with pytest.raises(IllegalTransition):
            await orchestrator.refund_payment(result.order_numbers[0])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order(self, orchestrator: OrderOrchestrator, session_factory: Any) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.get_order("CS-20260101-XXXXXX")
