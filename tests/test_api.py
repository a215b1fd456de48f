"""
Integration tests for the HTTP API.

Requests go through the ASGI app against a per-test SQLite database; the
NOWPayments API and the credential service are stubbed.
"""
import json
from typing import Any, Dict, Optional

import pytest
from httpx import AsyncClient

from storefront.api import routes
from storefront.gateways.base import GatewayConfig, GatewayCredentials
from storefront.gateways.paygate import PayGateAdapter

from conftest import sign_nowpayments


def checkout_body(product: Any, method: str = "balance", **overrides: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "user_id": "user-1",
        "settlement_method": method,
        "line_items": [
            {
                "product_id": str(product.id),
                "quantity": 1,
                "unit_configuration": [{"devices": 1, "adult_channels": False}],
            }
        ],
        "buyer": {"email": "buyer@example.com", "name": "Jane Buyer"},
    }
    body.update(overrides)
    return body


async def post_webhook(
    client: AsyncClient, payload: Dict[str, Any], secret: Optional[str] = None
) -> Any:
    signature = sign_nowpayments(payload, secret) if secret else sign_nowpayments(payload)
    return await client.post(
        "/webhooks/nowpayments",
        content=json.dumps(payload),
        headers={"x-nowpayments-sig": signature, "Content-Type": "application/json"},
    )


class TestCheckoutEndpoints:
    """Integration tests for checkout and order endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_balance_checkout(
        self, client: AsyncClient, make_product: Any, fund_balance: Any
    ) -> None:
        """Balance checkout returns the order, provisioned synchronously."""
        await fund_balance("user-1", "50.00")
        product = await make_product(price="20.00")

        response = await client.post("/checkout", json=checkout_body(product))

        assert response.status_code == 201
        data = response.json()
        assert data["settlement_method"] == "balance"
        assert data["checkout_url"] is None
        assert len(data["order_numbers"]) == 1

        order = await client.get(f"/orders/{data['order_numbers'][0]}")
        assert order.status_code == 200
        assert order.json()["status"] == "confirmed"
        assert order.json()["line_items"][0]["provisioning_status"] == "succeeded"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_checkout_is_idempotent(
        self, client: AsyncClient, make_product: Any, nowpayments_stub: Any
    ) -> None:
        product = await make_product()
        headers = {"Idempotency-Key": "cart-1"}

        first = await client.post(
            "/checkout", json=checkout_body(product, "NOWPayments"), headers=headers
        )
        second = await client.post(
            "/checkout", json=checkout_body(product, "NOWPayments"), headers=headers
        )

        assert first.status_code == 201
        assert second.status_code == 201
        assert second.json() == first.json()
        assert first.json()["checkout_url"].startswith("https://nowpayments.io/")
        assert len(nowpayments_stub.invoices) == 1

        orders = await client.get(f"/checkout/{first.json()['checkout_id']}/orders")
        assert orders.status_code == 200
        assert [o["payment_status"] for o in orders.json()] == ["pending"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment_method(self, client: AsyncClient, make_product: Any) -> None:
        product = await make_product()

        response = await client.post("/checkout", json=checkout_body(product, "paypal"))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_insufficient_balance(self, client: AsyncClient, make_product: Any) -> None:
        product = await make_product()

        response = await client.post("/checkout", json=checkout_body(product))

        assert response.status_code == 402
        assert response.json()["error"]["code"] == "insufficient_balance"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_out_of_range(
        self, client: AsyncClient, make_product: Any
    ) -> None:
        product = await make_product(price="0.50")

        response = await client.post("/checkout", json=checkout_body(product, "nowpayments"))

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "amount_out_of_range"
        assert error["details"]["minimum"] == "1.00"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_unavailable(
        self, client: AsyncClient, make_product: Any, nowpayments_stub: Any
    ) -> None:
        nowpayments_stub.fail_with = 503
        product = await make_product()

        response = await client.post("/checkout", json=checkout_body(product, "nowpayments"))

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "upstream_error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_request(self, client: AsyncClient) -> None:
        response = await client.post("/checkout", json={"user_id": "user-1"})

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(self, client: AsyncClient) -> None:
        response = await client.get("/orders/CS-20260101-000000")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_and_refund(
        self, client: AsyncClient, make_product: Any, fund_balance: Any
    ) -> None:
        await fund_balance("user-1", "50.00")
        product = await make_product(price="20.00")
        gateway = await client.post("/checkout", json=checkout_body(product, "nowpayments"))
        balance = await client.post("/checkout", json=checkout_body(product))
        gateway_order = gateway.json()["order_numbers"][0]
        balance_order = balance.json()["order_numbers"][0]

        cancelled = await client.post(f"/orders/{gateway_order}/cancel")
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

        assert (await client.post(f"/orders/{gateway_order}/refund")).status_code == 409
        assert (await client.post(f"/orders/{balance_order}/cancel")).status_code == 400

        refunded = await client.post(f"/orders/{balance_order}/refund")
        assert refunded.status_code == 200
        assert refunded.json()["refunded"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_deposit(self, client: AsyncClient, nowpayments_stub: Any) -> None:
        response = await client.post(
            "/deposits",
            json={"user_id": "user-1", "gateway_code": "nowpayments", "amount": "100.00"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["fee_amount"] == "3.00"
        assert data["total_charged"] == "103.00"
        assert data["bonus_amount"] == "0.00"
        assert nowpayments_stub.invoices[0]["order_description"] == "Balance top-up"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_non_positive_deposit(self, client: AsyncClient) -> None:
        response = await client.post(
            "/deposits",
            json={"user_id": "user-1", "gateway_code": "nowpayments", "amount": "0"},
        )

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_gateways(self, client: AsyncClient) -> None:
        response = await client.get("/gateways")

        assert response.json() == {"gateways": ["nowpayments"]}


class TestWebhookEndpoint:
    """Integration tests for gateway callbacks."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_completion(
        self, client: AsyncClient, make_product: Any, issuer: Any
    ) -> None:
        product = await make_product()
        checkout = await client.post("/checkout", json=checkout_body(product, "nowpayments"))
        order_number = checkout.json()["order_numbers"][0]

        response = await post_webhook(
            client, {"invoice_id": 4500001, "payment_status": "finished"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "gateway": "nowpayments",
            "outcome": "processed",
            "external_reference": "4500001",
            "payment_status": "completed",
        }
        order = (await client.get(f"/orders/{order_number}")).json()
        assert order["status"] == "confirmed"
        assert order["payment_status"] == "completed"
        assert len(issuer.calls) == 1

        replay = await post_webhook(client, {"invoice_id": 4500001, "payment_status": "finished"})
        assert replay.status_code == 200
        assert replay.json()["outcome"] == "duplicate"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature(self, client: AsyncClient) -> None:
        response = await post_webhook(
            client, {"invoice_id": 4500001, "payment_status": "finished"}, secret="forged"
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_signature"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_body_acknowledged(self, client: AsyncClient) -> None:
        response = await client.post("/webhooks/nowpayments", content=b"\xff\xfe")

        assert response.status_code == 200
        assert response.json()["outcome"] == "malformed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_gateway(self, client: AsyncClient) -> None:
        response = await client.post("/webhooks/paypal", content=b"{}")

        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_query_string_callback(self, client: AsyncClient) -> None:
        adapter = PayGateAdapter(
            GatewayConfig(
                code="paygate",
                credentials=GatewayCredentials(merchant_id="0x" + "ab" * 20, webhook_secret="pg-secret"),
            )
        )
        routes.registry.register(adapter)
        query = {"ref": "intent-404", "ref_sig": adapter.reference_signature("intent-404"), "value_coin": "5"}

        response = await client.get("/webhooks/paygate", params=query)

        assert response.status_code == 200
        assert response.json()["outcome"] == "unmatched"
        assert response.json()["external_reference"] == "intent-404"

        forged = await client.get(
            "/webhooks/paygate", params={**query, "ref": "intent-405"}
        )
        assert forged.status_code == 401


class TestAdminEndpoints:
    """Integration tests for operator endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_poll_recovers_lost_webhook(
        self,
        client: AsyncClient,
        make_product: Any,
        nowpayments_stub: Any,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(routes.status_poller, "min_age_seconds", 0)
        product = await make_product()
        checkout = await client.post("/checkout", json=checkout_body(product, "nowpayments"))
        nowpayments_stub.payment_status["4500001"] = "finished"

        response = await client.post("/admin/poll")

        assert response.status_code == 200
        assert response.json() == {"outcomes": {"processed": 1}}
        order = await client.get(f"/orders/{checkout.json()['order_numbers'][0]}")
        assert order.json()["status"] == "confirmed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provisioning_sweep(
        self, client: AsyncClient, make_product: Any, fund_balance: Any, issuer: Any
    ) -> None:
        await fund_balance("user-1", "50.00")
        product = await make_product()
        issuer.failing_products.add(str(product.id))
        checkout = await client.post("/checkout", json=checkout_body(product))
        issuer.failing_products.clear()

        response = await client.post("/admin/provisioning/sweep")

        assert response.json() == {"attempted": 1, "confirmed": 1}
        order = await client.get(f"/orders/{checkout.json()['order_numbers'][0]}")
        assert order.json()["status"] == "confirmed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reload_gateways(self, client: AsyncClient, add_gateway_config: Any) -> None:
        await add_gateway_config("plisio", api_key="plisio-secret")

        response = await client.post("/admin/gateways/reload")

        assert response.json() == {"gateways": ["plisio"]}


class TestMonitoringEndpoints:
    """Integration tests for health and metrics."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["redis"]["status"] == "skipped"
        assert data["checks"]["gateways"]["gateways"] == ["nowpayments"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness_and_readiness(self, client: AsyncClient) -> None:
        assert (await client.get("/health/live")).json()["status"] == "alive"
        assert (await client.get("/health/ready")).status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        """Test Prometheus metrics endpoint."""
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_propagated(self, client: AsyncClient) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "trace-123"})

        assert response.headers["X-Request-ID"] == "trace-123"
