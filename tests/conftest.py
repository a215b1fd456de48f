"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file; gateway APIs and the
credential service are replaced by httpx mock transports and fake issuers.
"""
import hashlib
import hmac
import itertools
import json
import os
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

# Settings are read at import time by the API module
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./storefront-test.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.config import get_settings
from storefront.core.exceptions import ProvisioningFailure
from storefront.core.ledger import BalanceLedger
from storefront.core.orchestrator import OrderOrchestrator
from storefront.core.pricing import FeeRule
from storefront.core.provisioning import CredentialIssuer, ProvisioningService
from storefront.core.reconciler import PaymentReconciler
from storefront.database.connection import close_db, get_session_factory, init_db
from storefront.database.models import GatewayConfiguration, Product, UserBalance
from storefront.gateways.base import GatewayConfig, GatewayCredentials
from storefront.gateways.http import GatewayHttpClient
from storefront.gateways.nowpayments import NowPaymentsAdapter
from storefront.gateways.registry import GatewayRegistry

NOWPAYMENTS_IPN_SECRET = "ipn-secret-for-tests"


class FakeIssuer(CredentialIssuer):
    """Credential issuer that records calls and fails for selected products."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.failing_products: set = set()

    async def issue(self, order_number: str, product_config: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.calls.append({"order_number": order_number, **product_config})
        if product_config["product_id"] in self.failing_products:
            raise ProvisioningFailure("credential service unavailable")
        return [
            {"username": f"{order_number.lower()}-{i}", "password": "s3cret"}
            for i in range(product_config["quantity"])
        ]


def sign_nowpayments(payload: Dict[str, Any], secret: str = NOWPAYMENTS_IPN_SECRET) -> str:
    message = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hmac.new(secret.encode(), message.encode(), hashlib.sha512).hexdigest()


class NowPaymentsStub:
    """httpx handler imitating the NOWPayments invoice and payment APIs."""

    def __init__(self) -> None:
        self.invoices: List[Dict[str, Any]] = []
        self.payment_status: Dict[str, str] = {}
        self.fail_with: Optional[int] = None
        self._ids = itertools.count(4500001)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"message": "unavailable"})
        if request.method == "POST" and request.url.path.endswith("/invoice"):
            body = json.loads(request.content)
            invoice_id = str(next(self._ids))
            self.invoices.append(body)
            return httpx.Response(
                200,
                json={
                    "id": invoice_id,
                    "invoice_url": f"https://nowpayments.io/payment/?iid={invoice_id}",
                    "order_id": body["order_id"],
                },
            )
        if request.method == "GET" and request.url.path.endswith("/payment/"):
            invoice_id = request.url.params["invoiceId"]
            status = self.payment_status.get(invoice_id)
            data = [{"payment_status": status}] if status else []
            return httpx.Response(200, json={"data": data})
        return httpx.Response(404, json={"message": "not found"})


@pytest_asyncio.fixture
async def session_factory(
    tmp_path: Any, monkeypatch: pytest.MonkeyPatch
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Fresh SQLite database per test, wired into the global session factory."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    get_settings.cache_clear()
    await close_db()
    await init_db()
    yield get_session_factory()
    await close_db()
    get_settings.cache_clear()


@pytest.fixture
def make_product(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    async def _make(
        name: str = "Premium 12 months",
        price: str = "20.00",
        max_devices: int = 3,
        duration_months: int = 12,
        is_active: bool = True,
    ) -> Product:
        product = Product(
            id=uuid.uuid4(),
            name=name,
            price=Decimal(price),
            max_devices=max_devices,
            duration_months=duration_months,
            is_active=is_active,
        )
        async with session_factory() as db:
            db.add(product)
            await db.commit()
        return product

    return _make


@pytest.fixture
def fund_balance(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    async def _fund(user_id: str, amount: str) -> None:
        async with session_factory() as db:
            db.add(UserBalance(user_id=user_id, balance=Decimal(amount)))
            await db.commit()

    return _fund


@pytest.fixture
def add_gateway_config(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    async def _add(code: str, **fields: Any) -> GatewayConfiguration:
        record = GatewayConfiguration(gateway_code=code, is_active=True, **fields)
        async with session_factory() as db:
            db.add(record)
            await db.commit()
        return record

    return _add


@pytest.fixture
def issuer() -> FakeIssuer:
    return FakeIssuer()


@pytest.fixture
def nowpayments_stub() -> NowPaymentsStub:
    return NowPaymentsStub()


def build_nowpayments(
    stub: NowPaymentsStub,
    fee_rule: Optional[FeeRule] = None,
    min_amount: str = "1.00",
    **config: Any,
) -> NowPaymentsAdapter:
    adapter_config = GatewayConfig(
        code="nowpayments",
        credentials=GatewayCredentials(api_key="np-key", webhook_secret=NOWPAYMENTS_IPN_SECRET),
        min_amount=Decimal(min_amount),
        fee_rule=fee_rule or FeeRule(),
        **config,
    )
    http_client = GatewayHttpClient(
        "nowpayments",
        "https://api.nowpayments.io/v1",
        max_attempts=1,
        transport=httpx.MockTransport(stub),
    )
    return NowPaymentsAdapter(
        adapter_config,
        callback_url="http://testserver/webhooks/nowpayments",
        http_client=http_client,
    )


@pytest.fixture
def nowpayments(nowpayments_stub: NowPaymentsStub) -> NowPaymentsAdapter:
    return build_nowpayments(
        nowpayments_stub,
        fee_rule=FeeRule(is_active=True, percentage=Decimal("3")),
    )


@pytest.fixture
def registry(
    session_factory: async_sessionmaker[AsyncSession], nowpayments: NowPaymentsAdapter
) -> GatewayRegistry:
    registry = GatewayRegistry(session_factory)
    registry.register(nowpayments)
    return registry


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> BalanceLedger:
    return BalanceLedger(session_factory)


@pytest.fixture
def provisioning(
    session_factory: async_sessionmaker[AsyncSession], issuer: FakeIssuer
) -> ProvisioningService:
    return ProvisioningService(issuer=issuer, session_factory=session_factory, max_attempts=3)


@pytest.fixture
def reconciler(
    session_factory: async_sessionmaker[AsyncSession],
    registry: GatewayRegistry,
    provisioning: ProvisioningService,
    ledger: BalanceLedger,
) -> PaymentReconciler:
    return PaymentReconciler(registry, provisioning, ledger=ledger, session_factory=session_factory)


@pytest.fixture
def orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    registry: GatewayRegistry,
    provisioning: ProvisioningService,
    ledger: BalanceLedger,
) -> OrderOrchestrator:
    return OrderOrchestrator(registry, provisioning, ledger=ledger, session_factory=session_factory)


@pytest.fixture
def cart_item() -> Callable[..., Dict[str, Any]]:
    """Line item payload for a product with one single-device account per unit."""

    def _item(product: Product, quantity: int = 1, devices: int = 1) -> Dict[str, Any]:
        return {
            "product_id": product.id,
            "quantity": quantity,
            "unit_configuration": [
                {"devices": devices, "adult_channels": False} for _ in range(quantity)
            ],
        }

    return _item


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    nowpayments: NowPaymentsAdapter,
    issuer: FakeIssuer,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client against the app, with the stub gateway and fake issuer wired in."""
    from storefront.api import routes
    from storefront.api.main import app

    routes.registry.clear()
    routes.registry.register(nowpayments)
    routes.provisioning.issuer = issuer

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    routes.registry.clear()
