"""
Credential provisioning.

Every line item of a paid order is provisioned independently through the
credential issuance service. Results are appended to provisioning_results;
a failure is recorded and left for the retry sweep, it never reverses the
order or the payment. The order becomes confirmed once every line item has
succeeded.

Provisioning for one order is serialized (asyncio.Lock per order, or a Redis
lock when Redis is configured); different orders run concurrently.
"""
import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import httpx
import redis.asyncio as aioredis
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.config import get_settings
from storefront.core.events import write_outbox_event
from storefront.core.exceptions import NotFoundError, ProvisioningFailure
from storefront.core.state_machine import OrderStatus
from storefront.database.connection import get_session_factory
from storefront.database.models import Order, OrderLineItem, ProvisioningResult, utcnow
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PENDING = "pending"
SUCCEEDED = "succeeded"
FAILED = "failed"


class CredentialIssuer(ABC):
    """Downstream service that creates subscription accounts."""

    @abstractmethod
    async def issue(self, order_number: str, product_config: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Issue credentials for one line item.

        Must be idempotent per product_config["idempotency_key"].

        Returns:
            List[Dict[str, Any]]: One credential set per account

        Raises:
            ProvisioningFailure: If issuance failed
        """


class HttpCredentialIssuer(CredentialIssuer):
    """Credential issuance over HTTP (POST {provisioning_api_url}/accounts)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.provisioning_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.provisioning_api_key
        self.timeout = timeout or settings.provisioning_timeout_seconds
        self.transport = transport

    async def issue(self, order_number: str, product_config: Dict[str, Any]) -> List[Dict[str, Any]]:
        headers = {"Idempotency-Key": product_config["idempotency_key"]}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    "/accounts",
                    json={"order_number": order_number, **product_config},
                    headers=headers,
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            raise ProvisioningFailure(
                f"Credential service returned {status_code}: {e.response.text[:200]}",
                retryable=status_code >= 500 or status_code == 429,
            ) from e
        except httpx.HTTPError as e:
            raise ProvisioningFailure(f"Credential service unreachable: {e}") from e
        except ValueError as e:
            raise ProvisioningFailure("Credential service returned invalid JSON") from e

        credentials = body.get("credentials") if isinstance(body, dict) else None
        if not isinstance(credentials, list):
            raise ProvisioningFailure("Credential service response has no credentials")
        return credentials


def product_config_for(order: Order, item: OrderLineItem) -> Dict[str, Any]:
    """What the credential service needs to create the accounts of one line item."""
    return {
        "idempotency_key": f"{order.order_number}:{item.id}",
        "product_id": str(item.product_id),
        "product_name": item.product_name,
        "duration_months": item.duration_months,
        "quantity": item.quantity,
        "accounts": item.unit_configuration,
        "buyer_email": order.buyer_email,
    }


class ProvisioningService:
    """Drives credential issuance for paid orders."""

    def __init__(
        self,
        issuer: Optional[CredentialIssuer] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
        max_attempts: Optional[int] = None,
    ):
        """
        Initialize provisioning service.

        Args:
            issuer: Credential issuer (HTTP issuer from settings if not provided)
            session_factory: Optional session factory (global one if not provided)
            redis_client: Optional Redis client for cross-process order locks
            max_attempts: Attempts per line item before the sweep gives up
        """
        self._issuer = issuer
        self._session_factory = session_factory
        self.redis_client = redis_client
        self._max_attempts = max_attempts
        self._locks: Dict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def issuer(self) -> CredentialIssuer:
        if self._issuer is None:
            self._issuer = HttpCredentialIssuer()
        return self._issuer

    @issuer.setter
    def issuer(self, issuer: CredentialIssuer) -> None:
        self._issuer = issuer

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts or get_settings().provisioning_max_attempts

    def _ensure_redis(self) -> Optional[aioredis.Redis]:
        if self.redis_client is None:
            redis_url = get_settings().redis_url
            if redis_url:
                self.redis_client = aioredis.from_url(redis_url)
        return self.redis_client

    @asynccontextmanager
    async def _order_lock(self, order_id: uuid.UUID) -> AsyncIterator[None]:
        redis = self._ensure_redis()
        if redis is not None:
            timeout = get_settings().redis_lock_timeout
            async with redis.lock(
                f"provisioning:order:{order_id}", timeout=timeout, blocking_timeout=timeout
            ):
                yield
        else:
            async with self._locks[order_id]:
                yield

    async def provision_order(self, order_id: uuid.UUID) -> Dict[str, Any]:
        """
        Provision every line item of an order that has not succeeded yet.

        Returns:
            Dict[str, Any]: order_number, final status and per-item outcome

        Raises:
            NotFoundError: If the order does not exist
        """
        async with self._order_lock(order_id):
            async with self.session_factory() as db:
                result = await db.execute(select(Order).where(Order.id == order_id))
                order = result.scalar_one_or_none()
                if order is None:
                    raise NotFoundError(f"Order {order_id} not found")

                log = logger.bind(order_number=order.order_number)
                if order.status != OrderStatus.PROCESSING.value:
                    log.info("provisioning_skipped", status=order.status)
                    return {"order_number": order.order_number, "status": order.status, "items": {}}

                outcomes: Dict[str, str] = {}
                for item in order.line_items:
                    if item.provisioning_status == SUCCEEDED:
                        outcomes[str(item.id)] = SUCCEEDED
                        continue
                    if item.provisioning_attempts >= self.max_attempts:
                        outcomes[str(item.id)] = FAILED
                        continue
                    outcomes[str(item.id)] = await self._provision_item(db, order, item)

                status = order.status
                if all(item.provisioning_status == SUCCEEDED for item in order.line_items):
                    status = await self._confirm(db, order)

            log.info("provisioning_finished", status=status, items=outcomes)
            return {"order_number": order.order_number, "status": status, "items": outcomes}

    async def _provision_item(self, db: AsyncSession, order: Order, item: OrderLineItem) -> str:
        attempt = item.provisioning_attempts + 1
        credentials: Optional[List[Dict[str, Any]]] = None
        error: Optional[str] = None

        logger.info(
            "provisioning_line_item",
            order_number=order.order_number,
            line_item_id=str(item.id),
            attempt=attempt,
        )
        try:
            credentials = await self.issuer.issue(order.order_number, product_config_for(order, item))
        except ProvisioningFailure as e:
            error = e.message
            logger.error(
                "provisioning_line_item_failed",
                order_number=order.order_number,
                line_item_id=str(item.id),
                attempt=attempt,
                retryable=e.retryable,
                error=e.message,
            )

        success = error is None
        item.provisioning_attempts = attempt
        item.provisioning_status = SUCCEEDED if success else FAILED
        db.add(
            ProvisioningResult(
                order_id=order.id,
                line_item_id=item.id,
                attempt=attempt,
                success=success,
                credentials=credentials,
                error=error,
                created_at=utcnow(),
            )
        )
        if not success:
            write_outbox_event(
                db,
                aggregate_id=order.id,
                aggregate_type="order",
                event_type="provisioning.failed",
                payload={
                    "order_number": order.order_number,
                    "line_item_id": str(item.id),
                    "attempt": attempt,
                    "error": error,
                    "gave_up": attempt >= self.max_attempts,
                },
            )
        await db.commit()
        metrics.record_provisioning_attempt(item.provisioning_status)
        return item.provisioning_status

    async def _confirm(self, db: AsyncSession, order: Order) -> str:
        result = await db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.PROCESSING.value)
            .values(status=OrderStatus.CONFIRMED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Cancelled or refunded while provisioning ran
            await db.rollback()
            refreshed = await db.execute(select(Order.status).where(Order.id == order.id))
            return refreshed.scalar_one()

        credentials = await db.execute(
            select(ProvisioningResult).where(
                ProvisioningResult.order_id == order.id,
                ProvisioningResult.success.is_(True),
            )
        )
        write_outbox_event(
            db,
            aggregate_id=order.id,
            aggregate_type="order",
            event_type="order.confirmed",
            payload={
                "order_number": order.order_number,
                "user_id": order.user_id,
                "buyer_email": order.buyer_email,
                "credentials": [
                    {"line_item_id": str(r.line_item_id), "accounts": r.credentials}
                    for r in credentials.scalars().all()
                ],
            },
        )
        await db.commit()
        order.status = OrderStatus.CONFIRMED.value
        metrics.record_order_confirmed()
        logger.info("order_confirmed", order_number=order.order_number)
        return order.status

    async def provision_orders(self, order_ids: Iterable[uuid.UUID]) -> List[Dict[str, Any]]:
        """Provision several orders concurrently; one order's failure never blocks another."""
        order_ids = list(order_ids)
        results = await asyncio.gather(
            *(self.provision_order(order_id) for order_id in order_ids),
            return_exceptions=True,
        )
        summaries: List[Dict[str, Any]] = []
        for order_id, result in zip(order_ids, results):
            if isinstance(result, BaseException):
                logger.error("provisioning_order_error", order_id=str(order_id), error=str(result))
                summaries.append({"order_id": str(order_id), "error": str(result)})
            else:
                summaries.append(result)
        return summaries

    async def retry_failed(self, limit: int = 100) -> Dict[str, int]:
        """
        Sweep paid orders whose line items are still unprovisioned.

        Items that used up provisioning_max_attempts are left for manual
        follow-up.

        Returns:
            Dict[str, int]: orders attempted and orders confirmed
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order.id)
                .join(OrderLineItem, OrderLineItem.order_id == Order.id)
                .where(
                    Order.status == OrderStatus.PROCESSING.value,
                    OrderLineItem.provisioning_status != SUCCEEDED,
                    OrderLineItem.provisioning_attempts < self.max_attempts,
                )
                .distinct()
                .limit(limit)
            )
            order_ids = list(result.scalars().all())

        if not order_ids:
            return {"attempted": 0, "confirmed": 0}

        logger.info("provisioning_sweep_started", orders=len(order_ids))
        summaries = await self.provision_orders(order_ids)
        confirmed = sum(1 for s in summaries if s.get("status") == OrderStatus.CONFIRMED.value)
        logger.info("provisioning_sweep_finished", attempted=len(order_ids), confirmed=confirmed)
        return {"attempted": len(order_ids), "confirmed": confirmed}

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
