"""
Order fulfillment orchestrator.

Turns a checkout into orders:

1. Validate every line item (no side effects on failure)
2. Fan the cart out into one order per line item
3. Settle:
   - balance: one debit of the cart total, then each order persisted
     independently and provisioned immediately
   - gateway: one payment intent covering every order, charged through the
     adapter with the fee included; provisioning waits for the reconciler
4. Return order numbers (and the hosted checkout URL for gateways)

Failure of one order never blocks or rolls back another.
"""
import asyncio
import secrets
import string
import time
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.config import get_settings
from storefront.core.events import record_payment_event, write_outbox_event
from storefront.core.exceptions import (
    AmountOutOfRange,
    ConfigurationError,
    IllegalTransition,
    NotFoundError,
    StorefrontError,
    UpstreamError,
    ValidationError,
)
from storefront.core.idempotency import CheckoutIdempotency
from storefront.core.ledger import REFUND, BalanceLedger
from storefront.core.pricing import PriceQuote, price, quantize_money
from storefront.core.provisioning import ProvisioningService
from storefront.core.saga import Saga
from storefront.core.state_machine import (
    OrderStatus,
    PaymentStatus,
    ensure_order_transition,
)
from storefront.core.transitions import apply_payment_transition
from storefront.database.connection import get_session_factory
from storefront.database.models import (
    Order,
    OrderLineItem,
    PaymentIntent,
    Product,
    utcnow,
)
from storefront.gateways.base import GatewayAdapter
from storefront.gateways.registry import GatewayRegistry
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

BALANCE = "balance"
ORDER_NUMBER_ALPHABET = string.digits + string.ascii_uppercase
ORDER_NUMBER_ATTEMPTS = 3


class UnitConfiguration(BaseModel):
    """Configuration of one account within a line item."""

    devices: int = 1
    adult_channels: bool = False
    mac_address: Optional[str] = None


class LineItemRequest(BaseModel):
    product_id: uuid.UUID
    quantity: int
    unit_configuration: List[UnitConfiguration] = Field(default_factory=list)


class BuyerContact(BaseModel):
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None


class CheckoutRequest(BaseModel):
    """A cart submitted for payment."""

    user_id: str
    settlement_method: str
    line_items: List[LineItemRequest]
    buyer: BuyerContact
    idempotency_key: Optional[str] = None


@dataclass
class CheckoutResult:
    checkout_id: str
    settlement_method: str
    order_numbers: List[str]
    checkout_url: Optional[str] = None
    failed_items: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DepositResult:
    payment_intent_id: str
    checkout_url: str
    amount: str
    fee_amount: str
    total_charged: str
    bonus_amount: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _PlannedOrder:
    """A validated line item with its order number and price."""

    position: int
    order_number: str
    product: Product
    item: LineItemRequest

    @property
    def amount(self) -> Decimal:
        return quantize_money(self.product.price * self.item.quantity)


def generate_order_number() -> str:
    """CS-YYYYMMDD-XXXXXX with six random base-36 characters."""
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"CS-{utcnow():%Y%m%d}-{suffix}"


def order_to_dict(order: Order, payment_status: Optional[str] = None) -> Dict[str, Any]:
    return {
        "order_number": order.order_number,
        "checkout_id": str(order.checkout_id),
        "status": order.status,
        "settlement_method": order.settlement_method,
        "total_amount": str(order.total_amount),
        "currency": order.currency,
        "payment_status": payment_status,
        "refunded": order.refunded_at is not None,
        "created_at": order.created_at.isoformat(),
        "line_items": [
            {
                "product_id": str(item.product_id),
                "product_name": item.product_name,
                "quantity": item.quantity,
                "price": str(item.price),
                "provisioning_status": item.provisioning_status,
                "provisioning_attempts": item.provisioning_attempts,
            }
            for item in order.line_items
        ],
    }


class OrderOrchestrator:
    """Checkout, deposit, cancel and refund flows."""

    def __init__(
        self,
        registry: GatewayRegistry,
        provisioning: ProvisioningService,
        ledger: Optional[BalanceLedger] = None,
        idempotency: Optional[CheckoutIdempotency] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.registry = registry
        self.provisioning = provisioning
        self._session_factory = session_factory
        self.ledger = ledger or BalanceLedger(session_factory)
        self.idempotency = idempotency or CheckoutIdempotency(session_factory)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """
        Submit a cart.

        Returns:
            CheckoutResult: Order numbers, checkout URL for gateway settlement,
            and the line items that failed (balance settlement only)

        Raises:
            ValidationError: If any line item is invalid
            CheckoutInProgress: If the idempotency key is still being processed
            InsufficientBalance: If the balance cannot cover the cart
            AmountOutOfRange: If the charge is outside gateway limits
            UpstreamError: If the gateway could not create the charge
        """
        if request.idempotency_key:
            stored = await self.idempotency.claim(request.idempotency_key, request.user_id)
            if stored is not None:
                return CheckoutResult(**stored)

        start_time = time.time()
        structlog.contextvars.bind_contextvars(settlement=request.settlement_method)
        try:
            result = await self._checkout(request)
        except Exception as e:
            error_code = getattr(e, "error_code", "internal_error")
            metrics.record_checkout(request.settlement_method, error_code, time.time() - start_time)
            if request.idempotency_key:
                await self.idempotency.release(request.idempotency_key)
            raise
        finally:
            structlog.contextvars.unbind_contextvars("settlement")

        metrics.record_checkout(request.settlement_method, "success", time.time() - start_time)
        if request.idempotency_key:
            await self.idempotency.complete(request.idempotency_key, result.to_dict())
        return result

    async def _checkout(self, request: CheckoutRequest) -> CheckoutResult:
        adapter = None
        if request.settlement_method != BALANCE:
            adapter = self._adapter_for(request.settlement_method)

        planned = await self._plan(request)
        checkout_id = uuid.uuid4()
        logger.info(
            "checkout_started",
            checkout_id=str(checkout_id),
            user_id=request.user_id,
            items=len(planned),
        )

        if adapter is None:
            return await self._checkout_with_balance(request, checkout_id, planned)
        return await self._checkout_with_gateway(request, checkout_id, planned, adapter)

    def _adapter_for(self, gateway_code: str) -> GatewayAdapter:
        try:
            return self.registry.get(gateway_code)
        except NotFoundError as e:
            raise ValidationError(f"Unsupported payment method: {gateway_code}") from e

    async def _plan(self, request: CheckoutRequest) -> List[_PlannedOrder]:
        """Validate the cart against the catalog."""
        if not request.line_items:
            raise ValidationError("Cart is empty")
        if not request.buyer.email or "@" not in request.buyer.email:
            raise ValidationError("A valid e-mail address is required")

        product_ids = {item.product_id for item in request.line_items}
        async with self.session_factory() as db:
            result = await db.execute(select(Product).where(Product.id.in_(product_ids)))
            products = {product.id: product for product in result.scalars().all()}

        planned: List[_PlannedOrder] = []
        for position, item in enumerate(request.line_items, start=1):
            product = products.get(item.product_id)
            if product is None or not product.is_active:
                raise ValidationError(
                    f"Item {position}: product is not available", position=position
                )
            if item.quantity <= 0:
                raise ValidationError(
                    f"Item {position}: quantity must be positive", position=position
                )
            if len(item.unit_configuration) != item.quantity:
                raise ValidationError(
                    f"Item {position}: expected {item.quantity} account configurations, "
                    f"got {len(item.unit_configuration)}",
                    position=position,
                )
            for unit in item.unit_configuration:
                if not 1 <= unit.devices <= product.max_devices:
                    raise ValidationError(
                        f"Item {position}: devices must be between 1 and {product.max_devices}",
                        position=position,
                    )
                if unit.mac_address is not None and not 0 < len(unit.mac_address) <= 64:
                    raise ValidationError(
                        f"Item {position}: invalid MAC address", position=position
                    )
            planned.append(_PlannedOrder(position, generate_order_number(), product, item))
        return planned

    @staticmethod
    def _build_order(
        request: CheckoutRequest,
        checkout_id: uuid.UUID,
        plan: _PlannedOrder,
        currency: str,
        payment_intent_id: Optional[uuid.UUID] = None,
    ) -> Order:
        order = Order(
            id=uuid.uuid4(),
            order_number=plan.order_number,
            checkout_id=checkout_id,
            user_id=request.user_id,
            settlement_method=request.settlement_method,
            payment_intent_id=payment_intent_id,
            total_amount=plan.amount,
            currency=currency,
            status=OrderStatus.NEW.value,
            buyer_name=request.buyer.name,
            buyer_email=request.buyer.email,
            buyer_phone=request.buyer.phone,
        )
        order.line_items = [
            OrderLineItem(
                id=uuid.uuid4(),
                position=plan.position,
                product_id=plan.product.id,
                product_name=plan.product.name,
                quantity=plan.item.quantity,
                unit_price=quantize_money(plan.product.price),
                price=plan.amount,
                duration_months=plan.product.duration_months,
                unit_configuration=[unit.model_dump() for unit in plan.item.unit_configuration],
            )
        ]
        return order

    # Balance settlement

    async def _checkout_with_balance(
        self,
        request: CheckoutRequest,
        checkout_id: uuid.UUID,
        planned: List[_PlannedOrder],
    ) -> CheckoutResult:
        """
        debit_balance -> create_orders.

        The cart total is taken in one conditional debit, so a cart is either
        fully paid or rejected with InsufficientBalance. Orders are then
        persisted independently; an order that cannot be persisted has its
        own amount credited back, and if none can be persisted the saga
        credits back the whole debit.
        """
        total = quantize_money(sum(plan.amount for plan in planned))
        currency = get_settings().default_currency

        async def debit_balance(ctx: Dict[str, Any]) -> Decimal:
            await self.ledger.debit(
                request.user_id,
                total,
                reason=f"Purchase of {len(planned)} item(s)",
                reference=str(checkout_id),
            )
            return total

        async def refund_debit(ctx: Dict[str, Any], amount: Decimal) -> None:
            await self.ledger.credit(
                request.user_id,
                amount,
                REFUND,
                reason="Checkout could not be completed",
                reference=str(checkout_id),
            )

        async def create_orders(
            ctx: Dict[str, Any],
        ) -> Tuple[List[uuid.UUID], List[str], List[Dict[str, Any]]]:
            results = await asyncio.gather(
                *(
                    self._create_balance_order(request, checkout_id, plan, currency)
                    for plan in planned
                ),
                return_exceptions=True,
            )
            failures = [
                (plan, result)
                for plan, result in zip(planned, results)
                if isinstance(result, BaseException)
            ]
            if len(failures) == len(planned):
                raise failures[0][1]

            order_ids: List[uuid.UUID] = []
            order_numbers: List[str] = []
            for plan, result in zip(planned, results):
                if not isinstance(result, BaseException):
                    order_ids.append(result)
                    order_numbers.append(plan.order_number)

            failed_items: List[Dict[str, Any]] = []
            for plan, error in failures:
                logger.error(
                    "balance_order_failed",
                    checkout_id=str(checkout_id),
                    position=plan.position,
                    error=str(error),
                )
                await self.ledger.credit(
                    request.user_id,
                    plan.amount,
                    REFUND,
                    reason=f"Order {plan.order_number} could not be created",
                    reference=plan.order_number,
                )
                failed_items.append(
                    {
                        "position": plan.position,
                        "product_id": str(plan.product.id),
                        "error": getattr(error, "error_code", "internal_error"),
                        "message": getattr(error, "user_message", str(error)),
                    }
                )
            return order_ids, order_numbers, failed_items

        saga = Saga(name=f"balance_checkout:{checkout_id}")
        saga.add_step("debit_balance", debit_balance, refund_debit)
        saga.add_step("create_orders", create_orders)
        context = await saga.execute()
        order_ids, order_numbers, failed_items = context["create_orders_result"]

        await self.provisioning.provision_orders(order_ids)

        logger.info(
            "balance_checkout_completed",
            checkout_id=str(checkout_id),
            orders=order_numbers,
            failed=len(failed_items),
        )
        return CheckoutResult(
            checkout_id=str(checkout_id),
            settlement_method=BALANCE,
            order_numbers=order_numbers,
            failed_items=failed_items,
        )

    async def _create_balance_order(
        self,
        request: CheckoutRequest,
        checkout_id: uuid.UUID,
        plan: _PlannedOrder,
        currency: str,
    ) -> uuid.UUID:
        async with self.session_factory() as db:
            order = self._build_order(request, checkout_id, plan, currency)
            ensure_order_transition(order.status, OrderStatus.PROCESSING)
            order.status = OrderStatus.PROCESSING.value
            db.add(order)
            write_outbox_event(
                db,
                aggregate_id=order.id,
                aggregate_type="order",
                event_type="order.paid",
                payload={
                    "order_number": order.order_number,
                    "settlement_method": BALANCE,
                    "amount": str(order.total_amount),
                },
            )
            await db.commit()
        metrics.record_order_created(BALANCE)
        logger.info(
            "order_created",
            order_number=plan.order_number,
            settlement_method=BALANCE,
            amount=str(plan.amount),
        )
        return order.id

    # Gateway settlement

    async def _checkout_with_gateway(
        self,
        request: CheckoutRequest,
        checkout_id: uuid.UUID,
        planned: List[_PlannedOrder],
        adapter: GatewayAdapter,
    ) -> CheckoutResult:
        base = quantize_money(sum(plan.amount for plan in planned))
        quote = price(base, adapter.config.fee_rule)
        adapter.check_amount(quote.total_charged)
        currency = adapter.config.currency

        intent, orders = await self._persist_gateway_orders(
            request, checkout_id, planned, adapter, quote, currency
        )
        order_numbers = [order.order_number for order in orders]
        for _ in orders:
            metrics.record_order_created(adapter.code)

        settings = get_settings()
        checkout_url = await self._create_charge(
            adapter,
            intent,
            amount=quote.total_charged,
            currency=currency,
            success_url=f"{settings.storefront_base_url}/checkout/success?checkout={checkout_id}",
            cancel_url=f"{settings.storefront_base_url}/checkout/cancel?checkout={checkout_id}",
            email=request.buyer.email,
            description=f"Order {', '.join(order_numbers)}",
        )

        logger.info(
            "gateway_checkout_created",
            checkout_id=str(checkout_id),
            gateway=adapter.code,
            orders=order_numbers,
            amount_charged=str(quote.total_charged),
        )
        return CheckoutResult(
            checkout_id=str(checkout_id),
            settlement_method=adapter.code,
            order_numbers=order_numbers,
            checkout_url=checkout_url,
        )

    async def _persist_gateway_orders(
        self,
        request: CheckoutRequest,
        checkout_id: uuid.UUID,
        planned: List[_PlannedOrder],
        adapter: GatewayAdapter,
        quote: PriceQuote,
        currency: str,
    ) -> Tuple[PaymentIntent, List[Order]]:
        """Insert the payment intent and its orders; order numbers are regenerated on collision."""
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            async with self.session_factory() as db:
                intent = self._new_intent(request.user_id, adapter, "order", quote, currency)
                db.add(intent)
                orders = [
                    self._build_order(request, checkout_id, plan, currency, intent.id)
                    for plan in planned
                ]
                db.add_all(orders)
                record_payment_event(
                    db,
                    intent.id,
                    "created",
                    {
                        "purpose": "order",
                        "orders": [order.order_number for order in orders],
                        "amount_requested": str(quote.base_amount),
                        "amount_charged": str(quote.total_charged),
                    },
                )
                try:
                    await db.commit()
                    return intent, orders
                except IntegrityError:
                    await db.rollback()
                    logger.warning("order_number_collision", attempt=attempt)
                    for plan in planned:
                        plan.order_number = generate_order_number()

        raise ValidationError("Could not allocate order numbers, please retry")

    @staticmethod
    def _new_intent(
        user_id: str,
        adapter: GatewayAdapter,
        purpose: str,
        quote: PriceQuote,
        currency: str,
    ) -> PaymentIntent:
        return PaymentIntent(
            id=uuid.uuid4(),
            gateway_code=adapter.code,
            purpose=purpose,
            user_id=user_id,
            amount_requested=quote.base_amount,
            amount_charged=quote.total_charged,
            fee_amount=quote.fee_amount,
            bonus_amount=quote.bonus_amount if purpose == "deposit" else Decimal("0"),
            currency=currency,
            status=PaymentStatus.PENDING.value,
        )

    async def _create_charge(
        self,
        adapter: GatewayAdapter,
        intent: PaymentIntent,
        amount: Decimal,
        currency: str,
        success_url: str,
        cancel_url: str,
        email: Optional[str],
        description: str,
    ) -> str:
        """
        Create the charge and store its reference on the intent.

        A charge that could not be created fails the intent, which cancels
        its orders.
        """
        try:
            charge = await adapter.create_charge(
                amount,
                currency,
                order_ref=str(intent.id),
                success_url=success_url,
                cancel_url=cancel_url,
                email=email,
                description=description,
            )
        except (UpstreamError, ConfigurationError, AmountOutOfRange) as e:
            await self._fail_intent(intent.id, e)
            raise

        async with self.session_factory() as db:
            await db.execute(
                update(PaymentIntent)
                .where(PaymentIntent.id == intent.id)
                .values(
                    external_reference=charge.external_reference,
                    checkout_url=charge.checkout_url,
                    updated_at=utcnow(),
                )
            )
            record_payment_event(
                db,
                intent.id,
                "charge_created",
                {"external_reference": charge.external_reference, "gateway": adapter.code},
            )
            await db.commit()
        return charge.checkout_url

    async def _fail_intent(self, intent_id: uuid.UUID, error: StorefrontError) -> None:
        async with self.session_factory() as db:
            result = await db.execute(select(PaymentIntent).where(PaymentIntent.id == intent_id))
            intent = result.scalar_one()
            intent.error_message = error.message
            await apply_payment_transition(
                db, intent, PaymentStatus.FAILED, source="checkout", ledger=self.ledger
            )
            await db.commit()
        logger.error(
            "gateway_charge_failed",
            payment_intent_id=str(intent_id),
            gateway=intent.gateway_code,
            error=error.message,
        )

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def initiate_deposit(
        self,
        user_id: str,
        gateway_code: str,
        amount: Decimal,
        buyer_email: Optional[str] = None,
    ) -> DepositResult:
        """
        Start a balance top-up through a gateway.

        The fee is charged on top; the bonus is credited together with the
        deposit once the reconciler sees the payment completed.

        Raises:
            ValidationError: If amount is not positive or the gateway is unknown
            AmountOutOfRange: If the charge is outside gateway limits
            UpstreamError: If the gateway could not create the charge
        """
        amount = quantize_money(amount)
        if amount <= 0:
            raise ValidationError("Deposit amount must be positive")

        adapter = self._adapter_for(gateway_code)
        quote = price(amount, adapter.config.fee_rule, adapter.config.bonus_rules)
        adapter.check_amount(quote.total_charged)
        currency = adapter.config.currency

        async with self.session_factory() as db:
            intent = self._new_intent(user_id, adapter, "deposit", quote, currency)
            db.add(intent)
            record_payment_event(
                db,
                intent.id,
                "created",
                {
                    "purpose": "deposit",
                    "amount_requested": str(quote.base_amount),
                    "amount_charged": str(quote.total_charged),
                    "bonus_amount": str(quote.bonus_amount),
                },
            )
            await db.commit()

        settings = get_settings()
        checkout_url = await self._create_charge(
            adapter,
            intent,
            amount=quote.total_charged,
            currency=currency,
            success_url=f"{settings.storefront_base_url}/balance?deposit={intent.id}",
            cancel_url=f"{settings.storefront_base_url}/balance?deposit={intent.id}&cancelled=1",
            email=buyer_email,
            description="Balance top-up",
        )

        logger.info(
            "deposit_initiated",
            payment_intent_id=str(intent.id),
            gateway=gateway_code,
            amount=str(amount),
            bonus=str(quote.bonus_amount),
        )
        return DepositResult(
            payment_intent_id=str(intent.id),
            checkout_url=checkout_url,
            amount=str(quote.base_amount),
            fee_amount=str(quote.fee_amount),
            total_charged=str(quote.total_charged),
            bonus_amount=str(quote.bonus_amount),
        )

    # ------------------------------------------------------------------
    # Lookups, cancel, refund
    # ------------------------------------------------------------------

    async def _load_order(self, db: AsyncSession, order_number: str) -> Order:
        result = await db.execute(select(Order).where(Order.order_number == order_number))
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {order_number} not found", order_number=order_number)
        return order

    @staticmethod
    async def _intent_status(db: AsyncSession, order: Order) -> Optional[str]:
        if order.payment_intent_id is None:
            return None
        result = await db.execute(
            select(PaymentIntent.status).where(PaymentIntent.id == order.payment_intent_id)
        )
        return result.scalar_one_or_none()

    async def get_order(self, order_number: str) -> Dict[str, Any]:
        """
        Raises:
            NotFoundError: If no such order exists
        """
        async with self.session_factory() as db:
            order = await self._load_order(db, order_number)
            return order_to_dict(order, await self._intent_status(db, order))

    async def list_checkout_orders(self, checkout_id: uuid.UUID) -> List[Dict[str, Any]]:
        """All orders created by one checkout submission."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order).where(Order.checkout_id == checkout_id).order_by(Order.created_at)
            )
            orders = list(result.scalars().all())
            return [order_to_dict(order, await self._intent_status(db, order)) for order in orders]

    async def cancel_payment(self, order_number: str) -> Dict[str, Any]:
        """
        Buyer cancel of a gateway payment that has not reached an outcome.

        The payment intent becomes failed and its orders cancelled. A later
        completion callback for the same reference is rejected and flagged
        for review by the reconciler.

        Raises:
            NotFoundError: If no such order exists
            ValidationError: If the order was paid from balance
            IllegalTransition: If the payment already reached an outcome
        """
        async with self.session_factory() as db:
            order = await self._load_order(db, order_number)
            if order.payment_intent_id is None:
                raise ValidationError("Orders paid from balance cannot be cancelled")

            result = await db.execute(
                select(PaymentIntent).where(PaymentIntent.id == order.payment_intent_id)
            )
            intent = result.scalar_one()
            transition = await apply_payment_transition(
                db, intent, PaymentStatus.FAILED, source="buyer_cancel", ledger=self.ledger
            )
            if transition.changed:
                intent.error_message = "Cancelled by buyer"
            await db.commit()

            await db.refresh(intent)
            if intent.status != PaymentStatus.FAILED.value:
                # Lost the race against a gateway callback
                raise IllegalTransition("payment_intent", intent.status, PaymentStatus.FAILED.value)
            await db.refresh(order)
            logger.info("payment_cancelled_by_buyer", order_number=order_number)
            return order_to_dict(order, intent.status)

    async def refund_payment(self, order_number: str) -> Dict[str, Any]:
        """
        Record a refund.

        Gateway orders: the payment intent moves completed -> refunded (the
        processor-side refund is issued by operators) and every order of the
        intent is stamped refunded. Balance orders: the order amount is
        credited back to the balance.

        Raises:
            NotFoundError: If no such order exists
            IllegalTransition: If the payment is not refundable
        """
        async with self.session_factory() as db:
            order = await self._load_order(db, order_number)

            if order.payment_intent_id is None:
                await self._refund_balance_order(db, order)
                await db.commit()
                await db.refresh(order)
                return order_to_dict(order)

            result = await db.execute(
                select(PaymentIntent).where(PaymentIntent.id == order.payment_intent_id)
            )
            intent = result.scalar_one()
            await apply_payment_transition(
                db, intent, PaymentStatus.REFUNDED, source="refund", ledger=self.ledger
            )
            await db.commit()

            await db.refresh(order)
            logger.info("payment_refunded", order_number=order_number, gateway=intent.gateway_code)
            return order_to_dict(order, intent.status)

    async def _refund_balance_order(self, db: AsyncSession, order: Order) -> None:
        if order.status not in (OrderStatus.PROCESSING.value, OrderStatus.CONFIRMED.value):
            raise IllegalTransition("order", order.status, "refunded")

        claimed = await db.execute(
            update(Order)
            .where(Order.id == order.id, Order.refunded_at.is_(None))
            .values(refunded_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise IllegalTransition("order", "refunded", "refunded")

        if order.status == OrderStatus.PROCESSING.value:
            # Not provisioned yet: stop provisioning
            await db.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == OrderStatus.PROCESSING.value)
                .values(status=OrderStatus.CANCELLED.value)
                .execution_options(synchronize_session=False)
            )

        await self.ledger.credit(
            order.user_id,
            order.total_amount,
            REFUND,
            reason=f"Refund of order {order.order_number}",
            reference=order.order_number,
            db=db,
        )
        write_outbox_event(
            db,
            aggregate_id=order.id,
            aggregate_type="order",
            event_type="order.refunded",
            payload={"order_number": order.order_number, "amount": str(order.total_amount)},
        )
        logger.info("balance_order_refunded", order_number=order.order_number)


__all__ = [
    "BALANCE",
    "BuyerContact",
    "CheckoutRequest",
    "CheckoutResult",
    "DepositResult",
    "LineItemRequest",
    "OrderOrchestrator",
    "UnitConfiguration",
    "generate_order_number",
]
