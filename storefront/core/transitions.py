"""
Payment intent transitions.

The single code path through which webhooks, status polls, buyer cancels and
refunds change a payment intent. A transition is a compare-and-set on the
current status, so concurrent deliveries of the same news apply it once:

    UPDATE payment_intents SET status = :target
    WHERE id = :id AND status = :current

Order statuses, the audit trail, deposit credits and reversals, and outbox
events are written in the same transaction; the caller commits.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.events import record_payment_event, write_outbox_event
from storefront.core.exceptions import IllegalTransition, InsufficientBalance
from storefront.core.ledger import BONUS, DEPOSIT, REFUND, BalanceLedger
from storefront.core.state_machine import (
    OrderStatus,
    PaymentStatus,
    ensure_order_transition,
    ensure_payment_transition,
    order_status_for,
)
from storefront.database.models import Order, PaymentIntent, utcnow
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PROCESSED = "processed"
UNCHANGED = "unchanged"
ILLEGAL = "illegal_transition"


@dataclass
class TransitionResult:
    outcome: str
    from_status: str
    to_status: str

    @property
    def changed(self) -> bool:
        return self.outcome == PROCESSED


async def apply_payment_transition(
    db: AsyncSession,
    intent: PaymentIntent,
    target: PaymentStatus,
    source: str,
    native_status: Optional[str] = None,
    ledger: Optional[BalanceLedger] = None,
) -> TransitionResult:
    """
    Move a payment intent (and its orders) to target.

    Args:
        db: Session the caller commits
        intent: Payment intent as loaded by the caller
        target: Canonical status to move to
        source: Who asks (webhook, poll, buyer_cancel, refund)
        native_status: Processor status that implied target
        ledger: Balance ledger that credits completed deposits and reverses
            refunded ones

    Returns:
        TransitionResult: processed, or unchanged for same-state updates and
        lost races

    Raises:
        IllegalTransition: If the table forbids current -> target
    """
    current = PaymentStatus(intent.status)
    log = logger.bind(
        payment_intent_id=str(intent.id),
        gateway=intent.gateway_code,
        source=source,
    )

    if not ensure_payment_transition(current, target):
        return TransitionResult(UNCHANGED, current.value, current.value)

    values = {"status": target.value, "updated_at": utcnow()}
    if native_status is not None:
        values["native_status"] = native_status
    result = await db.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id == intent.id, PaymentIntent.status == current.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        log.info("payment_transition_lost_race", from_status=current.value, to_status=target.value)
        return TransitionResult(UNCHANGED, current.value, current.value)

    intent.status = target.value
    if native_status is not None:
        intent.native_status = native_status

    record_payment_event(
        db,
        intent.id,
        "status_changed",
        {
            "from": current.value,
            "to": target.value,
            "native_status": native_status,
            "source": source,
        },
    )
    metrics.record_transition(current.value, target.value, source)
    log.info(
        "payment_transition_applied",
        from_status=current.value,
        to_status=target.value,
        native_status=native_status,
    )

    if intent.purpose == "deposit":
        if target == PaymentStatus.COMPLETED:
            await _credit_deposit(db, intent, ledger or BalanceLedger())
        elif target == PaymentStatus.REFUNDED:
            await _reverse_deposit(db, intent, ledger or BalanceLedger(), source)
    else:
        await _advance_orders(db, intent, target)

    if target == PaymentStatus.COMPLETED:
        write_outbox_event(
            db,
            aggregate_id=intent.id,
            aggregate_type="payment_intent",
            event_type="payment.completed",
            payload={
                "payment_intent_id": str(intent.id),
                "gateway": intent.gateway_code,
                "purpose": intent.purpose,
                "user_id": intent.user_id,
                "amount_charged": str(intent.amount_charged),
                "currency": intent.currency,
            },
        )

    return TransitionResult(PROCESSED, current.value, target.value)


async def flag_for_review(
    db: AsyncSession,
    intent: PaymentIntent,
    error: IllegalTransition,
    source: str,
    native_status: Optional[str] = None,
) -> TransitionResult:
    """
    Record a rejected transition.

    A completion reported for an intent that already failed or expired means
    money may have arrived for a dead checkout: the intent is flagged
    needs_review and a payment.needs_review event is queued. Other stale
    callbacks are only logged.
    """
    metrics.record_illegal_transition(intent.gateway_code, source)
    logger.warning(
        "illegal_transition",
        payment_intent_id=str(intent.id),
        gateway=intent.gateway_code,
        source=source,
        from_status=error.current,
        to_status=error.target,
        native_status=native_status,
    )
    record_payment_event(
        db,
        intent.id,
        "illegal_transition",
        {
            "from": error.current,
            "to": error.target,
            "native_status": native_status,
            "source": source,
        },
    )

    late_completion = error.target == PaymentStatus.COMPLETED.value and error.current in (
        PaymentStatus.FAILED.value,
        PaymentStatus.EXPIRED.value,
    )
    if late_completion:
        await _mark_needs_review(
            db,
            intent,
            {
                "status": error.current,
                "reported_status": error.target,
                "native_status": native_status,
            },
        )

    return TransitionResult(ILLEGAL, error.current, error.current)


async def _advance_orders(db: AsyncSession, intent: PaymentIntent, target: PaymentStatus) -> None:
    order_target = order_status_for(target)
    result = await db.execute(select(Order).where(Order.payment_intent_id == intent.id))
    for order in result.scalars().all():
        if target == PaymentStatus.REFUNDED:
            order.refunded_at = utcnow()
        try:
            if not ensure_order_transition(order.status, order_target):
                continue
        except IllegalTransition:
            # A confirmed order keeps its status; a refund only stamps refunded_at
            logger.info(
                "order_transition_skipped",
                order_number=order.order_number,
                status=order.status,
                target=order_target.value,
            )
            continue

        updated = await db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == order.status)
            .values(status=order_target.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount == 1:
            logger.info(
                "order_status_changed",
                order_number=order.order_number,
                from_status=order.status,
                to_status=order_target.value,
            )
            order.status = order_target.value
            if order_target == OrderStatus.CANCELLED:
                write_outbox_event(
                    db,
                    aggregate_id=order.id,
                    aggregate_type="order",
                    event_type="order.cancelled",
                    payload={"order_number": order.order_number, "payment_status": target.value},
                )


async def _credit_deposit(db: AsyncSession, intent: PaymentIntent, ledger: BalanceLedger) -> None:
    reference = str(intent.id)
    await ledger.credit(
        intent.user_id,
        intent.amount_requested,
        DEPOSIT,
        reason=f"Deposit via {intent.gateway_code}",
        reference=reference,
        db=db,
    )
    if intent.bonus_amount and intent.bonus_amount > 0:
        await ledger.credit(
            intent.user_id,
            intent.bonus_amount,
            BONUS,
            reason=f"Deposit bonus via {intent.gateway_code}",
            reference=reference,
            db=db,
        )


async def _mark_needs_review(
    db: AsyncSession, intent: PaymentIntent, details: Dict[str, Any]
) -> None:
    if intent.needs_review:
        return
    await db.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id == intent.id)
        .values(needs_review=True, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    intent.needs_review = True
    write_outbox_event(
        db,
        aggregate_id=intent.id,
        aggregate_type="payment_intent",
        event_type="payment.needs_review",
        payload={
            "payment_intent_id": str(intent.id),
            "gateway": intent.gateway_code,
            "external_reference": intent.external_reference,
            **details,
        },
    )


async def _reverse_deposit(
    db: AsyncSession, intent: PaymentIntent, ledger: BalanceLedger, source: str
) -> None:
    """Take back a refunded deposit and its bonus; flag it when already spent."""
    amount = intent.amount_requested + (intent.bonus_amount or 0)
    try:
        await ledger.debit(
            intent.user_id,
            amount,
            reason=f"Deposit via {intent.gateway_code} refunded",
            reference=str(intent.id),
            transaction_type=REFUND,
            db=db,
        )
    except InsufficientBalance as e:
        logger.warning(
            "deposit_reversal_uncovered",
            payment_intent_id=str(intent.id),
            user_id=intent.user_id,
            amount=str(amount),
            available=str(e.available),
        )
        await _mark_needs_review(
            db,
            intent,
            {
                "status": PaymentStatus.REFUNDED.value,
                "reason": "deposit_reversal_uncovered",
                "amount": str(amount),
                "source": source,
            },
        )
