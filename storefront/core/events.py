"""Audit trail and transactional outbox writes."""
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database.models import OutboxEvent, PaymentIntentEvent, utcnow


def record_payment_event(
    db: AsyncSession,
    payment_intent_id: uuid.UUID,
    event_type: str,
    event_data: Dict[str, Any],
    correlation_id: Optional[uuid.UUID] = None,
) -> None:
    """
    Record a payment intent event for the audit trail.

    Args:
        db: Database session (the caller commits)
        payment_intent_id: Payment intent ID
        event_type: Event type (e.g. 'status_changed')
        event_data: Event data
        correlation_id: Correlation ID for tracing
    """
    db.add(
        PaymentIntentEvent(
            payment_intent_id=payment_intent_id,
            event_type=event_type,
            event_data=event_data,
            correlation_id=correlation_id or uuid.uuid4(),
            created_at=utcnow(),
        )
    )


def write_outbox_event(
    db: AsyncSession,
    aggregate_id: uuid.UUID,
    aggregate_type: str,
    event_type: str,
    payload: Dict[str, Any],
) -> None:
    """
    Write event to transactional outbox.

    Args:
        db: Database session (the caller commits)
        aggregate_id: Aggregate ID (e.g., order ID)
        aggregate_type: Aggregate type (e.g., 'order')
        event_type: Event type (e.g., 'order.confirmed')
        payload: Event payload
    """
    db.add(
        OutboxEvent(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event_type,
            payload=payload,
            published=False,
            created_at=utcnow(),
        )
    )
