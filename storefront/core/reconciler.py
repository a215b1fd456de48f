"""
Webhook reconciler.

Single inbound entry point for processor callbacks. Per delivery:

1. Parse the body; malformed bodies are acknowledged and discarded
2. Verify the signature; failures raise SignatureVerificationFailed (401)
3. Skip payloads already recorded in webhook_events
4. Resolve the payment intent by external reference
5. Map the native status and apply the transition; completed order intents
   trigger provisioning
6. Record the webhook event last, so that a crash before this point causes
   a safe re-delivery rather than a silent loss
"""
import hashlib
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.exceptions import (
    IllegalTransition,
    MalformedWebhook,
    NotFoundError,
    SignatureVerificationFailed,
)
from storefront.core.ledger import BalanceLedger
from storefront.core.provisioning import ProvisioningService
from storefront.core.state_machine import PaymentStatus
from storefront.core.transitions import (
    PROCESSED,
    TransitionResult,
    apply_payment_transition,
    flag_for_review,
)
from storefront.database.connection import get_session_factory
from storefront.database.models import Order, PaymentIntent, WebhookEvent, utcnow
from storefront.gateways.base import GatewayAdapter
from storefront.gateways.registry import GatewayRegistry
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DUPLICATE = "duplicate"
MALFORMED = "malformed"
UNMATCHED = "unmatched"


@dataclass
class WebhookOutcome:
    """What happened to one webhook delivery."""

    gateway: str
    outcome: str
    external_reference: Optional[str] = None
    payment_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PaymentReconciler:
    """Applies processor callbacks and status polls to payment intents."""

    def __init__(
        self,
        registry: GatewayRegistry,
        provisioning: ProvisioningService,
        ledger: Optional[BalanceLedger] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.registry = registry
        self.provisioning = provisioning
        self._session_factory = session_factory
        self.ledger = ledger or BalanceLedger(session_factory)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def handle(
        self,
        gateway_code: str,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> WebhookOutcome:
        """
        Process one webhook delivery.

        Raises:
            NotFoundError: If the gateway is unknown
            SignatureVerificationFailed: If the signature does not verify
        """
        start_time = time.time()
        adapter = self.registry.get(gateway_code)
        log = logger.bind(gateway=gateway_code)

        try:
            payload = adapter.parse_payload(raw_body)
        except MalformedWebhook as e:
            log.warning("webhook_malformed", error=e.message)
            return self._finish(WebhookOutcome(gateway_code, MALFORMED), start_time)

        signature = adapter.extract_signature(headers, payload)
        if not adapter.verify_signature(raw_body, signature):
            log.warning("webhook_signature_invalid", signature_present=bool(signature))
            metrics.record_webhook(gateway_code, "invalid_signature", time.time() - start_time)
            raise SignatureVerificationFailed(gateway_code)

        reference = adapter.extract_reference(payload)
        native_status = adapter.extract_status(payload)
        if not reference:
            log.warning("webhook_missing_reference", native_status=native_status)
            return self._finish(WebhookOutcome(gateway_code, MALFORMED), start_time)

        log = log.bind(external_reference=reference, native_status=native_status)
        payload_hash = hashlib.sha256(raw_body).hexdigest()

        async with self.session_factory() as db:
            seen = await db.execute(
                select(WebhookEvent.id).where(
                    WebhookEvent.gateway_code == gateway_code,
                    WebhookEvent.external_reference == reference,
                    WebhookEvent.raw_payload_hash == payload_hash,
                )
            )
            if seen.scalar_one_or_none() is not None:
                log.info("webhook_duplicate")
                return self._finish(WebhookOutcome(gateway_code, DUPLICATE, reference), start_time)

            found = await db.execute(
                select(PaymentIntent.id).where(
                    PaymentIntent.gateway_code == gateway_code,
                    PaymentIntent.external_reference == reference,
                )
            )
            intent_id = found.scalar_one_or_none()

        if intent_id is None:
            log.warning("webhook_unmatched_reference")
            outcome = WebhookOutcome(gateway_code, UNMATCHED, reference)
        else:
            result = await self.reconcile_status(adapter, intent_id, native_status, source="webhook")
            outcome = WebhookOutcome(gateway_code, result.outcome, reference, result.to_status)

        recorded = await self._record_event(
            gateway_code,
            reference,
            payload_hash,
            native_status,
            matched=intent_id is not None,
            outcome=outcome.outcome,
        )
        if not recorded:
            log.info("webhook_duplicate_concurrent")
            outcome.outcome = DUPLICATE

        log.info("webhook_processed", outcome=outcome.outcome, payment_status=outcome.payment_status)
        return self._finish(outcome, start_time)

    async def reconcile_status(
        self,
        adapter: GatewayAdapter,
        intent_id: uuid.UUID,
        native_status: str,
        source: str,
    ) -> TransitionResult:
        """
        Apply a native status reported by a webhook or a status poll.

        Commits the transition, then provisions the orders of a newly
        completed order intent. Illegal transitions are recorded, never
        applied.
        """
        mapping = adapter.map_status(native_status)

        async with self.session_factory() as db:
            result = await db.execute(select(PaymentIntent).where(PaymentIntent.id == intent_id))
            intent = result.scalar_one_or_none()
            if intent is None:
                raise NotFoundError(f"Payment intent {intent_id} not found")

            try:
                transition = await apply_payment_transition(
                    db,
                    intent,
                    mapping.payment_status,
                    source=source,
                    native_status=native_status,
                    ledger=self.ledger,
                )
            except IllegalTransition as e:
                transition = await flag_for_review(db, intent, e, source, native_status)
            await db.commit()

            order_ids = []
            provision = (
                transition.outcome == PROCESSED
                and transition.to_status == PaymentStatus.COMPLETED.value
                and intent.purpose == "order"
            )
            if provision:
                orders = await db.execute(select(Order.id).where(Order.payment_intent_id == intent.id))
                order_ids = list(orders.scalars().all())

        if order_ids:
            await self.provisioning.provision_orders(order_ids)
        return transition

    async def _record_event(
        self,
        gateway_code: str,
        reference: str,
        payload_hash: str,
        native_status: str,
        matched: bool,
        outcome: str,
    ) -> bool:
        """Insert the webhook event; False if a concurrent delivery won the race."""
        async with self.session_factory() as db:
            db.add(
                WebhookEvent(
                    gateway_code=gateway_code,
                    external_reference=reference,
                    raw_payload_hash=payload_hash,
                    native_status=native_status,
                    signature_valid=True,
                    matched=matched,
                    outcome=outcome,
                    processed_at=utcnow(),
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
        return True

    @staticmethod
    def _finish(outcome: WebhookOutcome, start_time: float) -> WebhookOutcome:
        metrics.record_webhook(outcome.gateway, outcome.outcome, time.time() - start_time)
        return outcome
