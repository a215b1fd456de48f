"""
Status poller: recovery path for lost webhooks.

Periodically asks each gateway for the native status of payment intents that
are still open, and feeds the answer through the same transition logic the
webhook reconciler uses.
"""
import uuid
from datetime import timedelta
from typing import Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.config import get_settings
from storefront.core.exceptions import NotFoundError, StorefrontError, UpstreamError
from storefront.core.reconciler import PaymentReconciler
from storefront.core.state_machine import ABSORBING_PAYMENT_STATES
from storefront.database.connection import get_session_factory
from storefront.database.models import PaymentIntent, utcnow
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StatusPoller:
    """One poll pass over non-absorbing payment intents."""

    def __init__(
        self,
        reconciler: PaymentReconciler,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        min_age_seconds: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        settings = get_settings()
        self.reconciler = reconciler
        self._session_factory = session_factory
        self.min_age_seconds = (
            settings.status_poll_min_age_seconds if min_age_seconds is None else min_age_seconds
        )
        self.batch_size = batch_size or settings.status_poll_batch_size

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def poll_once(self) -> Dict[str, int]:
        """
        Poll open intents older than min_age_seconds.

        Gateway and database faults are logged and counted per intent and
        never abort the pass.

        Returns:
            Dict[str, int]: Count per outcome (processed, unchanged, ...)
        """
        cutoff = utcnow() - timedelta(seconds=self.min_age_seconds)
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentIntent.id, PaymentIntent.gateway_code, PaymentIntent.external_reference)
                .where(
                    PaymentIntent.status.not_in([s.value for s in ABSORBING_PAYMENT_STATES]),
                    PaymentIntent.external_reference.is_not(None),
                    PaymentIntent.created_at <= cutoff,
                )
                .order_by(PaymentIntent.created_at)
                .limit(self.batch_size)
            )
            candidates = list(result.all())

        counts: Dict[str, int] = {}
        for intent_id, gateway_code, reference in candidates:
            outcome = await self._poll_intent(intent_id, gateway_code, reference)
            counts[outcome] = counts.get(outcome, 0) + 1

        metrics.mark_status_poll_run()
        logger.info("status_poll_finished", candidates=len(candidates), outcomes=counts)
        return counts

    async def _poll_intent(self, intent_id: uuid.UUID, gateway_code: str, reference: str) -> str:
        log = logger.bind(
            payment_intent_id=str(intent_id), gateway=gateway_code, external_reference=reference
        )
        try:
            adapter = self.reconciler.registry.get(gateway_code)
        except NotFoundError:
            log.warning("status_poll_gateway_unavailable")
            outcome = "gateway_unavailable"
            metrics.record_status_poll(gateway_code, outcome)
            return outcome

        if not adapter.supports_status_query:
            outcome = "unsupported"
            metrics.record_status_poll(gateway_code, outcome)
            return outcome

        try:
            native_status = await adapter.get_status(reference)
        except UpstreamError as e:
            log.warning("status_poll_upstream_error", error=e.message, retryable=e.retryable)
            outcome = "upstream_error"
            metrics.record_status_poll(gateway_code, outcome)
            return outcome

        try:
            transition = await self.reconciler.reconcile_status(
                adapter, intent_id, native_status, source="poll"
            )
        except (SQLAlchemyError, StorefrontError) as e:
            log.error("status_poll_reconcile_failed", native_status=native_status, error=str(e))
            outcome = "reconcile_error"
            metrics.record_status_poll(gateway_code, outcome)
            return outcome

        log.info("status_poll_result", native_status=native_status, outcome=transition.outcome)
        metrics.record_status_poll(gateway_code, transition.outcome)
        return transition.outcome
