"""
Stripe Checkout adapter.

Implements:
- Hosted Checkout Sessions with per-call API keys (no global stripe.api_key)
- Exponential backoff for transient errors
- Circuit breaker pattern
- Webhook signature verification through the Stripe SDK
"""
import asyncio
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Optional

import stripe
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from storefront.core.exceptions import ConfigurationError, UpstreamError
from storefront.core.state_machine import PaymentStatus
from storefront.gateways.base import ChargeResult, GatewayAdapter
from storefront.gateways.http import CircuitBreaker, is_retryable
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAID_STATUSES = ("paid", "no_payment_required")


class StripeCheckoutAdapter(GatewayAdapter):
    """
    Card payments through Stripe Checkout Sessions.

    Only checkout.session.* events carry the session id used as the external
    reference. Refunds are recorded through the order refund flow; charge
    events reference a charge and are acknowledged as unmatched.
    """

    code = "stripe"
    display_name = "Stripe"
    required_credentials = ("api_key",)
    signature_header = "Stripe-Signature"
    status_map = {
        "open": PaymentStatus.PENDING,
        "processing": PaymentStatus.CONFIRMING,
        "complete": PaymentStatus.COMPLETED,
        "failed": PaymentStatus.FAILED,
        "expired": PaymentStatus.EXPIRED,
    }

    def __init__(self, *args: Any, **kwargs: Any):
        self.max_attempts = kwargs.get("max_attempts", 3)
        super().__init__(*args, **kwargs)
        self.circuit_breaker = CircuitBreaker(self.code)

    def initialize(self, credentials: Any) -> None:
        super().initialize(credentials)
        if not credentials.api_key.startswith(("sk_test_", "sk_live_", "rk_test_", "rk_live_")):
            raise ConfigurationError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'",
                gateway_code=self.code,
            )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> bool:
        """True if the Stripe error is worth retrying."""
        if isinstance(error, (stripe.RateLimitError, stripe.APIConnectionError)):
            return True
        if isinstance(error, stripe.APIError):
            return True
        if isinstance(error, (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError)):
            return False
        # Unknown errors are treated as transient
        return True

    async def _execute(self, operation: str, func: Callable[[], Any]) -> Any:
        """Run a blocking SDK call off the event loop, mapping errors to UpstreamError."""
        start_time = time.time()
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, func)
        except stripe.StripeError as e:
            retryable = self._classify_error(e)
            metrics.record_gateway_api_call(self.code, operation, "error", time.time() - start_time)
            metrics.record_gateway_api_error(self.code, "retryable" if retryable else "permanent")
            logger.error(
                "stripe_api_error",
                operation=operation,
                retryable=retryable,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise UpstreamError(
                f"Stripe {operation} failed: {e}",
                retryable=retryable,
                gateway_code=self.code,
                status_code=getattr(e, "http_status", None),
            ) from e

        metrics.record_gateway_api_call(self.code, operation, "success", time.time() - start_time)
        return result

    async def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=16),
            retry=retry_if_exception(is_retryable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.circuit_breaker.call(self._execute, operation, func)

    async def create_charge(
        self,
        amount: Decimal,
        currency: str,
        order_ref: str,
        success_url: str,
        cancel_url: str,
        email: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ChargeResult:
        self.check_amount(amount)
        amount_cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": amount_cents,
                        "product_data": {"name": description or f"Order {order_ref}"},
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": order_ref,
            "metadata": {"order_ref": order_ref},
        }
        if email:
            params["customer_email"] = email

        logger.info("creating_checkout_session", order_ref=order_ref, amount_cents=amount_cents)

        def _create() -> Any:
            return stripe.checkout.Session.create(
                api_key=self.config.credentials.api_key,
                idempotency_key=f"checkout:{order_ref}",
                **params,
            )

        session = await self._call("create_checkout_session", _create)
        logger.info("checkout_session_created", session_id=session.id, order_ref=order_ref)
        return ChargeResult(external_reference=session.id, checkout_url=session.url)

    async def get_status(self, external_reference: str) -> str:
        def _retrieve() -> Any:
            return stripe.checkout.Session.retrieve(
                external_reference, api_key=self.config.credentials.api_key
            )

        session = await self._call("retrieve_checkout_session", _retrieve)
        if session.status == "complete":
            return "complete" if session.payment_status in PAID_STATUSES else "processing"
        return str(session.status)

    def verify_signature(self, raw_payload: bytes, received_signature: Optional[str]) -> bool:
        secret = self.webhook_secret
        if not secret or not received_signature:
            return super().verify_signature(raw_payload, received_signature)
        try:
            stripe.WebhookSignature.verify_header(
                raw_payload.decode("utf-8"),
                received_signature,
                secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning("stripe_signature_verification_failed", error=str(e))
            return False
        return True

    def extract_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        obj = (payload.get("data") or {}).get("object") or {}
        reference = obj.get("id")
        return str(reference) if reference else None

    def extract_status(self, payload: Dict[str, Any]) -> str:
        event_type = payload.get("type", "")
        obj = (payload.get("data") or {}).get("object") or {}
        if event_type == "checkout.session.completed":
            return "complete" if obj.get("payment_status") in PAID_STATUSES else "processing"
        if event_type == "checkout.session.async_payment_succeeded":
            return "complete"
        if event_type == "checkout.session.async_payment_failed":
            return "failed"
        if event_type == "checkout.session.expired":
            return "expired"
        return str(event_type)
