"""NOWPayments crypto invoice adapter."""
import hashlib
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from storefront.core.exceptions import UpstreamError
from storefront.core.state_machine import PaymentStatus
from storefront.gateways.base import ChargeResult, GatewayAdapter, canonical_json, hmac_hex

logger = structlog.get_logger(__name__)


class NowPaymentsAdapter(GatewayAdapter):
    """
    Hosted crypto invoices.

    IPN callbacks are signed with HMAC-SHA512 over the key-sorted JSON body
    using the IPN secret, delivered in the x-nowpayments-sig header.
    """

    code = "nowpayments"
    display_name = "NOWPayments"
    required_credentials = ("api_key",)
    signature_header = "x-nowpayments-sig"
    status_map = {
        "waiting": PaymentStatus.PENDING,
        "partially_paid": PaymentStatus.PENDING,
        "confirming": PaymentStatus.CONFIRMING,
        "confirmed": PaymentStatus.CONFIRMING,
        "sending": PaymentStatus.CONFIRMING,
        "finished": PaymentStatus.COMPLETED,
        "failed": PaymentStatus.FAILED,
        "refunded": PaymentStatus.REFUNDED,
        "expired": PaymentStatus.EXPIRED,
    }

    @property
    def api_base_url(self) -> Optional[str]:
        if self.config.sandbox:
            return "https://api-sandbox.nowpayments.io/v1"
        return "https://api.nowpayments.io/v1"

    def _headers(self) -> Dict[str, str]:
        return {"x-api-key": self.config.credentials.api_key or ""}

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
        body: Dict[str, Any] = {
            "price_amount": float(amount),
            "price_currency": currency.lower(),
            "order_id": order_ref,
            "order_description": description or f"Order {order_ref}",
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if self.callback_url:
            body["ipn_callback_url"] = self.callback_url

        response = await self.http.request(
            "create_invoice", "POST", "/invoice", json=body, headers=self._headers()
        )
        invoice_id = response.get("id")
        invoice_url = response.get("invoice_url")
        if not invoice_id or not invoice_url:
            raise UpstreamError(
                "NOWPayments invoice response missing id or invoice_url",
                retryable=False,
                gateway_code=self.code,
            )

        logger.info("nowpayments_invoice_created", invoice_id=invoice_id, order_ref=order_ref)
        return ChargeResult(
            external_reference=str(invoice_id), checkout_url=invoice_url, raw=response
        )

    async def get_status(self, external_reference: str) -> str:
        response = await self.http.request(
            "get_status",
            "GET",
            "/payment/",
            params={
                "invoiceId": external_reference,
                "limit": 1,
                "sortBy": "created_at",
                "orderBy": "desc",
            },
            headers=self._headers(),
        )
        payments = response.get("data") or []
        if not payments:
            # Invoice exists but the buyer has not started paying
            return "waiting"
        return str(payments[0].get("payment_status", ""))

    def compute_signature(self, payload: Dict[str, Any], secret: str) -> str:
        return hmac_hex(secret, canonical_json(payload), hashlib.sha512)

    def extract_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        reference = payload.get("invoice_id") or payload.get("payment_id")
        return str(reference) if reference is not None else None

    def extract_status(self, payload: Dict[str, Any]) -> str:
        return str(payload.get("payment_status", ""))
