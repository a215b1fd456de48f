"""HoodPay hosted payment adapter."""
import hashlib
import hmac
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from storefront.core.exceptions import UpstreamError
from storefront.core.state_machine import PaymentStatus
from storefront.gateways.base import ChargeResult, GatewayAdapter

logger = structlog.get_logger(__name__)


def _unwrap(response: Dict[str, Any]) -> Dict[str, Any]:
    """HoodPay nests the resource in data, sometimes twice."""
    data = response.get("data")
    if isinstance(data, dict):
        inner = data.get("data")
        return inner if isinstance(inner, dict) else data
    return response


class HoodPayAdapter(GatewayAdapter):
    """
    HoodPay payments, scoped to a business (merchant_id holds the business id).

    Webhooks are signed with HMAC-SHA256 over the raw body using the webhook
    secret, delivered hex-encoded in x-hoodpay-signature.
    """

    code = "hoodpay"
    display_name = "HoodPay"
    required_credentials = ("api_key", "merchant_id")
    signature_header = "x-hoodpay-signature"
    status_map = {
        "awaiting_payment": PaymentStatus.PENDING,
        "pending": PaymentStatus.PENDING,
        "processing": PaymentStatus.CONFIRMING,
        "completed": PaymentStatus.COMPLETED,
        "paid": PaymentStatus.COMPLETED,
        "success": PaymentStatus.COMPLETED,
        "failed": PaymentStatus.FAILED,
        "cancelled": PaymentStatus.FAILED,
        "canceled": PaymentStatus.FAILED,
        "expired": PaymentStatus.EXPIRED,
        "refunded": PaymentStatus.REFUNDED,
    }

    @property
    def api_base_url(self) -> Optional[str]:
        return "https://api.hoodpay.io/v1"

    @property
    def _payments_path(self) -> str:
        return f"/businesses/{self.config.credentials.merchant_id}/payments"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.credentials.api_key}"}

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
            "amount": float(amount),
            "currency": currency.upper(),
            "description": description or f"Order {order_ref}",
            "redirect_url": success_url,
            "metadata": {"order_ref": order_ref},
        }
        if email:
            body["customer_email"] = email
        if self.callback_url:
            body["notify_url"] = self.callback_url

        response = await self.http.request(
            "create_payment", "POST", self._payments_path, json=body, headers=self._headers()
        )
        payment = _unwrap(response)
        if not payment.get("id") or not payment.get("url"):
            raise UpstreamError(
                "HoodPay payment response missing id or url",
                retryable=False,
                gateway_code=self.code,
            )

        logger.info("hoodpay_payment_created", payment_id=payment["id"], order_ref=order_ref)
        return ChargeResult(
            external_reference=str(payment["id"]), checkout_url=payment["url"], raw=response
        )

    async def get_status(self, external_reference: str) -> str:
        response = await self.http.request(
            "get_status",
            "GET",
            f"{self._payments_path}/{external_reference}",
            headers=self._headers(),
        )
        return str(_unwrap(response).get("status", ""))

    def verify_signature(self, raw_payload: bytes, received_signature: Optional[str]) -> bool:
        secret = self.webhook_secret
        if not secret or not received_signature:
            return super().verify_signature(raw_payload, received_signature)
        expected = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(
            expected.encode("utf-8"), received_signature.strip().lower().encode("utf-8")
        )

    def extract_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        reference = payload.get("paymentId") or payload.get("payment_id") or data.get("id")
        return str(reference) if reference else None

    def extract_status(self, payload: Dict[str, Any]) -> str:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        return str(payload.get("status") or data.get("status") or "")
