"""Volet (e-wallet SCI) adapter."""
import hashlib
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import structlog

from storefront.core.exceptions import UpstreamError
from storefront.core.state_machine import PaymentStatus
from storefront.gateways.base import ChargeResult, GatewayAdapter, hmac_hex

logger = structlog.get_logger(__name__)

SCI_URL = "https://account.volet.com/sci/"


class VoletAdapter(GatewayAdapter):
    """
    Volet Shopping Cart Interface.

    Charges are a signed redirect to the hosted SCI form, so our own order
    reference is the external reference. Status notifications are
    form-encoded and carry ac_sign: upper-case HMAC-SHA256 over the field
    values concatenated in key order, keyed with the SCI password.
    There is no status query endpoint; recovery relies on notifications.
    """

    code = "volet"
    display_name = "Volet"
    required_credentials = ("api_key", "api_secret", "merchant_id")
    signature_field = "ac_sign"
    supports_status_query = False
    status_map = {
        "pending": PaymentStatus.PENDING,
        "process": PaymentStatus.CONFIRMING,
        "confirmed": PaymentStatus.COMPLETED,
        "completed": PaymentStatus.COMPLETED,
        "canceled": PaymentStatus.FAILED,
        "cancelled": PaymentStatus.FAILED,
        "failed": PaymentStatus.FAILED,
        "expired": PaymentStatus.EXPIRED,
    }

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.config.credentials.api_secret

    def _request_sign(self, amount: str, currency: str, order_ref: str) -> str:
        credentials = self.config.credentials
        message = ":".join(
            [
                credentials.merchant_id or "",
                credentials.api_key or "",
                amount,
                currency,
                credentials.api_secret or "",
                order_ref,
            ]
        )
        return hashlib.sha256(message.encode("utf-8")).hexdigest()

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
        credentials = self.config.credentials
        amount_str = f"{amount:.2f}"
        currency = currency.upper()
        params = {
            "ac_account_email": credentials.merchant_id,
            "ac_sci_name": credentials.api_key,
            "ac_amount": amount_str,
            "ac_currency": currency,
            "ac_order_id": order_ref,
            "ac_sign": self._request_sign(amount_str, currency, order_ref),
            "ac_success_url": success_url,
            "ac_fail_url": cancel_url,
        }
        if self.callback_url:
            params["ac_status_url"] = self.callback_url
        if description:
            params["ac_comments"] = description

        logger.info("volet_checkout_prepared", order_ref=order_ref)
        return ChargeResult(
            external_reference=order_ref,
            checkout_url=f"{SCI_URL}?{urlencode(params)}",
        )

    async def get_status(self, external_reference: str) -> str:
        raise UpstreamError(
            "Volet does not expose a status query",
            retryable=False,
            gateway_code=self.code,
        )

    def compute_signature(self, payload: Dict[str, Any], secret: str) -> str:
        message = "".join(str(payload[key]) for key in sorted(payload))
        return hmac_hex(secret, message, hashlib.sha256).upper()

    def extract_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        reference = payload.get("ac_order_id")
        return str(reference) if reference else None

    def extract_status(self, payload: Dict[str, Any]) -> str:
        if payload.get("ac_error"):
            return "failed"
        native = payload.get("ac_transaction_status")
        if native:
            return str(native)
        if payload.get("ac_transaction_id") or payload.get("ac_transfer"):
            return "completed"
        return "pending"
