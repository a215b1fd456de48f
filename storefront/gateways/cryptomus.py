"""Cryptomus crypto payment adapter."""
import base64
import hashlib
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from storefront.core.exceptions import UpstreamError
from storefront.core.state_machine import PaymentStatus
from storefront.gateways.base import ChargeResult, GatewayAdapter, canonical_json

logger = structlog.get_logger(__name__)


def cryptomus_sign(payload: Dict[str, Any], api_key: str) -> str:
    """md5(base64(json) + api_key), used for both requests and webhooks."""
    encoded = base64.b64encode(canonical_json(payload).encode("utf-8")).decode("ascii")
    return hashlib.md5((encoded + api_key).encode("utf-8")).hexdigest()


class CryptomusAdapter(GatewayAdapter):
    """
    Cryptomus invoices.

    Requests carry merchant and sign headers; webhooks carry the signature in
    the body "sign" field (some integrations forward it as a header too).
    """

    code = "cryptomus"
    display_name = "Cryptomus"
    required_credentials = ("api_key", "merchant_id")
    signature_header = "sign"
    signature_field = "sign"
    status_map = {
        "check": PaymentStatus.PENDING,
        "process": PaymentStatus.PENDING,
        "waiting": PaymentStatus.PENDING,
        "confirm_check": PaymentStatus.CONFIRMING,
        "locked": PaymentStatus.CONFIRMING,
        "paid": PaymentStatus.COMPLETED,
        "paid_over": PaymentStatus.COMPLETED,
        "refund_process": PaymentStatus.COMPLETED,
        "refund_fail": PaymentStatus.COMPLETED,
        "refund_paid": PaymentStatus.REFUNDED,
        "fail": PaymentStatus.FAILED,
        "wrong_amount": PaymentStatus.FAILED,
        "cancel": PaymentStatus.FAILED,
        "system_fail": PaymentStatus.FAILED,
    }

    @property
    def api_base_url(self) -> Optional[str]:
        return "https://api.cryptomus.com/v1"

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.config.credentials.api_key

    async def _post(self, operation: str, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        credentials = self.config.credentials
        response = await self.http.request(
            operation,
            "POST",
            path,
            content=canonical_json(body).encode("utf-8"),
            headers={
                "merchant": credentials.merchant_id or "",
                "sign": cryptomus_sign(body, credentials.api_key or ""),
                "Content-Type": "application/json",
            },
        )
        if response.get("state") != 0 or not isinstance(response.get("result"), dict):
            raise UpstreamError(
                f"Cryptomus {operation} rejected: {response.get('message')}",
                retryable=False,
                gateway_code=self.code,
            )
        return response["result"]

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
            "amount": str(amount),
            "currency": currency.upper(),
            "order_id": order_ref,
            "url_return": cancel_url,
            "url_success": success_url,
        }
        if self.callback_url:
            body["url_callback"] = self.callback_url

        result = await self._post("create_payment", "/payment", body)
        if not result.get("uuid") or not result.get("url"):
            raise UpstreamError(
                "Cryptomus response missing uuid or url",
                retryable=False,
                gateway_code=self.code,
            )

        logger.info("cryptomus_payment_created", uuid=result["uuid"], order_ref=order_ref)
        return ChargeResult(external_reference=result["uuid"], checkout_url=result["url"], raw=result)

    async def get_status(self, external_reference: str) -> str:
        result = await self._post("get_status", "/payment/info", {"uuid": external_reference})
        return str(result.get("payment_status") or result.get("status") or "")

    def compute_signature(self, payload: Dict[str, Any], secret: str) -> str:
        return cryptomus_sign(payload, secret)

    def extract_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        reference = payload.get("uuid")
        return str(reference) if reference else None

    def extract_status(self, payload: Dict[str, Any]) -> str:
        return str(payload.get("status") or payload.get("payment_status") or "")
