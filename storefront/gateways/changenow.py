"""ChangeNOW exchange-based settlement adapter."""
import hashlib
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from storefront.core.exceptions import UpstreamError
from storefront.core.state_machine import PaymentStatus
from storefront.gateways.base import ChargeResult, GatewayAdapter, canonical_json, hmac_hex

logger = structlog.get_logger(__name__)


class ChangeNowAdapter(GatewayAdapter):
    """
    ChangeNOW standard-flow exchanges paying out to the merchant address.

    Credentials: api_key (x-changenow-api-key), merchant_id (payout
    address), extra["payout_currency"] (ticker received by the merchant).
    Webhooks: HMAC-SHA512 over key-sorted JSON in x-changenow-signature,
    keyed with the webhook secret (falling back to api_secret).
    """

    code = "changenow"
    display_name = "ChangeNOW"
    required_credentials = ("api_key", "merchant_id")
    signature_header = "x-changenow-signature"
    status_map = {
        "new": PaymentStatus.PENDING,
        "waiting": PaymentStatus.PENDING,
        "confirming": PaymentStatus.CONFIRMING,
        "exchanging": PaymentStatus.CONFIRMING,
        "sending": PaymentStatus.CONFIRMING,
        "verifying": PaymentStatus.CONFIRMING,
        "finished": PaymentStatus.COMPLETED,
        "failed": PaymentStatus.FAILED,
        "refunded": PaymentStatus.REFUNDED,
        "expired": PaymentStatus.EXPIRED,
    }

    @property
    def api_base_url(self) -> Optional[str]:
        return "https://api.changenow.io/v2"

    @property
    def webhook_secret(self) -> Optional[str]:
        credentials = self.config.credentials
        return credentials.webhook_secret or credentials.api_secret

    def _headers(self) -> Dict[str, str]:
        return {"x-changenow-api-key": self.config.credentials.api_key or ""}

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
        body: Dict[str, Any] = {
            "fromCurrency": currency.lower(),
            "toCurrency": credentials.extra.get("payout_currency", "usdttrc20"),
            "fromAmount": str(amount),
            "address": credentials.merchant_id,
            "flow": "standard",
            "type": "direct",
            "payload": {"order_ref": order_ref},
        }
        if email:
            body["contactEmail"] = email

        response = await self.http.request(
            "create_exchange", "POST", "/exchange", json=body, headers=self._headers()
        )
        exchange_id = response.get("id")
        if not exchange_id:
            raise UpstreamError(
                "ChangeNOW response missing exchange id",
                retryable=False,
                gateway_code=self.code,
            )
        checkout_url = response.get("redirectUrl") or f"https://changenow.io/exchange/txs/{exchange_id}"

        logger.info("changenow_exchange_created", exchange_id=exchange_id, order_ref=order_ref)
        return ChargeResult(external_reference=str(exchange_id), checkout_url=checkout_url, raw=response)

    async def get_status(self, external_reference: str) -> str:
        response = await self.http.request(
            "get_status",
            "GET",
            "/exchange/by-id",
            params={"id": external_reference},
            headers=self._headers(),
        )
        return str(response.get("status", ""))

    def compute_signature(self, payload: Dict[str, Any], secret: str) -> str:
        return hmac_hex(secret, canonical_json(payload), hashlib.sha512)

    def extract_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        reference = payload.get("id")
        return str(reference) if reference else None

    def extract_status(self, payload: Dict[str, Any]) -> str:
        return str(payload.get("status", ""))
