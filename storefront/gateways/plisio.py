"""Plisio crypto invoice adapter."""
import hashlib
import json
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from storefront.core.exceptions import UpstreamError
from storefront.core.state_machine import PaymentStatus
from storefront.gateways.base import ChargeResult, GatewayAdapter, hmac_hex

logger = structlog.get_logger(__name__)


def _flatten(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"))
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class PlisioAdapter(GatewayAdapter):
    """
    Plisio invoices.

    Callbacks (requested with json=true) carry verify_hash: HMAC-SHA1 over
    key-sorted "k=v&..." of the non-empty fields, keyed with the secret key.
    """

    code = "plisio"
    display_name = "Plisio"
    required_credentials = ("api_key",)
    signature_field = "verify_hash"
    status_map = {
        "new": PaymentStatus.PENDING,
        "pending": PaymentStatus.CONFIRMING,
        "pending internal": PaymentStatus.CONFIRMING,
        "completed": PaymentStatus.COMPLETED,
        # Overpaid invoices are still settled
        "mismatch": PaymentStatus.COMPLETED,
        "error": PaymentStatus.FAILED,
        "cancelled": PaymentStatus.FAILED,
        "cancelled duplicate": PaymentStatus.FAILED,
        "expired": PaymentStatus.EXPIRED,
    }

    @property
    def api_base_url(self) -> Optional[str]:
        return "https://api.plisio.net/api/v1"

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.config.credentials.api_key

    async def _get(self, operation: str, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.http.request(
            operation,
            "GET",
            path,
            params={**params, "api_key": self.config.credentials.api_key},
        )
        data = response.get("data")
        if response.get("status") != "success" or not isinstance(data, dict):
            message = data.get("message") if isinstance(data, dict) else None
            raise UpstreamError(
                f"Plisio {operation} rejected: {message}",
                retryable=False,
                gateway_code=self.code,
            )
        return data

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
        params: Dict[str, Any] = {
            "source_currency": currency.upper(),
            "source_amount": str(amount),
            "order_number": order_ref,
            "order_name": description or f"Order {order_ref}",
            "success_invoice_url": success_url,
            "fail_invoice_url": cancel_url,
        }
        if email:
            params["email"] = email
        if self.callback_url:
            params["callback_url"] = f"{self.callback_url}?json=true"

        data = await self._get("create_invoice", "/invoices/new", params)
        if not data.get("txn_id") or not data.get("invoice_url"):
            raise UpstreamError(
                "Plisio response missing txn_id or invoice_url",
                retryable=False,
                gateway_code=self.code,
            )

        logger.info("plisio_invoice_created", txn_id=data["txn_id"], order_ref=order_ref)
        return ChargeResult(
            external_reference=data["txn_id"], checkout_url=data["invoice_url"], raw=data
        )

    async def get_status(self, external_reference: str) -> str:
        data = await self._get("get_status", f"/operations/{external_reference}", {})
        return str(data.get("status", ""))

    def compute_signature(self, payload: Dict[str, Any], secret: str) -> str:
        message = "&".join(
            f"{key}={_flatten(payload[key])}"
            for key in sorted(payload)
            if payload[key] is not None and payload[key] != ""
        )
        return hmac_hex(secret, message, hashlib.sha1)

    def extract_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        reference = payload.get("txn_id")
        return str(reference) if reference else None

    def extract_status(self, payload: Dict[str, Any]) -> str:
        return str(payload.get("status", ""))
