"""PayGate (card-to-USDC on-ramp) adapter."""
import hashlib
import re
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlencode

import structlog

from storefront.core.exceptions import ConfigurationError, UpstreamError
from storefront.core.state_machine import PaymentStatus
from storefront.gateways.base import ChargeResult, GatewayAdapter, GatewayCredentials, hmac_hex

logger = structlog.get_logger(__name__)

CHECKOUT_URL = "https://checkout.paygate.to/process-payment.php"
POLYGON_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
DEFAULT_PROVIDER = "moonpay"


class PayGateAdapter(GatewayAdapter):
    """
    PayGate hosted on-ramp paying out to the merchant's Polygon USDC wallet.

    A charge creates a temporary receiving wallet whose callback URL carries
    our order reference and ref_sig, an HMAC-SHA256 of that reference keyed
    with the webhook secret. PayGate calls it back with GET and only once the
    payment has settled, adding value_coin and txid_out; the callback is
    otherwise unsigned, so ref_sig is what authenticates it. The status
    endpoint needs the wallet's IPN token, which callbacks do not carry, so
    there is no status query.
    """

    code = "paygate"
    display_name = "PayGate"
    required_credentials = ("merchant_id", "webhook_secret")
    signature_field = "ref_sig"
    supports_status_query = False
    status_map = {
        "unpaid": PaymentStatus.PENDING,
        "paid": PaymentStatus.COMPLETED,
    }

    @property
    def api_base_url(self) -> Optional[str]:
        return "https://api.paygate.to"

    @property
    def provider(self) -> str:
        return self.config.credentials.extra.get("provider", DEFAULT_PROVIDER)

    def initialize(self, credentials: GatewayCredentials) -> None:
        super().initialize(credentials)
        if not POLYGON_ADDRESS.match(credentials.merchant_id or ""):
            raise ConfigurationError(
                "Invalid PayGate merchant address. Must be a Polygon USDC address (0x...)",
                gateway_code=self.code,
            )

    def reference_signature(self, order_ref: str) -> str:
        return hmac_hex(self.webhook_secret or "", order_ref, hashlib.sha256)

    async def _usd_amount(self, amount: Decimal, currency: str) -> Decimal:
        """PayGate checkouts are priced in USD; other currencies are converted first."""
        if currency.upper() == "USD":
            return amount
        response = await self.http.request(
            "convert",
            "GET",
            "/control/convert.php",
            params={"from": currency.upper(), "value": f"{amount:.2f}"},
        )
        value = response.get("value_coin")
        if response.get("status") != "success" or value is None:
            raise UpstreamError(
                f"PayGate could not convert {currency} to USD",
                retryable=False,
                gateway_code=self.code,
            )
        return Decimal(str(value)).quantize(Decimal("0.01"))

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
        if not self.callback_url:
            raise ConfigurationError(
                "PayGate requires a callback URL", gateway_code=self.code
            )
        callback = f"{self.callback_url}?" + urlencode(
            {"ref": order_ref, "ref_sig": self.reference_signature(order_ref)}
        )
        wallet = await self.http.request(
            "create_wallet",
            "GET",
            "/control/wallet.php",
            params={"address": self.config.credentials.merchant_id, "callback": callback},
        )
        address_in = wallet.get("address_in")
        if not address_in:
            raise UpstreamError(
                "PayGate wallet response missing address_in",
                retryable=False,
                gateway_code=self.code,
            )

        usd_amount = await self._usd_amount(amount, currency)
        params = {
            "address": unquote(address_in),
            "amount": f"{usd_amount:.2f}",
            "provider": self.provider,
            "currency": "USD",
        }
        if email:
            params["email"] = email

        logger.info(
            "paygate_wallet_created",
            order_ref=order_ref,
            provider=self.provider,
            amount_usd=str(usd_amount),
        )
        return ChargeResult(
            external_reference=order_ref,
            checkout_url=f"{CHECKOUT_URL}?{urlencode(params)}",
            raw=wallet,
        )

    async def get_status(self, external_reference: str) -> str:
        raise UpstreamError(
            "PayGate status queries need the wallet IPN token",
            retryable=False,
            gateway_code=self.code,
        )

    def compute_signature(self, payload: Dict[str, Any], secret: str) -> str:
        return hmac_hex(secret, str(payload.get("ref", "")), hashlib.sha256)

    def extract_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        reference = payload.get("ref")
        return str(reference) if reference else None

    def extract_status(self, payload: Dict[str, Any]) -> str:
        if payload.get("value_coin") or payload.get("txid_out"):
            return "paid"
        return "unpaid"
