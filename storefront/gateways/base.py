"""
Gateway adapter contract.

Every payment processor sits behind one interface:
- initialize(credentials)
- create_charge(...) -> ChargeResult
- get_status(external_reference) -> native status
- verify_signature(raw_payload, signature) -> bool
- map_status(native status) -> StatusMapping

Configuration is immutable and handed to the adapter at construction; no
module-level API keys.
"""
import hmac
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, ClassVar, Dict, Mapping, NamedTuple, Optional, Tuple
from urllib.parse import parse_qsl

import structlog
from pydantic import BaseModel, ConfigDict, Field

from storefront.core.exceptions import AmountOutOfRange, ConfigurationError, MalformedWebhook
from storefront.core.pricing import BonusRule, FeeRule
from storefront.core.state_machine import OrderStatus, PaymentStatus, order_status_for
from storefront.gateways.http import GatewayHttpClient

logger = structlog.get_logger(__name__)


class GatewayCredentials(BaseModel):
    """Secrets for one gateway. Which fields are required depends on the adapter."""

    model_config = ConfigDict(frozen=True)

    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    merchant_id: Optional[str] = None
    webhook_secret: Optional[str] = None
    extra: Dict[str, str] = Field(default_factory=dict)


class GatewayConfig(BaseModel):
    """Immutable per-gateway configuration."""

    model_config = ConfigDict(frozen=True)

    code: str
    is_active: bool = True
    sandbox: bool = False
    credentials: GatewayCredentials = Field(default_factory=GatewayCredentials)
    currency: str = "USD"
    min_amount: Decimal = Decimal("0")
    max_amount: Optional[Decimal] = None
    fee_rule: FeeRule = Field(default_factory=FeeRule)
    bonus_rules: Tuple[BonusRule, ...] = ()

    @classmethod
    def from_record(cls, record: Any) -> "GatewayConfig":
        """Build from a GatewayConfiguration row."""
        bonus_rules = sorted(
            (BonusRule(**rule) for rule in (record.bonus_rules or [])),
            key=lambda rule: rule.min_amount,
            reverse=True,
        )
        return cls(
            code=record.gateway_code,
            is_active=record.is_active,
            sandbox=record.sandbox,
            credentials=GatewayCredentials(
                api_key=record.api_key,
                api_secret=record.api_secret,
                merchant_id=record.merchant_id,
                webhook_secret=record.webhook_secret,
                extra=record.extra or {},
            ),
            currency=record.currency,
            min_amount=record.min_amount,
            max_amount=record.max_amount,
            fee_rule=FeeRule(**(record.fee_rule or {})),
            bonus_rules=tuple(bonus_rules),
        )


@dataclass(frozen=True)
class ChargeResult:
    """What a gateway returns when a charge is created."""

    external_reference: str
    checkout_url: str
    raw: Dict[str, Any] = field(default_factory=dict)


class StatusMapping(NamedTuple):
    payment_status: PaymentStatus
    order_status: OrderStatus


def canonical_json(payload: Mapping[str, Any]) -> str:
    """Key-sorted, compact JSON used as MAC input."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hmac_hex(secret: str, message: str, digestmod: Any) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), digestmod).hexdigest()


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup that works for plain dicts too."""
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


class GatewayAdapter(ABC):
    """
    Base class for payment processor adapters.

    Subclasses declare their code, required credentials, where the webhook
    signature lives and the native status table.
    """

    code: ClassVar[str]
    display_name: ClassVar[str]
    required_credentials: ClassVar[Tuple[str, ...]] = ("api_key",)
    signature_header: ClassVar[Optional[str]] = None
    signature_field: ClassVar[Optional[str]] = None
    supports_status_query: ClassVar[bool] = True
    status_map: ClassVar[Dict[str, PaymentStatus]] = {}

    def __init__(
        self,
        config: GatewayConfig,
        callback_url: Optional[str] = None,
        allow_unsigned: bool = False,
        http_client: Optional[GatewayHttpClient] = None,
        timeout: float = 15.0,
        max_attempts: int = 3,
    ):
        """
        Initialize adapter.

        Args:
            config: Immutable gateway configuration
            callback_url: Where the processor should send webhooks
            allow_unsigned: Accept webhooks when no secret is configured
            http_client: Optional preconfigured HTTP client (tests inject a mock transport)
            timeout: HTTP timeout for the default client
            max_attempts: Attempts per request for the default client

        Raises:
            ConfigurationError: If credentials are missing
        """
        self.config = config
        self.callback_url = callback_url
        self.allow_unsigned = allow_unsigned
        self.initialize(config.credentials)
        self.http = http_client
        if self.http is None and self.api_base_url:
            self.http = GatewayHttpClient(
                self.code, self.api_base_url, timeout=timeout, max_attempts=max_attempts
            )

    @property
    def api_base_url(self) -> Optional[str]:
        """REST base URL; None for gateways without an HTTP API."""
        return None

    @property
    def webhook_secret(self) -> Optional[str]:
        """Shared secret used to sign webhooks."""
        return self.config.credentials.webhook_secret

    def initialize(self, credentials: GatewayCredentials) -> None:
        """
        Validate credentials.

        Raises:
            ConfigurationError: If a required credential is absent
        """
        missing = [name for name in self.required_credentials if not getattr(credentials, name)]
        if missing:
            raise ConfigurationError(
                f"{self.code} is missing credentials: {', '.join(missing)}",
                gateway_code=self.code,
            )

    def check_amount(self, amount: Decimal) -> None:
        """
        Enforce gateway limits.

        Raises:
            AmountOutOfRange: If amount is below min_amount or above max_amount
        """
        too_low = amount < self.config.min_amount
        too_high = self.config.max_amount is not None and amount > self.config.max_amount
        if too_low or too_high:
            raise AmountOutOfRange(
                amount=amount,
                minimum=self.config.min_amount,
                maximum=self.config.max_amount,
                gateway_code=self.code,
            )

    @abstractmethod
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
        """
        Create a charge at the processor.

        Raises:
            AmountOutOfRange: If amount is outside gateway limits
            UpstreamError: On non-2xx or network fault
        """

    @abstractmethod
    async def get_status(self, external_reference: str) -> str:
        """Query the processor for the native status. Side-effect free."""

    def compute_signature(self, payload: Dict[str, Any], secret: str) -> str:
        """Expected signature for a parsed, signature-free webhook payload."""
        raise NotImplementedError(f"{self.code} verifies signatures itself")

    @abstractmethod
    def extract_reference(self, payload: Dict[str, Any]) -> Optional[str]:
        """External reference carried by a webhook payload."""

    @abstractmethod
    def extract_status(self, payload: Dict[str, Any]) -> str:
        """Native status carried by a webhook payload."""

    def parse_payload(self, raw_payload: bytes) -> Dict[str, Any]:
        """
        Parse a webhook body (JSON or form-encoded).

        Raises:
            MalformedWebhook: If the body is empty or unparseable
        """
        try:
            text = raw_payload.decode("utf-8").strip()
        except UnicodeDecodeError as e:
            raise MalformedWebhook("Webhook body is not UTF-8", gateway_code=self.code) from e

        if not text:
            raise MalformedWebhook("Empty webhook body", gateway_code=self.code)

        try:
            if text[0] in "{[":
                payload = json.loads(text)
            else:
                payload = dict(parse_qsl(text, keep_blank_values=True, strict_parsing=True))
        except ValueError as e:
            raise MalformedWebhook(
                f"Unparseable webhook body: {e}", gateway_code=self.code
            ) from e

        if not isinstance(payload, dict):
            raise MalformedWebhook("Webhook body is not an object", gateway_code=self.code)
        return payload

    def extract_signature(
        self, headers: Mapping[str, str], payload: Dict[str, Any]
    ) -> Optional[str]:
        """Signature from the body field or header this gateway uses."""
        if self.signature_field and payload.get(self.signature_field):
            return str(payload[self.signature_field])
        if self.signature_header:
            return header_value(headers, self.signature_header)
        return None

    def unsigned_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Payload without its embedded signature field."""
        if not self.signature_field:
            return payload
        return {k: v for k, v in payload.items() if k != self.signature_field}

    def verify_signature(self, raw_payload: bytes, received_signature: Optional[str]) -> bool:
        """
        Verify a webhook signature.

        Without a configured secret this fails closed unless the explicit
        allow_unsigned mode is on.

        Returns:
            bool: True if authentic
        """
        secret = self.webhook_secret
        if not secret:
            logger.warning(
                "webhook_secret_missing",
                gateway=self.code,
                allow_unsigned=self.allow_unsigned,
            )
            return self.allow_unsigned

        if not received_signature:
            return False

        try:
            payload = self.parse_payload(raw_payload)
            expected = self.compute_signature(self.unsigned_payload(payload), secret)
        except (MalformedWebhook, TypeError, ValueError) as e:
            logger.warning("webhook_signature_input_invalid", gateway=self.code, error=str(e))
            return False

        return hmac.compare_digest(
            expected.lower().encode("utf-8"),
            str(received_signature).strip().lower().encode("utf-8"),
        )

    def map_status(self, native_status: Optional[str]) -> StatusMapping:
        """
        Map a native status onto the canonical state machine.

        Unknown statuses map to pending/new.
        """
        key = (native_status or "").strip().lower()
        payment_status = self.status_map.get(key)
        if payment_status is None:
            logger.info("gateway_unknown_native_status", gateway=self.code, native_status=key)
            payment_status = PaymentStatus.PENDING
        return StatusMapping(payment_status, order_status_for(payment_status))
