"""
Gateway registry.

Built once at startup from the gateway_configs table; maps a gateway code to
a configured adapter instance.
"""
from typing import Dict, List, Optional, Type

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.config import get_settings
from storefront.core.exceptions import ConfigurationError, NotFoundError
from storefront.database.connection import get_session_factory
from storefront.database.models import GatewayConfiguration
from storefront.gateways.base import GatewayAdapter, GatewayConfig
from storefront.gateways.changenow import ChangeNowAdapter
from storefront.gateways.cryptomus import CryptomusAdapter
from storefront.gateways.hoodpay import HoodPayAdapter
from storefront.gateways.nowpayments import NowPaymentsAdapter
from storefront.gateways.paygate import PayGateAdapter
from storefront.gateways.plisio import PlisioAdapter
from storefront.gateways.stripe_checkout import StripeCheckoutAdapter
from storefront.gateways.volet import VoletAdapter

logger = structlog.get_logger(__name__)

ADAPTER_CLASSES: Dict[str, Type[GatewayAdapter]] = {
    adapter.code: adapter
    for adapter in (
        StripeCheckoutAdapter,
        NowPaymentsAdapter,
        CryptomusAdapter,
        PlisioAdapter,
        VoletAdapter,
        ChangeNowAdapter,
        HoodPayAdapter,
        PayGateAdapter,
    )
}


class GatewayRegistry:
    """Gateway code -> adapter instance."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self._session_factory = session_factory
        self._adapters: Dict[str, GatewayAdapter] = {}

    def build_adapter(self, config: GatewayConfig) -> GatewayAdapter:
        """
        Instantiate the adapter class for a gateway configuration.

        Raises:
            ConfigurationError: If the code is unknown or credentials are invalid
        """
        adapter_class = ADAPTER_CLASSES.get(config.code)
        if adapter_class is None:
            raise ConfigurationError(
                f"No adapter implementation for gateway {config.code}",
                gateway_code=config.code,
            )
        settings = get_settings()
        return adapter_class(
            config,
            callback_url=f"{settings.public_base_url}/webhooks/{config.code}",
            allow_unsigned=settings.allow_unsigned_webhooks,
            timeout=settings.gateway_http_timeout_seconds,
            max_attempts=settings.gateway_retry_max_attempts,
        )

    async def load(self) -> List[str]:
        """
        (Re)build adapters from active gateway configurations.

        Gateways with unusable credentials are skipped and logged so that one
        broken configuration never takes checkout down for the others.

        Returns:
            List[str]: Codes of the gateways now available
        """
        session_factory = self._session_factory or get_session_factory()
        async with session_factory() as db:
            result = await db.execute(
                select(GatewayConfiguration).where(GatewayConfiguration.is_active.is_(True))
            )
            records = list(result.scalars().all())

        adapters: Dict[str, GatewayAdapter] = {}
        for record in records:
            try:
                adapters[record.gateway_code] = self.build_adapter(
                    GatewayConfig.from_record(record)
                )
            except ConfigurationError as e:
                logger.error(
                    "gateway_configuration_invalid",
                    gateway=record.gateway_code,
                    error=e.message,
                )

        self._adapters = adapters
        logger.info("gateway_registry_loaded", gateways=sorted(adapters))
        return sorted(adapters)

    async def refresh(self) -> List[str]:
        """Re-read gateway configurations (after admin changes)."""
        return await self.load()

    def register(self, adapter: GatewayAdapter) -> None:
        """Register a ready-made adapter."""
        self._adapters[adapter.code] = adapter

    def get(self, code: str) -> GatewayAdapter:
        """
        Look up an adapter.

        Raises:
            NotFoundError: If the gateway is unknown or not active
        """
        adapter = self._adapters.get(code)
        if adapter is None:
            raise NotFoundError(f"Unknown payment method: {code}", gateway_code=code)
        return adapter

    def codes(self) -> List[str]:
        return sorted(self._adapters)

    def clear(self) -> None:
        self._adapters = {}
