"""Payment gateway adapters."""
from .base import (
    ChargeResult,
    GatewayAdapter,
    GatewayConfig,
    GatewayCredentials,
    StatusMapping,
)
from .registry import ADAPTER_CLASSES, GatewayRegistry

__all__ = [
    "ADAPTER_CLASSES",
    "ChargeResult",
    "GatewayAdapter",
    "GatewayConfig",
    "GatewayCredentials",
    "GatewayRegistry",
    "StatusMapping",
]
