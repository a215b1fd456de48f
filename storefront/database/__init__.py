"""Database package for the storefront service."""
from .connection import close_db, get_session_factory, init_db
from .models import (
    BalanceTransaction,
    Base,
    CheckoutSubmission,
    GatewayConfiguration,
    Order,
    OrderLineItem,
    OutboxEvent,
    PaymentIntent,
    PaymentIntentEvent,
    Product,
    ProvisioningResult,
    UserBalance,
    WebhookEvent,
)

__all__ = [
    "Base",
    "BalanceTransaction",
    "CheckoutSubmission",
    "GatewayConfiguration",
    "Order",
    "OrderLineItem",
    "OutboxEvent",
    "PaymentIntent",
    "PaymentIntentEvent",
    "Product",
    "ProvisioningResult",
    "UserBalance",
    "WebhookEvent",
    "close_db",
    "get_session_factory",
    "init_db",
]
