"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CheckoutCreateRequest,
    CheckoutResponse,
    DepositRequest,
    DepositResponse,
    OrderResponse,
    WebhookResponse,
)

__all__ = [
    "app",
    "CheckoutCreateRequest",
    "CheckoutResponse",
    "DepositRequest",
    "DepositResponse",
    "OrderResponse",
    "WebhookResponse",
]
