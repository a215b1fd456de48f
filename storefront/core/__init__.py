"""
Core checkout, reconciliation and fulfillment logic.

Service classes live in their own modules (orchestrator, reconciler,
provisioning, ...); only the dependency-free building blocks are
re-exported here.
"""
from .exceptions import (
    AmountOutOfRange,
    CheckoutInProgress,
    ConfigurationError,
    IllegalTransition,
    InsufficientBalance,
    MalformedWebhook,
    NotFoundError,
    ProvisioningFailure,
    SignatureVerificationFailed,
    StorefrontError,
    UpstreamError,
    ValidationError,
)
from .state_machine import OrderStatus, PaymentStatus

__all__ = [
    "AmountOutOfRange",
    "CheckoutInProgress",
    "ConfigurationError",
    "IllegalTransition",
    "InsufficientBalance",
    "MalformedWebhook",
    "NotFoundError",
    "OrderStatus",
    "PaymentStatus",
    "ProvisioningFailure",
    "SignatureVerificationFailed",
    "StorefrontError",
    "UpstreamError",
    "ValidationError",
]
