"""
Exception taxonomy for the storefront payment pipeline.

Two families matter operationally:
1. Errors raised before any charge or debit: no side effects, safe to surface.
2. Errors after money has moved: recorded and retried, never grounds to
   distrust the charge.
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class StorefrontError(Exception):
    """
    Base exception for all pipeline errors.

    Carries an error code for clients, a message safe to show buyers and the
    HTTP status used by the API layer.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "storefront_error",
        user_message: Optional[str] = None,
        http_status: int = 500,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.user_message = user_message or "An error occurred. Please try again."
        self.http_status = http_status
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        body: Dict[str, Any] = {
            "code": self.error_code,
            "message": self.user_message,
            "type": self.__class__.__name__,
        }
        if self.metadata:
            body["details"] = {k: _jsonable(v) for k, v in self.metadata.items()}
        return {"error": body}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return value


class ValidationError(StorefrontError):
    """Malformed checkout input. Raised before anything is persisted."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="validation_error",
            user_message=message,
            http_status=400,
            **kwargs,
        )


class NotFoundError(StorefrontError):
    """Referenced order, product or gateway does not exist."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="not_found",
            user_message=message,
            http_status=404,
            **kwargs,
        )


class CheckoutInProgress(StorefrontError):
    """Same idempotency key submitted while the first submission is still running."""

    def __init__(self, idempotency_key: str):
        super().__init__(
            message=f"Checkout already in progress for key {idempotency_key}",
            error_code="checkout_in_progress",
            user_message="This checkout is already being processed.",
            http_status=409,
        )


class ConfigurationError(StorefrontError):
    """Gateway credentials missing or malformed, or gateway not enabled."""

    def __init__(self, message: str, gateway_code: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="gateway_unavailable",
            user_message="This payment method is currently unavailable.",
            http_status=503,
            gateway_code=gateway_code,
        )
        self.gateway_code = gateway_code


class UpstreamError(StorefrontError):
    """Gateway or collaborator returned an error or could not be reached."""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        gateway_code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(
            message=message,
            error_code="upstream_error",
            user_message="The payment provider did not respond. Please try again.",
            http_status=503,
            gateway_code=gateway_code,
        )
        self.retryable = retryable
        self.gateway_code = gateway_code
        self.status_code = status_code


class AmountOutOfRange(StorefrontError):
    """Requested amount is outside the gateway's limits."""

    def __init__(
        self,
        amount: Decimal,
        minimum: Decimal,
        maximum: Optional[Decimal] = None,
        gateway_code: Optional[str] = None,
    ):
        if amount < minimum:
            user_message = f"Minimum amount for this payment method is {minimum}."
        else:
            user_message = f"Maximum amount for this payment method is {maximum}."
        super().__init__(
            message=f"Amount {amount} outside [{minimum}, {maximum}] for {gateway_code}",
            error_code="amount_out_of_range",
            user_message=user_message,
            http_status=400,
            minimum=minimum,
            maximum=maximum,
        )
        self.amount = amount
        self.minimum = minimum
        self.maximum = maximum


class InsufficientBalance(StorefrontError):
    """Stored balance cannot cover the purchase. No side effects."""

    def __init__(self, user_id: str, required: Decimal, available: Optional[Decimal] = None):
        super().__init__(
            message=f"User {user_id} balance {available} below required {required}",
            error_code="insufficient_balance",
            user_message="Your balance is too low for this purchase.",
            http_status=402,
            required=required,
        )
        self.user_id = user_id
        self.required = required
        self.available = available


class MalformedWebhook(StorefrontError):
    """Webhook body could not be parsed. Acknowledged and discarded."""

    def __init__(self, message: str, gateway_code: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="malformed_webhook",
            http_status=200,
            gateway_code=gateway_code,
        )


class SignatureVerificationFailed(StorefrontError):
    """Webhook signature mismatch. Rejected so that the processor retries."""

    def __init__(self, gateway_code: str):
        super().__init__(
            message=f"Invalid webhook signature for {gateway_code}",
            error_code="invalid_signature",
            user_message="Invalid signature.",
            http_status=401,
            gateway_code=gateway_code,
        )
        self.gateway_code = gateway_code


class IllegalTransition(StorefrontError):
    """State change outside the allowed transition table. Never applied."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            message=f"Illegal {entity} transition {current} -> {target}",
            error_code="illegal_transition",
            user_message="This operation is not allowed in the current state.",
            http_status=409,
        )
        self.entity = entity
        self.current = current
        self.target = target


class ProvisioningFailure(StorefrontError):
    """Credential issuance failed for a line item. Recorded and retried."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(
            message=message,
            error_code="provisioning_failed",
            http_status=502,
        )
        self.retryable = retryable
