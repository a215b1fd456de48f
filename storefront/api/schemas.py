"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from storefront.core.orchestrator import (
    BuyerContact,
    CheckoutRequest,
    LineItemRequest,
)


class CheckoutCreateRequest(BaseModel):
    """Request schema for submitting a cart."""

    user_id: str = Field(..., min_length=1, description="Buyer account identifier")
    settlement_method: str = Field(
        ..., description='"balance" or the code of an active payment gateway'
    )
    line_items: List[LineItemRequest] = Field(..., description="Cart contents")
    buyer: BuyerContact

    @field_validator("settlement_method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip().lower()

    def to_request(self, idempotency_key: Optional[str]) -> CheckoutRequest:
        return CheckoutRequest(
            user_id=self.user_id,
            settlement_method=self.settlement_method,
            line_items=self.line_items,
            buyer=self.buyer,
            idempotency_key=idempotency_key,
        )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "user_42",
                    "settlement_method": "nowpayments",
                    "line_items": [
                        {
                            "product_id": "7f7a3c1e-51a4-4c55-9f11-2f4c3a6b8d10",
                            "quantity": 2,
                            "unit_configuration": [
                                {"devices": 1, "adult_channels": False},
                                {"devices": 2, "adult_channels": True, "mac_address": "00:1A:79:00:00:01"},
                            ],
                        }
                    ],
                    "buyer": {"email": "buyer@example.com", "name": "Sam Doe"},
                }
            ]
        }
    }


class FailedItem(BaseModel):
    position: int
    product_id: str
    error: str
    message: str


class CheckoutResponse(BaseModel):
    """Response schema for a checkout submission."""

    checkout_id: str = Field(..., description="Identifier shared by every order of the cart")
    settlement_method: str
    order_numbers: List[str] = Field(..., description="Orders created, one per line item")
    checkout_url: Optional[str] = Field(
        default=None, description="Hosted payment page (gateway settlement only)"
    )
    failed_items: List[FailedItem] = Field(
        default_factory=list, description="Line items that could not be ordered"
    )


class DepositRequest(BaseModel):
    """Request schema for a balance top-up."""

    user_id: str = Field(..., min_length=1)
    gateway_code: str
    amount: Decimal = Field(..., gt=0, description="Amount credited to the balance")
    buyer_email: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [{"user_id": "user_42", "gateway_code": "cryptomus", "amount": "100.00"}]
        }
    }


class DepositResponse(BaseModel):
    payment_intent_id: str
    checkout_url: str
    amount: str
    fee_amount: str
    total_charged: str
    bonus_amount: str


class LineItemStatus(BaseModel):
    product_id: str
    product_name: str
    quantity: int
    price: str
    provisioning_status: str
    provisioning_attempts: int


class OrderResponse(BaseModel):
    """Response schema for order status."""

    order_number: str
    checkout_id: str
    status: str = Field(..., description="new, processing, confirmed or cancelled")
    settlement_method: str
    total_amount: str
    currency: str
    payment_status: Optional[str] = Field(
        default=None, description="Payment intent status (gateway settlement only)"
    )
    refunded: bool
    created_at: str
    line_items: List[LineItemStatus]


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    gateway: str
    outcome: str = Field(
        ..., description="processed, unchanged, duplicate, unmatched, malformed or illegal_transition"
    )
    external_reference: Optional[str] = None
    payment_status: Optional[str] = None


class StatusPollResponse(BaseModel):
    outcomes: Dict[str, int]


class ProvisioningSweepResponse(BaseModel):
    attempted: int
    confirmed: int


class GatewayListResponse(BaseModel):
    gateways: List[str]


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    """Error body returned for every StorefrontError."""

    error: Dict[str, Any]
