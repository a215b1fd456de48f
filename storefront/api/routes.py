"""
API routes for checkout, webhooks and order status.

StorefrontError subclasses propagate to the application's exception
handler, which maps them to their HTTP status.
"""
import time
import uuid
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from storefront.core.ledger import BalanceLedger
from storefront.core.orchestrator import OrderOrchestrator
from storefront.core.provisioning import ProvisioningService
from storefront.core.reconciler import PaymentReconciler
from storefront.core.reconciliation import StatusPoller
from storefront.gateways.registry import GatewayRegistry
from storefront.monitoring.health import HealthCheck

from .schemas import (
    CheckoutCreateRequest,
    CheckoutResponse,
    DepositRequest,
    DepositResponse,
    GatewayListResponse,
    HealthCheckResponse,
    OrderResponse,
    ProvisioningSweepResponse,
    StatusPollResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
checkout_router = APIRouter(tags=["checkout"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

# Initialize services
registry = GatewayRegistry()
ledger = BalanceLedger()
provisioning = ProvisioningService()
reconciler = PaymentReconciler(registry, provisioning, ledger=ledger)
status_poller = StatusPoller(reconciler)
orchestrator = OrderOrchestrator(registry, provisioning, ledger=ledger)
health_check = HealthCheck(gateway_codes=registry.codes)


@checkout_router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a cart",
    description="Create one order per line item and settle from balance or through a gateway",
)
async def create_checkout(
    request: CheckoutCreateRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> Dict[str, Any]:
    """
    Submit a cart.

    Repeating a request with the same Idempotency-Key returns the original
    result without creating new orders or charges.
    """
    logger.info(
        "api_checkout_request",
        user_id=request.user_id,
        settlement_method=request.settlement_method,
        items=len(request.line_items),
    )
    result = await orchestrator.checkout(request.to_request(idempotency_key))
    logger.info(
        "api_checkout_success",
        checkout_id=result.checkout_id,
        orders=result.order_numbers,
    )
    return result.to_dict()


@checkout_router.get(
    "/checkout/{checkout_id}/orders",
    response_model=List[OrderResponse],
    summary="Orders of a checkout",
)
async def list_checkout_orders(checkout_id: uuid.UUID) -> List[Dict[str, Any]]:
    return await orchestrator.list_checkout_orders(checkout_id)


@checkout_router.get(
    "/gateways",
    response_model=GatewayListResponse,
    summary="Available payment gateways",
)
async def list_gateways() -> Dict[str, Any]:
    return {"gateways": registry.codes()}


@checkout_router.post(
    "/deposits",
    response_model=DepositResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Top up balance",
    description="Start a balance deposit through a gateway; the bonus is credited on completion",
)
async def create_deposit(request: DepositRequest) -> Dict[str, Any]:
    logger.info(
        "api_deposit_request",
        user_id=request.user_id,
        gateway=request.gateway_code,
        amount=str(request.amount),
    )
    result = await orchestrator.initiate_deposit(
        user_id=request.user_id,
        gateway_code=request.gateway_code,
        amount=request.amount,
        buyer_email=request.buyer_email,
    )
    return result.to_dict()


@order_router.get(
    "/{order_number}",
    response_model=OrderResponse,
    summary="Get order status",
)
async def get_order(order_number: str) -> Dict[str, Any]:
    """Order status with per-line-item provisioning progress."""
    return await orchestrator.get_order(order_number)


@order_router.post(
    "/{order_number}/cancel",
    response_model=OrderResponse,
    summary="Cancel an unpaid gateway order",
)
async def cancel_order(order_number: str) -> Dict[str, Any]:
    logger.info("api_cancel_request", order_number=order_number)
    return await orchestrator.cancel_payment(order_number)


@order_router.post(
    "/{order_number}/refund",
    response_model=OrderResponse,
    summary="Record a refund",
)
async def refund_order(order_number: str) -> Dict[str, Any]:
    logger.info("api_refund_request", order_number=order_number)
    return await orchestrator.refund_payment(order_number)


@webhook_router.post(
    "/{gateway_code}",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
    description="Verify and apply a payment processor callback",
)
async def gateway_webhook(gateway_code: str, request: Request) -> Dict[str, Any]:
    """
    Handle a processor callback.

    Returns 200 for everything the processor should stop retrying (including
    duplicates and malformed bodies); 401 for signature failures.
    """
    body = await request.body()
    outcome = await reconciler.handle(gateway_code, body, request.headers)
    return outcome.to_dict()


@webhook_router.get(
    "/{gateway_code}",
    response_model=WebhookResponse,
    summary="Gateway callback endpoint (query string)",
    description="Callbacks delivered as GET requests, e.g. PayGate",
)
async def gateway_callback(gateway_code: str, request: Request) -> Dict[str, Any]:
    """The query string is handled exactly like a form-encoded webhook body."""
    outcome = await reconciler.handle(
        gateway_code, request.url.query.encode("utf-8"), request.headers
    )
    return outcome.to_dict()


@admin_router.post(
    "/poll",
    response_model=StatusPollResponse,
    summary="Run a status poll pass",
    description="Query gateways for open payment intents (recovers lost webhooks)",
)
async def run_status_poll() -> Dict[str, Any]:
    start_time = time.time()
    outcomes = await status_poller.poll_once()
    logger.info("api_status_poll_completed", outcomes=outcomes, duration_seconds=time.time() - start_time)
    return {"outcomes": outcomes}


@admin_router.post(
    "/provisioning/sweep",
    response_model=ProvisioningSweepResponse,
    summary="Retry failed provisioning",
)
async def run_provisioning_sweep(limit: int = 100) -> Dict[str, Any]:
    return await provisioning.retry_failed(limit=limit)


@admin_router.post(
    "/gateways/reload",
    response_model=GatewayListResponse,
    summary="Reload gateway configurations",
)
async def reload_gateways() -> Dict[str, Any]:
    return {"gateways": await registry.refresh()}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
    description="Kubernetes liveness endpoint",
)
async def liveness() -> Dict[str, Any]:
    """Liveness endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
    description="Kubernetes readiness endpoint",
)
async def readiness() -> Dict[str, Any]:
    """Readiness endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
