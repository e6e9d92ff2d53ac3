"""
API routes for OTW orders and payments.

Domain errors (OrderError subclasses) propagate to the exception handlers in
``api.main``, which render them as ``{"error": message}``.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from otw_orders.core.checkout_session import CheckoutSessionGateway
from otw_orders.core.order_service import OrderService
from otw_orders.core.payment_verifier import PaymentVerifier, VerificationOutcome
from otw_orders.core.reconciliation import SessionReconciler
from otw_orders.database.order_store import OrderStore
from otw_orders.domain import (
    MinorUnitAmount,
    OrderStatus,
    OrderValidationError,
    PaymentMethod,
    PaymentNotCompletedError,
    UpstreamGatewayError,
)
from otw_orders.integrations.webhook_handler import WebhookHandler
from otw_orders.monitoring.health import HealthCheck

from .dependencies import (
    get_checkout_gateway,
    get_health_check,
    get_order_service,
    get_order_store,
    get_owner_id,
    get_payment_verifier,
    get_reconciler,
    get_request_metadata,
    get_webhook_handler,
    require_admin,
    require_owner_id,
)
from .schemas import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    HealthCheckResponse,
    Pagination,
    ReconciliationResponse,
    UserOrdersResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

CHECKOUT_FAILED_REASON = "Checkout session could not be created"

order_router = APIRouter(tags=["orders"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


@order_router.post(
    "/orders",
    response_model=CreateOrderResponse,
    summary="Create an order",
    description="Create a card or pay-on-contact order for the caller or a guest",
)
async def create_order(
    request: CreateOrderRequest,
    owner_id: Optional[str] = Depends(get_owner_id),
    request_metadata: Dict[str, Any] = Depends(get_request_metadata),
    service: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    if not request.service_details or not request.customer_info or not request.payment_method:
        raise OrderValidationError("Missing required order information")

    order = await service.create_order(
        request.service_details,
        request.customer_info,
        request.payment_method,
        owner_id=owner_id,
        request_metadata=request_metadata,
    )

    return {
        "success": True,
        "order_id": order.order_id,
        "message": "Order created successfully",
        "order": order.to_response(),
    }


@order_router.get(
    "/orders/user",
    response_model=UserOrdersResponse,
    summary="List my orders",
    description="Read the caller's per-identity order index, newest first",
)
async def list_user_orders(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    owner_id: str = Depends(require_owner_id),
    store: OrderStore = Depends(get_order_store),
) -> Dict[str, Any]:
    entries, total = await store.list_index_entries(
        owner_id, limit=limit, offset=offset, status=order_status
    )
    return {
        "success": True,
        "orders": entries,
        "pagination": Pagination(
            limit=limit,
            offset=offset,
            total=total,
            has_more=offset + len(entries) < total,
        ),
    }


@order_router.post(
    "/checkout-session",
    response_model=CheckoutSessionResponse,
    summary="Create a checkout session",
    description="Create a card order and a hosted Stripe Checkout session for it",
)
async def create_checkout_session(
    request: CheckoutSessionRequest,
    owner_id: Optional[str] = Depends(get_owner_id),
    request_metadata: Dict[str, Any] = Depends(get_request_metadata),
    service: OrderService = Depends(get_order_service),
    checkout: CheckoutSessionGateway = Depends(get_checkout_gateway),
    store: OrderStore = Depends(get_order_store),
) -> Dict[str, Any]:
    if not request.service_details or not request.customer_info or request.amount is None:
        raise OrderValidationError("Missing required fields")

    # Validate everything before the order is written
    checkout_amount = MinorUnitAmount.parse(request.amount)
    service.validate(request.service_details, request.customer_info, PaymentMethod.CARD)

    order = await service.create_order(
        request.service_details,
        request.customer_info,
        PaymentMethod.CARD,
        owner_id=owner_id,
        request_metadata=request_metadata,
    )
    try:
        session = await checkout.create_session(order, checkout_amount)
    except UpstreamGatewayError:
        # Nothing can settle an order without a session; cancel it
        await store.abandon_unbound(order.order_id, CHECKOUT_FAILED_REASON)
        logger.warning("checkout_order_abandoned", order_id=order.order_id)
        raise

    return {
        "session_id": session.session_id,
        "url": session.url,
        "order_id": session.order_id,
    }


@order_router.post(
    "/verify-payment",
    response_model=VerifyPaymentResponse,
    summary="Verify a payment",
    description="Reconcile a Stripe Checkout session into its order",
    dependencies=[Depends(get_owner_id)],
)
async def verify_payment(
    request: VerifyPaymentRequest,
    verifier: PaymentVerifier = Depends(get_payment_verifier),
) -> Dict[str, Any]:
    result = await verifier.verify(request.session_id, request.order_id)

    if result.outcome == VerificationOutcome.EXPIRED:
        raise PaymentNotCompletedError()

    return {
        "success": result.success,
        "payment_status": result.payment_status.value,
        "outcome": result.outcome.value,
        "order": result.order.to_response(),
    }


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    summary="Stripe webhook endpoint",
    description="Handle Stripe Checkout webhook events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    webhook_handler: WebhookHandler = Depends(get_webhook_handler),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Verifies signature and processes events with deduplication.
    """
    body = await request.body()
    event = webhook_handler.verify_signature(body, stripe_signature)
    return await webhook_handler.process_event(event)


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Reconcile stale unsettled checkout sessions against Stripe",
)
async def run_reconciliation(
    admin_id: str = Depends(require_admin),
    reconciler: SessionReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    logger.info("api_reconciliation_requested", requested_by=admin_id)
    outcomes = await reconciler.run()
    return {"success": True, "outcomes": outcomes}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(
    response: Response, health_check: HealthCheck = Depends(get_health_check)
) -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
