"""
API routes for the checkout service.

CheckoutError subclasses raised by the orchestrator are rendered by the
application's exception handler; routes only log and delegate.
"""
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from enrollment_checkout.cache import keys
from enrollment_checkout.container import CheckoutContainer
from enrollment_checkout.domain.models import OrderStatus

from .schemas import (
    CalculatePricingRequest,
    CheckoutRequest,
    CheckoutResponse,
    ConfirmationResponse,
    ConfirmPaymentRequest,
    CreateOrderRequest,
    EnrollmentResponse,
    ExpirySummaryResponse,
    HealthCheckResponse,
    OrderResponse,
    PaymentResponse,
    PricingResponse,
    RefundRequest,
    RefundResponse,
    WebhookResponse,
)
from .webhooks import StripeWebhookHandler, WebhookError

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
enrollment_router = APIRouter(prefix="/enrollments", tags=["enrollments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_container(request: Request) -> CheckoutContainer:
    return request.app.state.container


# ============================================================================
# ORDERS
# ============================================================================

@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Capture a PENDING_PAYMENT order for the user's enrollments",
)
async def create_order(
    request: CreateOrderRequest,
    container: CheckoutContainer = Depends(get_container),
) -> Dict[str, Any]:
    logger.info(
        "api_create_order_request",
        user_id=request.user_id,
        enrollments=len(request.enrollment_ids),
        promo_code=request.promo_code,
    )
    order = await container.orchestrator.create_order(
        request.user_id, request.enrollment_ids, request.promo_code
    )
    return order.to_dict()


@order_router.post(
    "/calculate",
    response_model=PricingResponse,
    summary="Preview pricing",
    description="Price a prospective order without storing anything",
)
async def calculate_pricing(
    request: CalculatePricingRequest,
    container: CheckoutContainer = Depends(get_container),
) -> Dict[str, Any]:
    quote = await container.orchestrator.calculate_pricing(
        request.enrollment_ids, request.promo_code, user_id=request.user_id
    )
    return quote.to_dict()


@order_router.get(
    "",
    response_model=List[OrderResponse],
    summary="List orders",
    description="Orders of a user, optionally filtered by status",
)
async def list_orders(
    user_id: str = Query(..., min_length=1),
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    container: CheckoutContainer = Depends(get_container),
) -> List[Dict[str, Any]]:
    async def load() -> List[Dict[str, Any]]:
        orders = await container.orchestrator.list_orders(user_id, status=order_status)
        return [order.to_dict() for order in orders]

    key = keys.order_list(user_id, order_status.value if order_status else None)
    return await container.cache.get_or_load(key, load)


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
    description="Retrieve the current state of an order",
)
async def get_order(
    order_id: str,
    container: CheckoutContainer = Depends(get_container),
) -> Dict[str, Any]:
    async def load() -> Dict[str, Any]:
        return (await container.orchestrator.get_order(order_id)).to_dict()

    return await container.cache.get_or_load(keys.order_detail(order_id), load)


@order_router.post(
    "/{order_id}/checkout",
    response_model=CheckoutResponse,
    summary="Start checkout",
    description="Open a payment attempt at the gateway",
)
async def initiate_checkout(
    order_id: str,
    request: Optional[CheckoutRequest] = None,
    container: CheckoutContainer = Depends(get_container),
) -> Dict[str, Any]:
    request = request or CheckoutRequest()
    logger.info("api_checkout_request", order_id=order_id)
    result = await container.orchestrator.initiate_checkout(
        order_id, request.payment_method_ref, request.installment_plan_ref
    )
    return result.to_dict()


@order_router.post(
    "/{order_id}/confirm",
    response_model=ConfirmationResponse,
    summary="Confirm payment",
    description="Report the outcome of a payment attempt. Idempotent on the payment intent.",
)
async def confirm_payment(
    order_id: str,
    request: ConfirmPaymentRequest,
    container: CheckoutContainer = Depends(get_container),
) -> Dict[str, Any]:
    logger.info(
        "api_confirm_request",
        order_id=order_id,
        payment_intent_id=request.gateway_payment_intent_id,
        status=request.status.value,
    )
    result = await container.orchestrator.confirm_payment(
        order_id, request.gateway_payment_intent_id, request.status
    )
    return result.to_dict()


@order_router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel order",
    description="Cancel an unpaid order and release its enrollments",
)
async def cancel_order(
    order_id: str,
    container: CheckoutContainer = Depends(get_container),
) -> Dict[str, Any]:
    logger.info("api_cancel_request", order_id=order_id)
    return (await container.orchestrator.cancel_order(order_id)).to_dict()


@order_router.post(
    "/{order_id}/refund",
    response_model=RefundResponse,
    summary="Refund order",
    description="Create a full or partial refund for a paid order",
)
async def refund_order(
    order_id: str,
    request: Optional[RefundRequest] = None,
    container: CheckoutContainer = Depends(get_container),
) -> Dict[str, Any]:
    request = request or RefundRequest()
    logger.info(
        "api_refund_request", order_id=order_id, amount=request.amount, reason=request.reason
    )
    result = await container.orchestrator.refund(order_id, request.amount, request.reason)
    return result.to_dict()


# ============================================================================
# PAYMENTS AND ENROLLMENTS
# ============================================================================

@payment_router.get(
    "",
    response_model=List[PaymentResponse],
    summary="List payments",
    description="Payment attempts of a user",
)
async def list_payments(
    user_id: str = Query(..., min_length=1),
    container: CheckoutContainer = Depends(get_container),
) -> List[Dict[str, Any]]:
    async def load() -> List[Dict[str, Any]]:
        return [p.to_dict() for p in await container.orchestrator.list_payments(user_id)]

    return await container.cache.get_or_load(keys.payment_list(user_id), load)


@enrollment_router.get(
    "",
    response_model=List[EnrollmentResponse],
    summary="List enrollments",
    description="Enrollments of a user as seen by checkout",
)
async def list_enrollments(
    user_id: str = Query(..., min_length=1),
    container: CheckoutContainer = Depends(get_container),
) -> List[Dict[str, Any]]:
    async def load() -> List[Dict[str, Any]]:
        return [e.to_dict() for e in await container.orchestrator.list_enrollments(user_id)]

    return await container.cache.get_or_load(keys.enrollment_list(user_id), load)


@enrollment_router.get(
    "/{enrollment_id}",
    response_model=EnrollmentResponse,
    summary="Get enrollment",
)
async def get_enrollment(
    enrollment_id: str,
    container: CheckoutContainer = Depends(get_container),
) -> Dict[str, Any]:
    async def load() -> Optional[Dict[str, Any]]:
        enrollment = await container.orchestrator.get_enrollment(enrollment_id)
        return enrollment.to_dict() if enrollment else None

    enrollment = await container.cache.get_or_load(keys.enrollment_detail(enrollment_id), load)
    if enrollment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Enrollment not found")
    return enrollment


# ============================================================================
# WEBHOOKS AND ADMIN
# ============================================================================

@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Handle signed Stripe payment_intent events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    container: CheckoutContainer = Depends(get_container),
) -> Dict[str, Any]:
    handler = StripeWebhookHandler(
        container.orchestrator, container.settings.stripe_webhook_secret
    )
    body = await request.body()
    try:
        event = handler.verify_signature(body, stripe_signature)
    except WebhookError as e:
        logger.error("api_webhook_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info("api_webhook_received", event_id=event["id"], event_type=event["type"])
    return await handler.process_event(event)


@admin_router.post(
    "/expire-payments",
    response_model=ExpirySummaryResponse,
    summary="Expire stale payments",
    description="Close pending payments older than the configured TTL",
)
async def expire_payments(
    container: CheckoutContainer = Depends(get_container),
) -> Dict[str, Any]:
    logger.info("api_expiry_started")
    summary = await container.orchestrator.expire_stale_payments()
    return summary.to_dict()


# ============================================================================
# MONITORING
# ============================================================================

@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(container: CheckoutContainer = Depends(get_container)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await container.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {"status": "unhealthy", "checks": {"error": str(e)}}


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(container: CheckoutContainer = Depends(get_container)) -> Dict[str, Any]:
    return await container.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(container: CheckoutContainer = Depends(get_container)) -> Dict[str, Any]:
    result = await container.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
