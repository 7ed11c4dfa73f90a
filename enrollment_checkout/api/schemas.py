"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from enrollment_checkout.domain.models import PaymentStatus


class CreateOrderRequest(BaseModel):
    """Request schema for capturing an order."""

    user_id: str = Field(..., min_length=1, description="User identifier")
    enrollment_ids: List[str] = Field(
        ..., min_length=1, description="Enrollments to purchase (owned by the user, status PENDING)"
    )
    promo_code: Optional[str] = Field(default=None, description="Optional promo code")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "user_123",
                    "enrollment_ids": ["enr_1", "enr_2"],
                    "promo_code": "SPRING10",
                }
            ]
        }
    }


class CalculatePricingRequest(BaseModel):
    """Request schema for a pricing preview."""

    enrollment_ids: List[str] = Field(..., min_length=1, description="Enrollments to price")
    promo_code: Optional[str] = Field(default=None, description="Optional promo code")
    user_id: Optional[str] = Field(
        default=None, description="When given, enrollments must belong to this user"
    )


class LineItemResponse(BaseModel):
    position: int = Field(..., description="1-based position within the order")
    enrollment_id: str = Field(..., description="Enrollment identifier")
    unit_price: int = Field(..., description="Price in cents at order capture")
    description: str = Field(default="", description="Line description")


class PricingResponse(BaseModel):
    """Response schema for a pricing preview."""

    line_items: List[LineItemResponse] = Field(..., description="Priced line items")
    subtotal: int = Field(..., description="Sum of line item prices in cents")
    discount: int = Field(..., description="Promotion discount in cents")
    tax: int = Field(..., description="Tax in cents")
    total: int = Field(..., description="subtotal - discount + tax, in cents")
    currency: str = Field(..., description="Currency code")
    promo_code: Optional[str] = Field(default=None, description="Applied promo code")


class OrderResponse(BaseModel):
    """Response schema for an order."""

    id: str = Field(..., description="Order ID")
    user_id: str = Field(..., description="User identifier")
    status: str = Field(..., description="PENDING_PAYMENT, PAID, CANCELLED or REFUNDED")
    line_items: List[LineItemResponse] = Field(..., description="Ordered line items")
    subtotal: int = Field(..., description="Subtotal in cents")
    discount: int = Field(..., description="Discount in cents")
    tax: int = Field(..., description="Tax in cents")
    total: int = Field(..., description="Total in cents")
    currency: str = Field(..., description="Currency code")
    promo_code: Optional[str] = Field(default=None, description="Applied promo code")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "id": "3f0c6a2e9b7d4e5f8a1b2c3d4e5f6a7b",
                    "user_id": "user_123",
                    "status": "PENDING_PAYMENT",
                    "line_items": [
                        {"position": 1, "enrollment_id": "enr_1", "unit_price": 5000, "description": "Spring soccer"},
                        {"position": 2, "enrollment_id": "enr_2", "unit_price": 7500, "description": "Swim lessons"},
                    ],
                    "subtotal": 12500,
                    "discount": 0,
                    "tax": 0,
                    "total": 12500,
                    "currency": "USD",
                    "promo_code": None,
                    "created_at": "2025-01-06T10:00:00+00:00",
                    "updated_at": "2025-01-06T10:00:00+00:00",
                }
            ]
        }
    }


class PaymentResponse(BaseModel):
    """Response schema for a payment attempt."""

    id: str = Field(..., description="Payment ID")
    order_id: str = Field(..., description="Order ID")
    user_id: str = Field(..., description="User identifier")
    amount: int = Field(..., description="Amount in cents")
    currency: str = Field(..., description="Currency code")
    status: str = Field(..., description="pending, succeeded, failed or refunded")
    gateway_payment_intent_id: str = Field(..., description="Gateway payment intent ID")
    attempt: int = Field(..., description="1-based checkout attempt number")
    payment_method_ref: Optional[str] = Field(default=None, description="Payment method reference")
    installment_plan_ref: Optional[str] = Field(default=None, description="Installment plan reference")
    redirect_url: Optional[str] = Field(default=None, description="Where the payer completes payment")
    refunded_amount: int = Field(default=0, description="Refunded amount in cents")
    refund_id: Optional[str] = Field(default=None, description="Gateway refund ID")
    failure_reason: Optional[str] = Field(default=None, description="Why the attempt failed")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")


class CheckoutRequest(BaseModel):
    """Request schema for starting a payment attempt."""

    payment_method_ref: Optional[str] = Field(default=None, description="Saved payment method")
    installment_plan_ref: Optional[str] = Field(default=None, description="Installment plan")


class CheckoutResponse(BaseModel):
    """Response schema for a started payment attempt."""

    order: OrderResponse
    payment: PaymentResponse
    redirect_url: str = Field(..., description="Where the payer completes payment")
    gateway_payment_intent_id: str = Field(..., description="Gateway payment intent ID")
    client_secret: Optional[str] = Field(default=None, description="Client secret for the gateway SDK")


class ConfirmPaymentRequest(BaseModel):
    """Request schema for reporting a payment outcome."""

    gateway_payment_intent_id: str = Field(..., min_length=1, description="Gateway payment intent ID")
    status: PaymentStatus = Field(..., description="Reported outcome (succeeded or failed)")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: PaymentStatus) -> PaymentStatus:
        """Only settled outcomes can be reported."""
        if v not in (PaymentStatus.SUCCEEDED, PaymentStatus.FAILED):
            raise ValueError("status must be 'succeeded' or 'failed'")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [{"gateway_payment_intent_id": "pi_1234567890", "status": "succeeded"}]
        }
    }


class ConfirmationResponse(BaseModel):
    """Response schema for a confirmation, first or replayed."""

    order: OrderResponse
    payment: PaymentResponse
    already_processed: bool = Field(..., description="True when an earlier call settled the payment")


class RefundRequest(BaseModel):
    """Request schema for refunding an order."""

    amount: Optional[int] = Field(
        default=None, gt=0, description="Partial refund amount in cents (full refund if not specified)"
    )
    reason: Optional[str] = Field(
        default=None, description="Refund reason (requested_by_customer, duplicate, fraudulent)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount": 5000, "reason": "requested_by_customer"},
                {"reason": "duplicate"},
            ]
        }
    }


class RefundResponse(BaseModel):
    """Response schema for refund."""

    order: OrderResponse
    payment: PaymentResponse
    refund_id: str = Field(..., description="Gateway refund ID")
    amount: int = Field(..., description="Refunded amount in cents")


class EnrollmentResponse(BaseModel):
    id: str = Field(..., description="Enrollment ID")
    user_id: str = Field(..., description="User identifier")
    price: int = Field(..., description="Catalog price in cents")
    description: str = Field(default="", description="Enrollment description")
    status: str = Field(..., description="PENDING, ACTIVE or CANCELLED")


class ExpirySummaryResponse(BaseModel):
    """Response schema for a stale payment sweep."""

    examined: int = Field(..., description="Pending payments older than the TTL")
    expired: int = Field(..., description="Cancelled at the gateway and marked failed")
    succeeded: int = Field(..., description="Settled as succeeded after asking the gateway")
    failed: int = Field(..., description="Settled as failed after asking the gateway")
    skipped: int = Field(..., description="Already settled by another request")
    errors: List[str] = Field(..., description="Payment IDs left pending for the next sweep")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: str = Field(..., description="Stripe event ID")
    message: Optional[str] = Field(default=None, description="Status message")
