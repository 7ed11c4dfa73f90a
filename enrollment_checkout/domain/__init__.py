"""Domain layer: entities, state machine, pricing and errors."""
from .errors import (
    CacheInvalidationError,
    CheckoutError,
    ConflictError,
    GatewayUnavailableError,
    InvalidEnrollmentError,
    InvalidPromoCodeError,
    InvalidRefundAmountError,
    InvalidStateTransitionError,
    OrderBusyError,
    OrderNotFoundError,
    OrderNotPayableError,
    PaymentIntentMismatchError,
    RefundDeclinedError,
)
from .models import (
    CheckoutResult,
    ConfirmationResult,
    Enrollment,
    EnrollmentActivation,
    EnrollmentStatus,
    Order,
    OrderLineItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    PricingBreakdown,
    PricingQuote,
    Promotion,
    PromotionKind,
    RefundResult,
)

__all__ = [
    "CacheInvalidationError",
    "CheckoutError",
    "CheckoutResult",
    "ConfirmationResult",
    "ConflictError",
    "Enrollment",
    "EnrollmentActivation",
    "EnrollmentStatus",
    "GatewayUnavailableError",
    "InvalidEnrollmentError",
    "InvalidPromoCodeError",
    "InvalidRefundAmountError",
    "InvalidStateTransitionError",
    "Order",
    "OrderBusyError",
    "OrderLineItem",
    "OrderNotFoundError",
    "OrderNotPayableError",
    "OrderStatus",
    "Payment",
    "PaymentIntentMismatchError",
    "PaymentStatus",
    "PricingBreakdown",
    "PricingQuote",
    "Promotion",
    "PromotionKind",
    "RefundDeclinedError",
    "RefundResult",
]
