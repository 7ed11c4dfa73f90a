"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CheckoutResponse,
    ConfirmationResponse,
    ConfirmPaymentRequest,
    CreateOrderRequest,
    OrderResponse,
    RefundRequest,
    RefundResponse,
)

__all__ = [
    "create_app",
    "CheckoutResponse",
    "ConfirmationResponse",
    "ConfirmPaymentRequest",
    "CreateOrderRequest",
    "OrderResponse",
    "RefundRequest",
    "RefundResponse",
]
