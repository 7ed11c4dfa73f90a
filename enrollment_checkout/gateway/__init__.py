"""Payment gateway adapters."""
from .base import (
    CheckoutHandle,
    PaymentGatewayAdapter,
    PaymentOutcome,
    RefundReceipt,
)
from .fake import FakePaymentGateway

__all__ = [
    "CheckoutHandle",
    "PaymentGatewayAdapter",
    "PaymentOutcome",
    "RefundReceipt",
    "FakePaymentGateway",
]
