"""
Error taxonomy for the checkout core.

Every error carries:
- Error code (stable, for client handling)
- HTTP status (for API responses)
- Details (structured context, safe to return to the caller)

Validation and state errors propagate to the caller unchanged. Gateway
errors during checkout leave the order untouched and are retryable by the
caller. The orchestrator never retries on its own.
"""

from typing import Any, Dict, Iterable, Optional


class CheckoutError(Exception):
    """Base exception for all checkout errors."""

    error_code = "checkout_error"
    http_status = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
                "details": self.details,
            }
        }


class ConflictError(Exception):
    """
    Raised by a store when a conditional write loses.

    Store-level only: the orchestrator translates it into one of the
    CheckoutError subclasses below.
    """

    def __init__(self, message: str, current: Optional[str] = None):
        super().__init__(message)
        self.current = current


# ============================================================================
# VALIDATION ERRORS
# ============================================================================

class InvalidEnrollmentError(CheckoutError):
    """Enrollment not owned by the user, already ordered, or missing."""

    error_code = "invalid_enrollment"
    http_status = 422

    def __init__(self, problems: Dict[str, str]):
        listed = ", ".join(f"{eid} ({reason})" for eid, reason in sorted(problems.items()))
        super().__init__(f"Invalid enrollments: {listed}", problems=problems)
        self.problems = problems


class InvalidPromoCodeError(CheckoutError):
    """Promo code unknown or no longer active."""

    error_code = "invalid_promo_code"
    http_status = 422

    def __init__(self, code: str):
        super().__init__(f"Promo code is not valid: {code}", promo_code=code)


class InvalidRefundAmountError(CheckoutError):
    """Refund amount is not positive or exceeds the captured amount."""

    error_code = "invalid_refund_amount"
    http_status = 422

    def __init__(self, amount: int, maximum: int):
        super().__init__(
            f"Refund amount must be between 1 and {maximum}, got {amount}",
            amount=amount,
            maximum=maximum,
        )


# ============================================================================
# STATE ERRORS
# ============================================================================

class OrderNotFoundError(CheckoutError):
    """Order does not exist."""

    error_code = "order_not_found"
    http_status = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}", order_id=order_id)


class OrderNotPayableError(CheckoutError):
    """Checkout attempted on an order that cannot take a new payment attempt."""

    error_code = "order_not_payable"
    http_status = 409

    def __init__(self, order_id: str, reason: str, status: Optional[str] = None):
        super().__init__(
            f"Order {order_id} is not payable: {reason}",
            order_id=order_id,
            reason=reason,
            status=status,
        )


class PaymentIntentMismatchError(CheckoutError):
    """Confirmation references an intent not tied to the order's payments."""

    error_code = "payment_intent_mismatch"
    http_status = 409

    def __init__(self, order_id: str, gateway_payment_intent_id: str, reason: str):
        super().__init__(
            f"Payment intent {gateway_payment_intent_id} does not match order {order_id}: {reason}",
            order_id=order_id,
            gateway_payment_intent_id=gateway_payment_intent_id,
            reason=reason,
        )


class InvalidStateTransitionError(CheckoutError):
    """Any attempt to move an order along an edge the state machine lacks."""

    error_code = "invalid_state_transition"
    http_status = 409

    def __init__(self, attempted: str, current: str, reason: Optional[str] = None):
        message = f"Cannot transition order from {current} to {attempted}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, attempted=attempted, current=current, reason=reason)
        self.attempted = attempted
        self.current = current


class OrderBusyError(CheckoutError):
    """Per-order lock could not be acquired in time. Safe to retry."""

    error_code = "order_busy"
    http_status = 423

    def __init__(self, order_id: str):
        super().__init__(
            f"Order {order_id} is being modified by another request", order_id=order_id
        )


# ============================================================================
# EXTERNAL SYSTEM ERRORS
# ============================================================================

class GatewayUnavailableError(CheckoutError):
    """Payment gateway call failed or timed out."""

    error_code = "gateway_unavailable"
    http_status = 503

    def __init__(self, operation: str, message: str):
        super().__init__(
            f"Payment gateway unavailable during {operation}: {message}", operation=operation
        )
        self.operation = operation


class RefundDeclinedError(CheckoutError):
    """Gateway answered but refused the refund."""

    error_code = "refund_declined"
    http_status = 402

    def __init__(self, order_id: str, gateway_status: str):
        super().__init__(
            f"Refund for order {order_id} was declined by the gateway ({gateway_status})",
            order_id=order_id,
            gateway_status=gateway_status,
        )


class CacheInvalidationError(CheckoutError):
    """Committed mutation whose view cache entries could not be dropped."""

    error_code = "cache_invalidation_failed"
    http_status = 503

    def __init__(self, keys: Iterable[str], message: str):
        keys = list(keys)
        super().__init__(f"Failed to invalidate {len(keys)} cache keys: {message}", keys=keys)


ERRORS_BY_CODE = {
    cls.error_code: cls
    for cls in (
        InvalidEnrollmentError,
        InvalidPromoCodeError,
        InvalidRefundAmountError,
        OrderNotFoundError,
        OrderNotPayableError,
        PaymentIntentMismatchError,
        InvalidStateTransitionError,
        OrderBusyError,
        GatewayUnavailableError,
        RefundDeclinedError,
        CacheInvalidationError,
    )
}
