"""
Order store contract.

The orchestrator reaches orders, payments, enrollment claims and the
activation outbox only through this interface. Every state-changing method
is a conditional write: it either applies completely or raises
ConflictError and changes nothing. The composite settlement methods commit
the payment change, the order change and any outbox rows in one unit.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from enrollment_checkout.domain.errors import ConflictError
from enrollment_checkout.domain.models import (
    EnrollmentActivation,
    Order,
    OrderStatus,
    Payment,
    PricingBreakdown,
)


class EnrollmentClaimConflict(ConflictError):
    """One or more enrollments already belong to a non-cancelled order."""

    def __init__(self, claims: Dict[str, str]):
        super().__init__(f"Enrollments already ordered: {sorted(claims)}")
        self.claims = claims


class CheckoutStore(ABC):
    """Persistence for orders, payments, enrollment claims and activations."""

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_order(self, order: Order) -> Order:
        """
        Insert a PENDING_PAYMENT order and claim its enrollments.

        Raises:
            EnrollmentClaimConflict: If any enrollment is claimed already
        """

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def list_orders(
        self, user_id: str, status: Optional[OrderStatus] = None
    ) -> List[Order]:
        """Orders of a user, newest first."""

    @abstractmethod
    async def claimed_enrollments(self, enrollment_ids: Iterable[str]) -> Dict[str, str]:
        """Map enrollment id → order id for enrollments held by non-cancelled orders."""

    @abstractmethod
    async def update_order_status(
        self, order_id: str, from_status: OrderStatus, to_status: OrderStatus
    ) -> Order:
        """
        Move an order from from_status to to_status.

        Raises:
            ConflictError: If the order is missing or not in from_status
        """

    @abstractmethod
    async def update_order_pricing(self, order_id: str, pricing: PricingBreakdown) -> Order:
        """
        Replace the totals of a PENDING_PAYMENT order.

        Raises:
            ConflictError: If the order is not PENDING_PAYMENT
        """

    @abstractmethod
    async def cancel_order(self, order_id: str) -> Order:
        """
        PENDING_PAYMENT → CANCELLED and release the enrollment claims.

        Raises:
            ConflictError: If the order is not PENDING_PAYMENT or has a
                pending payment
        """

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    @abstractmethod
    async def add_pending_payment(self, payment: Payment) -> Payment:
        """
        Record a new pending payment attempt.

        Raises:
            ConflictError: If the order is not PENDING_PAYMENT, already has a
                pending payment, or the gateway intent id is taken
        """

    @abstractmethod
    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        ...

    @abstractmethod
    async def get_payment_by_intent(self, gateway_payment_intent_id: str) -> Optional[Payment]:
        ...

    @abstractmethod
    async def find_pending_payment(self, order_id: str) -> Optional[Payment]:
        ...

    @abstractmethod
    async def find_succeeded_payment(self, order_id: str) -> Optional[Payment]:
        """The succeeded (or refunded) payment of an order, if any."""

    @abstractmethod
    async def count_payments(self, order_id: str) -> int:
        ...

    @abstractmethod
    async def list_payments(
        self, user_id: Optional[str] = None, order_id: Optional[str] = None
    ) -> List[Payment]:
        """Payments filtered by user and/or order, newest first."""

    @abstractmethod
    async def list_stale_pending_payments(self, created_before: datetime) -> List[Payment]:
        ...

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    @abstractmethod
    async def settle_payment_succeeded(self, payment_id: str) -> Tuple[Order, Payment]:
        """
        Atomically: payment pending → succeeded, order PENDING_PAYMENT → PAID,
        and one undispatched activation row per line item.

        Raises:
            ConflictError: If the payment is not pending or the order is not
                PENDING_PAYMENT
        """

    @abstractmethod
    async def settle_payment_failed(self, payment_id: str, reason: str) -> Payment:
        """
        Payment pending → failed.

        Raises:
            ConflictError: If the payment is not pending
        """

    @abstractmethod
    async def record_refund(
        self, order_id: str, payment_id: str, refund_id: str, refunded_amount: int
    ) -> Tuple[Order, Payment]:
        """
        Atomically: order PAID → REFUNDED, payment succeeded → refunded.

        Raises:
            ConflictError: If either precondition fails
        """

    # ------------------------------------------------------------------
    # Activation outbox
    # ------------------------------------------------------------------

    @abstractmethod
    async def pending_activations(self, order_id: str) -> List[EnrollmentActivation]:
        """Activation rows of the order not yet dispatched."""

    @abstractmethod
    async def mark_activation_dispatched(self, order_id: str, enrollment_id: str) -> None:
        ...

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ping(self) -> None:
        """Raise if the store is unreachable."""

    async def close(self) -> None:
        """Release connections."""
