"""
Payment gateway adapter contract.

The orchestrator only ever talks to a gateway through this interface. The
adapter converts every transport or provider failure into
GatewayUnavailableError; a refund the provider answers but refuses comes
back as a RefundReceipt whose status is not accepted.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from enrollment_checkout.domain.models import Order, PaymentStatus

REFUND_ACCEPTED_STATUSES = frozenset({"succeeded", "pending"})


@dataclass(frozen=True)
class CheckoutHandle:
    """Where to send the payer and which intent tracks the attempt."""

    redirect_url: str
    gateway_payment_intent_id: str
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class PaymentOutcome:
    """Gateway-side view of an intent."""

    status: PaymentStatus
    amount: Optional[int] = None
    # A voided intent can no longer be paid. A declined one still can.
    canceled: bool = False


@dataclass(frozen=True)
class RefundReceipt:
    refund_id: Optional[str]
    status: str

    @property
    def accepted(self) -> bool:
        return self.status in REFUND_ACCEPTED_STATUSES


class PaymentGatewayAdapter(ABC):
    """Boundary to the external payment processor."""

    name = "gateway"

    @abstractmethod
    async def create_checkout_session(
        self,
        order: Order,
        payment_method_ref: Optional[str],
        installment_plan_ref: Optional[str],
        idempotency_key: str,
    ) -> CheckoutHandle:
        """
        Open a payment attempt for the order's total.

        Raises:
            GatewayUnavailableError: On any gateway failure
        """

    @abstractmethod
    async def get_payment_outcome(self, gateway_payment_intent_id: str) -> PaymentOutcome:
        """
        Raises:
            GatewayUnavailableError: On any gateway failure
        """

    @abstractmethod
    async def create_refund(
        self,
        gateway_payment_intent_id: str,
        amount: int,
        reason: Optional[str],
        idempotency_key: str,
    ) -> RefundReceipt:
        """
        Raises:
            GatewayUnavailableError: If the gateway could not be reached
        """

    @abstractmethod
    async def cancel_payment_intent(self, gateway_payment_intent_id: str) -> PaymentOutcome:
        """
        Void an intent so it can no longer be paid.

        Returns the intent's state afterwards. An intent that was already
        paid cannot be voided and comes back SUCCEEDED; one that was already
        voided comes back canceled.

        Raises:
            GatewayUnavailableError: On any gateway failure
        """

    async def ping(self) -> None:
        """Raise if the gateway is unreachable."""
