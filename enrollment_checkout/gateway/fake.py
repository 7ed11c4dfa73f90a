"""Scriptable in-process gateway for tests and local development."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from enrollment_checkout.domain.errors import GatewayUnavailableError
from enrollment_checkout.domain.models import Order, PaymentStatus
from enrollment_checkout.gateway.base import (
    CheckoutHandle,
    PaymentGatewayAdapter,
    PaymentOutcome,
    RefundReceipt,
)


@dataclass
class FakeIntent:
    intent_id: str
    order_id: str
    amount: int
    status: PaymentStatus = PaymentStatus.PENDING
    canceled: bool = False
    refunds: List[Tuple[str, int]] = field(default_factory=list)


class FakePaymentGateway(PaymentGatewayAdapter):
    """
    Deterministic gateway double.

    - New intents are pending until ``settle`` moves them.
    - Reusing an idempotency key returns the original intent, like Stripe.
    - ``fail_next(operation)`` makes the next call of that operation raise
      GatewayUnavailableError; ``decline_refunds`` makes refunds come back
      declined.
    - ``calls`` records every call as (operation, argument).
    """

    name = "fake"

    def __init__(self, return_url: str = "https://pay.example.test/checkout"):
        self.return_url = return_url
        self.intents: Dict[str, FakeIntent] = {}
        self.calls: List[Tuple[str, str]] = []
        self.decline_refunds = False
        self.refund_status = "succeeded"
        self._by_key: Dict[str, str] = {}
        self._failures: Dict[str, int] = {}
        self._counter = 0

    def fail_next(self, operation: str, times: int = 1) -> None:
        self._failures[operation] = self._failures.get(operation, 0) + times

    def settle(self, intent_id: str, status: PaymentStatus) -> None:
        self.intents[intent_id].status = status

    def _maybe_fail(self, operation: str) -> None:
        remaining = self._failures.get(operation, 0)
        if remaining:
            self._failures[operation] = remaining - 1
            raise GatewayUnavailableError(operation, "simulated outage")

    async def create_checkout_session(
        self,
        order: Order,
        payment_method_ref: Optional[str],
        installment_plan_ref: Optional[str],
        idempotency_key: str,
    ) -> CheckoutHandle:
        self.calls.append(("create_checkout_session", idempotency_key))
        self._maybe_fail("create_checkout_session")
        intent_id = self._by_key.get(idempotency_key)
        if intent_id is None:
            self._counter += 1
            intent_id = f"pi_fake_{self._counter:04d}"
            self._by_key[idempotency_key] = intent_id
            self.intents[intent_id] = FakeIntent(
                intent_id=intent_id, order_id=order.id, amount=order.total
            )
        return CheckoutHandle(
            redirect_url=f"{self.return_url}?payment_intent={intent_id}",
            gateway_payment_intent_id=intent_id,
            client_secret=f"{intent_id}_secret",
        )

    async def get_payment_outcome(self, gateway_payment_intent_id: str) -> PaymentOutcome:
        self.calls.append(("get_payment_outcome", gateway_payment_intent_id))
        self._maybe_fail("get_payment_outcome")
        intent = self.intents.get(gateway_payment_intent_id)
        if intent is None:
            raise GatewayUnavailableError(
                "get_payment_outcome", f"no such intent: {gateway_payment_intent_id}"
            )
        return self._outcome(intent)

    def _outcome(self, intent: FakeIntent) -> PaymentOutcome:
        return PaymentOutcome(status=intent.status, amount=intent.amount, canceled=intent.canceled)

    async def create_refund(
        self,
        gateway_payment_intent_id: str,
        amount: int,
        reason: Optional[str],
        idempotency_key: str,
    ) -> RefundReceipt:
        self.calls.append(("create_refund", idempotency_key))
        self._maybe_fail("create_refund")
        if self.decline_refunds:
            return RefundReceipt(refund_id=None, status="failed")
        intent = self.intents[gateway_payment_intent_id]
        refund_id = f"re_{idempotency_key.replace(':', '_')}"
        if all(existing != refund_id for existing, _ in intent.refunds):
            intent.refunds.append((refund_id, amount))
        return RefundReceipt(refund_id=refund_id, status=self.refund_status)

    async def cancel_payment_intent(self, gateway_payment_intent_id: str) -> PaymentOutcome:
        self.calls.append(("cancel_payment_intent", gateway_payment_intent_id))
        self._maybe_fail("cancel_payment_intent")
        intent = self.intents.get(gateway_payment_intent_id)
        if intent is None:
            raise GatewayUnavailableError(
                "cancel_payment_intent", f"no such intent: {gateway_payment_intent_id}"
            )
        # Paid intents cannot be voided
        if intent.status is not PaymentStatus.SUCCEEDED:
            intent.canceled = True
            intent.status = PaymentStatus.FAILED
        return self._outcome(intent)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)
