"""
In-process checkout store.

Used by tests and single-process development. Each method runs without
awaiting in the middle, so on one event loop every method is atomic. Callers
get deep copies; stored rows change only through the methods here.
"""

import copy
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from enrollment_checkout.domain.errors import ConflictError
from enrollment_checkout.domain.models import (
    EnrollmentActivation,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    PricingBreakdown,
    utcnow,
)
from enrollment_checkout.store.base import CheckoutStore, EnrollmentClaimConflict


class MemoryCheckoutStore(CheckoutStore):
    """Dictionary-backed CheckoutStore."""

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._payments: Dict[str, Payment] = {}
        self._intents: Dict[str, str] = {}
        self._claims: Dict[str, str] = {}
        self._activations: Dict[Tuple[str, str], EnrollmentActivation] = {}

    # Orders

    async def create_order(self, order: Order) -> Order:
        taken = {eid: self._claims[eid] for eid in order.enrollment_ids if eid in self._claims}
        if taken:
            raise EnrollmentClaimConflict(taken)
        if order.id in self._orders:
            raise ConflictError(f"Order {order.id} already exists")
        self._orders[order.id] = copy.deepcopy(order)
        for enrollment_id in order.enrollment_ids:
            self._claims[enrollment_id] = order.id
        return copy.deepcopy(order)

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def list_orders(
        self, user_id: str, status: Optional[OrderStatus] = None
    ) -> List[Order]:
        orders = [
            o
            for o in self._orders.values()
            if o.user_id == user_id and (status is None or o.status == status)
        ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return copy.deepcopy(orders)

    async def claimed_enrollments(self, enrollment_ids: Iterable[str]) -> Dict[str, str]:
        return {eid: self._claims[eid] for eid in enrollment_ids if eid in self._claims}

    def _require_order(self, order_id: str, status: OrderStatus) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise ConflictError(f"Order {order_id} does not exist")
        if order.status != status:
            raise ConflictError(
                f"Order {order_id} is {order.status.value}, expected {status.value}",
                current=order.status.value,
            )
        return order

    def _pending_for(self, order_id: str) -> Optional[Payment]:
        for payment in self._payments.values():
            if payment.order_id == order_id and payment.status == PaymentStatus.PENDING:
                return payment
        return None

    async def update_order_status(
        self, order_id: str, from_status: OrderStatus, to_status: OrderStatus
    ) -> Order:
        order = self._require_order(order_id, from_status)
        updated = replace(order, status=to_status, updated_at=utcnow())
        self._orders[order_id] = updated
        return copy.deepcopy(updated)

    async def update_order_pricing(self, order_id: str, pricing: PricingBreakdown) -> Order:
        order = self._require_order(order_id, OrderStatus.PENDING_PAYMENT)
        updated = replace(order.with_pricing(pricing), updated_at=utcnow())
        self._orders[order_id] = updated
        return copy.deepcopy(updated)

    async def cancel_order(self, order_id: str) -> Order:
        order = self._require_order(order_id, OrderStatus.PENDING_PAYMENT)
        if self._pending_for(order_id) is not None:
            raise ConflictError(
                f"Order {order_id} has a payment in flight",
                current=order.status.value,
            )
        updated = replace(order, status=OrderStatus.CANCELLED, updated_at=utcnow())
        self._orders[order_id] = updated
        for enrollment_id in order.enrollment_ids:
            if self._claims.get(enrollment_id) == order_id:
                del self._claims[enrollment_id]
        return copy.deepcopy(updated)

    # Payments

    async def add_pending_payment(self, payment: Payment) -> Payment:
        self._require_order(payment.order_id, OrderStatus.PENDING_PAYMENT)
        if self._pending_for(payment.order_id) is not None:
            raise ConflictError(f"Order {payment.order_id} already has a pending payment")
        if payment.gateway_payment_intent_id in self._intents:
            raise ConflictError(
                f"Payment intent {payment.gateway_payment_intent_id} is already recorded"
            )
        stored = replace(payment, status=PaymentStatus.PENDING)
        self._payments[stored.id] = stored
        self._intents[stored.gateway_payment_intent_id] = stored.id
        return copy.deepcopy(stored)

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        payment = self._payments.get(payment_id)
        return copy.deepcopy(payment) if payment else None

    async def get_payment_by_intent(self, gateway_payment_intent_id: str) -> Optional[Payment]:
        payment_id = self._intents.get(gateway_payment_intent_id)
        return await self.get_payment(payment_id) if payment_id else None

    async def find_pending_payment(self, order_id: str) -> Optional[Payment]:
        payment = self._pending_for(order_id)
        return copy.deepcopy(payment) if payment else None

    async def find_succeeded_payment(self, order_id: str) -> Optional[Payment]:
        payment = self._succeeded_for(order_id)
        return copy.deepcopy(payment) if payment else None

    async def count_payments(self, order_id: str) -> int:
        return sum(1 for p in self._payments.values() if p.order_id == order_id)

    async def list_payments(
        self, user_id: Optional[str] = None, order_id: Optional[str] = None
    ) -> List[Payment]:
        payments = [
            p
            for p in self._payments.values()
            if (user_id is None or p.user_id == user_id)
            and (order_id is None or p.order_id == order_id)
        ]
        payments.sort(key=lambda p: (p.created_at, p.attempt), reverse=True)
        return copy.deepcopy(payments)

    async def list_stale_pending_payments(self, created_before: datetime) -> List[Payment]:
        stale = [
            p
            for p in self._payments.values()
            if p.status == PaymentStatus.PENDING and p.created_at < created_before
        ]
        return copy.deepcopy(sorted(stale, key=lambda p: p.created_at))

    def _require_payment(self, payment_id: str, status: PaymentStatus) -> Payment:
        payment = self._payments.get(payment_id)
        if payment is None:
            raise ConflictError(f"Payment {payment_id} does not exist")
        if payment.status != status:
            raise ConflictError(
                f"Payment {payment_id} is {payment.status.value}, expected {status.value}",
                current=payment.status.value,
            )
        return payment

    # Settlement

    async def settle_payment_succeeded(self, payment_id: str) -> Tuple[Order, Payment]:
        payment = self._require_payment(payment_id, PaymentStatus.PENDING)
        order = self._require_order(payment.order_id, OrderStatus.PENDING_PAYMENT)
        if self._succeeded_for(order.id) is not None:
            raise ConflictError(f"Order {order.id} already has a succeeded payment")
        now = utcnow()
        settled = replace(payment, status=PaymentStatus.SUCCEEDED, updated_at=now)
        paid = replace(order, status=OrderStatus.PAID, updated_at=now)
        self._payments[payment_id] = settled
        self._orders[order.id] = paid
        for enrollment_id in order.enrollment_ids:
            self._activations[(order.id, enrollment_id)] = EnrollmentActivation(
                order_id=order.id, enrollment_id=enrollment_id
            )
        return copy.deepcopy(paid), copy.deepcopy(settled)

    def _succeeded_for(self, order_id: str) -> Optional[Payment]:
        for payment in self._payments.values():
            if payment.order_id == order_id and payment.status in (
                PaymentStatus.SUCCEEDED,
                PaymentStatus.REFUNDED,
            ):
                return payment
        return None

    async def settle_payment_failed(self, payment_id: str, reason: str) -> Payment:
        payment = self._require_payment(payment_id, PaymentStatus.PENDING)
        failed = replace(
            payment, status=PaymentStatus.FAILED, failure_reason=reason, updated_at=utcnow()
        )
        self._payments[payment_id] = failed
        return copy.deepcopy(failed)

    async def record_refund(
        self, order_id: str, payment_id: str, refund_id: str, refunded_amount: int
    ) -> Tuple[Order, Payment]:
        order = self._require_order(order_id, OrderStatus.PAID)
        payment = self._require_payment(payment_id, PaymentStatus.SUCCEEDED)
        if payment.order_id != order_id:
            raise ConflictError(f"Payment {payment_id} does not belong to order {order_id}")
        now = utcnow()
        refunded_order = replace(order, status=OrderStatus.REFUNDED, updated_at=now)
        refunded_payment = replace(
            payment,
            status=PaymentStatus.REFUNDED,
            refund_id=refund_id,
            refunded_amount=refunded_amount,
            updated_at=now,
        )
        self._orders[order_id] = refunded_order
        self._payments[payment_id] = refunded_payment
        return copy.deepcopy(refunded_order), copy.deepcopy(refunded_payment)

    # Activation outbox

    async def pending_activations(self, order_id: str) -> List[EnrollmentActivation]:
        order = self._orders.get(order_id)
        if order is None:
            return []
        rows = [self._activations.get((order_id, eid)) for eid in order.enrollment_ids]
        return [row for row in rows if row is not None and not row.dispatched]

    async def mark_activation_dispatched(self, order_id: str, enrollment_id: str) -> None:
        key = (order_id, enrollment_id)
        if key in self._activations:
            self._activations[key] = replace(self._activations[key], dispatched=True)
