"""
Caller-side checkout session.

Keeps a local view cache in front of a checkout backend (the orchestrator
in-process, or CheckoutApiClient over HTTP). Only order creation is applied
optimistically: the cached order list gets a placeholder row before the
backend answers, and the exact previous entry is put back if it fails.
Every other operation drops stale views after the authoritative result.
"""
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union

import structlog

from enrollment_checkout.cache import keys
from enrollment_checkout.cache.invalidation import (
    CheckoutOperation,
    InvalidationTarget,
    confirmation_operation,
    invalidate_for,
)
from enrollment_checkout.cache.view_cache import ViewCache
from enrollment_checkout.domain.models import (
    CheckoutResult,
    ConfirmationResult,
    Enrollment,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    PricingQuote,
    RefundResult,
    new_id,
    utcnow,
)

logger = structlog.get_logger(__name__)

PLACEHOLDER_PREFIX = "optimistic:"


class CheckoutBackend(Protocol):
    async def create_order(
        self, user_id: str, enrollment_ids: Iterable[str], promo_code: Optional[str] = None
    ) -> Order:
        ...

    async def calculate_pricing(
        self,
        enrollment_ids: Iterable[str],
        promo_code: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> PricingQuote:
        ...

    async def initiate_checkout(
        self,
        order_id: str,
        payment_method_ref: Optional[str] = None,
        installment_plan_ref: Optional[str] = None,
    ) -> CheckoutResult:
        ...

    async def confirm_payment(
        self,
        order_id: str,
        gateway_payment_intent_id: str,
        reported_status: Union[PaymentStatus, str],
    ) -> ConfirmationResult:
        ...

    async def cancel_order(self, order_id: str) -> Order:
        ...

    async def refund(
        self, order_id: str, amount: Optional[int] = None, reason: Optional[str] = None
    ) -> RefundResult:
        ...

    async def get_order(self, order_id: str) -> Order:
        ...

    async def list_orders(self, user_id: str, status: Optional[OrderStatus] = None) -> List[Order]:
        ...

    async def list_payments(self, user_id: str) -> List[Payment]:
        ...

    async def list_enrollments(self, user_id: str) -> List[Enrollment]:
        ...

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        ...


def placeholder_order(user_id: str, enrollment_ids: Iterable[str]) -> Dict[str, Any]:
    """Order-shaped row shown in the cached list until the backend answers."""
    now = utcnow().isoformat()
    return {
        "id": f"{PLACEHOLDER_PREFIX}{new_id()}",
        "user_id": user_id,
        "status": OrderStatus.PENDING_PAYMENT.value,
        "line_items": [
            {"position": position, "enrollment_id": eid, "unit_price": 0, "description": ""}
            for position, eid in enumerate(enrollment_ids, start=1)
        ],
        "subtotal": 0,
        "discount": 0,
        "tax": 0,
        "total": 0,
        "currency": "",
        "promo_code": None,
        "created_at": now,
        "updated_at": now,
    }


class CheckoutSession:
    """One user's view of checkout."""

    def __init__(self, backend: CheckoutBackend, cache: ViewCache, user_id: str):
        self.backend = backend
        self.cache = cache
        self.user_id = user_id

    async def _invalidate(self, operation: CheckoutOperation, order: Order) -> None:
        await invalidate_for(
            self.cache,
            operation,
            InvalidationTarget(
                user_id=order.user_id,
                order_id=order.id,
                enrollment_ids=tuple(order.enrollment_ids),
            ),
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_order(
        self, enrollment_ids: Iterable[str], promo_code: Optional[str] = None
    ) -> Order:
        """
        Create an order with an optimistic entry in the cached order list.

        On failure the cached list is restored byte-for-byte and the
        backend's exception is re-raised.
        """
        enrollment_ids = list(enrollment_ids)
        list_key = keys.order_list(self.user_id)
        snapshot = await self.cache.snapshot(list_key)

        current = await self.cache.get(list_key) or []
        await self.cache.set(list_key, [placeholder_order(self.user_id, enrollment_ids)] + current)

        try:
            order = await self.backend.create_order(self.user_id, enrollment_ids, promo_code)
        except Exception as e:
            await self.cache.restore(list_key, snapshot)
            logger.info(
                "optimistic_create_rolled_back",
                user_id=self.user_id,
                error_type=type(e).__name__,
            )
            raise

        await self._invalidate(CheckoutOperation.CREATE_ORDER, order)
        return order

    async def calculate_pricing(
        self, enrollment_ids: Iterable[str], promo_code: Optional[str] = None
    ) -> PricingQuote:
        return await self.backend.calculate_pricing(
            enrollment_ids, promo_code, user_id=self.user_id
        )

    async def checkout(
        self,
        order_id: str,
        payment_method_ref: Optional[str] = None,
        installment_plan_ref: Optional[str] = None,
    ) -> CheckoutResult:
        result = await self.backend.initiate_checkout(
            order_id, payment_method_ref, installment_plan_ref
        )
        await self._invalidate(CheckoutOperation.INITIATE_CHECKOUT, result.order)
        return result

    async def confirm(
        self,
        order_id: str,
        gateway_payment_intent_id: str,
        reported_status: Union[PaymentStatus, str],
    ) -> ConfirmationResult:
        result = await self.backend.confirm_payment(
            order_id, gateway_payment_intent_id, reported_status
        )
        # A replay still drops views: the settlement may have come through a
        # webhook this session never saw
        operation = confirmation_operation(result.payment.status)
        if operation is not None:
            await self._invalidate(operation, result.order)
        return result

    async def cancel(self, order_id: str) -> Order:
        order = await self.backend.cancel_order(order_id)
        await self._invalidate(CheckoutOperation.CANCEL_ORDER, order)
        return order

    async def refund(
        self, order_id: str, amount: Optional[int] = None, reason: Optional[str] = None
    ) -> RefundResult:
        result = await self.backend.refund(order_id, amount, reason)
        await self._invalidate(CheckoutOperation.REFUND, result.order)
        return result

    # ------------------------------------------------------------------
    # Cached reads
    # ------------------------------------------------------------------

    async def orders(self, status: Optional[OrderStatus] = None) -> List[Order]:
        async def load() -> List[Dict[str, Any]]:
            orders = await self.backend.list_orders(self.user_id, status=status)
            return [order.to_dict() for order in orders]

        key = keys.order_list(self.user_id, status.value if status else None)
        return [Order.from_dict(row) for row in await self.cache.get_or_load(key, load)]

    async def order(self, order_id: str) -> Order:
        async def load() -> Dict[str, Any]:
            return (await self.backend.get_order(order_id)).to_dict()

        return Order.from_dict(await self.cache.get_or_load(keys.order_detail(order_id), load))

    async def payments(self) -> List[Payment]:
        async def load() -> List[Dict[str, Any]]:
            return [p.to_dict() for p in await self.backend.list_payments(self.user_id)]

        rows = await self.cache.get_or_load(keys.payment_list(self.user_id), load)
        return [Payment.from_dict(row) for row in rows]

    async def enrollments(self) -> List[Enrollment]:
        async def load() -> List[Dict[str, Any]]:
            return [e.to_dict() for e in await self.backend.list_enrollments(self.user_id)]

        rows = await self.cache.get_or_load(keys.enrollment_list(self.user_id), load)
        return [Enrollment.from_dict(row) for row in rows]

    async def enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        async def load() -> Optional[Dict[str, Any]]:
            enrollment = await self.backend.get_enrollment(enrollment_id)
            return enrollment.to_dict() if enrollment else None

        row = await self.cache.get_or_load(keys.enrollment_detail(enrollment_id), load)
        return Enrollment.from_dict(row) if row is not None else None
