"""
SQLAlchemy-backed checkout store.

Every transition is a conditional UPDATE (``WHERE status = :expected``) whose
rowcount decides success, so concurrent writers cannot both win. Settlement
and refund methods run their writes in one transaction together with the
payment audit trail and, for settlement, the activation outbox rows.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import delete, exists, func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrollment_checkout.database.models import (
    EnrollmentActivationRow,
    EnrollmentClaimRow,
    OrderLineItemRow,
    OrderRow,
    PaymentEventRow,
    PaymentRow,
)
from enrollment_checkout.domain.errors import ConflictError
from enrollment_checkout.domain.models import (
    EnrollmentActivation,
    Order,
    OrderLineItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    PricingBreakdown,
    utcnow,
)
from enrollment_checkout.store.base import CheckoutStore, EnrollmentClaimConflict

logger = structlog.get_logger(__name__)

SETTLED_STATUSES = (PaymentStatus.SUCCEEDED.value, PaymentStatus.REFUNDED.value)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _order_from_row(row: OrderRow) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        status=OrderStatus(row.status),
        line_items=[
            OrderLineItem(
                position=item.position,
                enrollment_id=item.enrollment_id,
                unit_price=item.unit_price_cents,
                description=item.description,
            )
            for item in sorted(row.line_items, key=lambda i: i.position)
        ],
        subtotal=row.subtotal_cents,
        discount=row.discount_cents,
        tax=row.tax_cents,
        total=row.total_cents,
        currency=row.currency,
        promo_code=row.promo_code,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _payment_from_row(row: PaymentRow) -> Payment:
    return Payment(
        id=row.id,
        order_id=row.order_id,
        user_id=row.user_id,
        amount=row.amount_cents,
        currency=row.currency,
        status=PaymentStatus(row.status),
        gateway_payment_intent_id=row.gateway_payment_intent_id,
        attempt=row.attempt,
        payment_method_ref=row.payment_method_ref,
        installment_plan_ref=row.installment_plan_ref,
        redirect_url=row.redirect_url,
        refunded_amount=row.refunded_amount_cents,
        refund_id=row.refund_id,
        failure_reason=row.failure_reason,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


class SqlCheckoutStore(CheckoutStore):
    """CheckoutStore over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_order(self, session: AsyncSession, order_id: str) -> Optional[OrderRow]:
        result = await session.execute(
            select(OrderRow)
            .where(OrderRow.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _load_payment(self, session: AsyncSession, payment_id: str) -> Optional[PaymentRow]:
        result = await session.execute(
            select(PaymentRow)
            .where(PaymentRow.id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _transition_order(
        self,
        session: AsyncSession,
        order_id: str,
        from_status: OrderStatus,
        values: Dict[str, Any],
        *conditions: Any,
    ) -> None:
        result = await session.execute(
            update(OrderRow)
            .where(OrderRow.id == order_id, OrderRow.status == from_status.value, *conditions)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = await self._load_order(session, order_id)
            raise ConflictError(
                f"Order {order_id} is not {from_status.value}",
                current=current.status if current else None,
            )

    async def _transition_payment(
        self,
        session: AsyncSession,
        payment_id: str,
        from_status: PaymentStatus,
        values: Dict[str, Any],
    ) -> None:
        result = await session.execute(
            update(PaymentRow)
            .where(PaymentRow.id == payment_id, PaymentRow.status == from_status.value)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = await self._load_payment(session, payment_id)
            raise ConflictError(
                f"Payment {payment_id} is not {from_status.value}",
                current=current.status if current else None,
            )

    @staticmethod
    def _record_payment_event(
        session: AsyncSession,
        payment: PaymentRow,
        event_type: str,
        event_data: Dict[str, Any],
    ) -> None:
        session.add(
            PaymentEventRow(
                payment_id=payment.id,
                order_id=payment.order_id,
                event_type=event_type,
                event_data=event_data,
                created_at=utcnow(),
            )
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(self, order: Order) -> Order:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    taken = await self._claims(session, order.enrollment_ids)
                    if taken:
                        raise EnrollmentClaimConflict(taken)
                    session.add(
                        OrderRow(
                            id=order.id,
                            user_id=order.user_id,
                            status=order.status.value,
                            subtotal_cents=order.subtotal,
                            discount_cents=order.discount,
                            tax_cents=order.tax,
                            total_cents=order.total,
                            currency=order.currency,
                            promo_code=order.promo_code,
                            created_at=order.created_at,
                            updated_at=order.updated_at,
                            line_items=[
                                OrderLineItemRow(
                                    position=item.position,
                                    enrollment_id=item.enrollment_id,
                                    unit_price_cents=item.unit_price,
                                    description=item.description,
                                )
                                for item in order.line_items
                            ],
                        )
                    )
                    # Flush the order first so the claim foreign keys resolve
                    await session.flush()
                    session.add_all(
                        EnrollmentClaimRow(enrollment_id=eid, order_id=order.id)
                        for eid in order.enrollment_ids
                    )
        except IntegrityError as exc:
            # Lost a race for a claim between the check and the insert
            taken = await self.claimed_enrollments(order.enrollment_ids)
            if taken:
                raise EnrollmentClaimConflict(taken) from exc
            raise ConflictError(f"Order {order.id} could not be created: {exc.orig}") from exc

        logger.debug("order_row_inserted", order_id=order.id, items=len(order.line_items))
        stored = await self.get_order(order.id)
        assert stored is not None
        return stored

    async def _claims(self, session: AsyncSession, enrollment_ids: Iterable[str]) -> Dict[str, str]:
        ids = list(enrollment_ids)
        if not ids:
            return {}
        result = await session.execute(
            select(EnrollmentClaimRow).where(EnrollmentClaimRow.enrollment_id.in_(ids))
        )
        return {row.enrollment_id: row.order_id for row in result.scalars()}

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._session_factory() as session:
            row = await self._load_order(session, order_id)
            return _order_from_row(row) if row else None

    async def list_orders(
        self, user_id: str, status: Optional[OrderStatus] = None
    ) -> List[Order]:
        stmt = select(OrderRow).where(OrderRow.user_id == user_id)
        if status is not None:
            stmt = stmt.where(OrderRow.status == status.value)
        stmt = stmt.order_by(OrderRow.created_at.desc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_order_from_row(row) for row in result.scalars()]

    async def claimed_enrollments(self, enrollment_ids: Iterable[str]) -> Dict[str, str]:
        async with self._session_factory() as session:
            return await self._claims(session, enrollment_ids)

    async def update_order_status(
        self, order_id: str, from_status: OrderStatus, to_status: OrderStatus
    ) -> Order:
        async with self._session_factory() as session:
            async with session.begin():
                await self._transition_order(
                    session, order_id, from_status, {"status": to_status.value}
                )
            row = await self._load_order(session, order_id)
            return _order_from_row(row)

    async def update_order_pricing(self, order_id: str, pricing: PricingBreakdown) -> Order:
        async with self._session_factory() as session:
            async with session.begin():
                await self._transition_order(
                    session,
                    order_id,
                    OrderStatus.PENDING_PAYMENT,
                    {
                        "subtotal_cents": pricing.subtotal,
                        "discount_cents": pricing.discount,
                        "tax_cents": pricing.tax,
                        "total_cents": pricing.total,
                        "currency": pricing.currency,
                        "promo_code": pricing.promo_code,
                    },
                )
            row = await self._load_order(session, order_id)
            return _order_from_row(row)

    async def cancel_order(self, order_id: str) -> Order:
        no_pending_payment = ~exists().where(
            PaymentRow.order_id == order_id,
            PaymentRow.status == PaymentStatus.PENDING.value,
        )
        async with self._session_factory() as session:
            async with session.begin():
                await self._transition_order(
                    session,
                    order_id,
                    OrderStatus.PENDING_PAYMENT,
                    {"status": OrderStatus.CANCELLED.value},
                    no_pending_payment,
                )
                await session.execute(
                    delete(EnrollmentClaimRow).where(EnrollmentClaimRow.order_id == order_id)
                )
            row = await self._load_order(session, order_id)
            return _order_from_row(row)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def add_pending_payment(self, payment: Payment) -> Payment:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    order = await session.execute(
                        select(OrderRow.status)
                        .where(OrderRow.id == payment.order_id)
                        .with_for_update()
                    )
                    status = order.scalar_one_or_none()
                    if status != OrderStatus.PENDING_PAYMENT.value:
                        raise ConflictError(
                            f"Order {payment.order_id} is not payable", current=status
                        )
                    row = PaymentRow(
                        id=payment.id,
                        order_id=payment.order_id,
                        user_id=payment.user_id,
                        amount_cents=payment.amount,
                        currency=payment.currency,
                        status=PaymentStatus.PENDING.value,
                        gateway_payment_intent_id=payment.gateway_payment_intent_id,
                        attempt=payment.attempt,
                        payment_method_ref=payment.payment_method_ref,
                        installment_plan_ref=payment.installment_plan_ref,
                        redirect_url=payment.redirect_url,
                        refunded_amount_cents=0,
                        created_at=payment.created_at,
                        updated_at=payment.updated_at,
                    )
                    session.add(row)
                    await session.flush()
                    self._record_payment_event(
                        session,
                        row,
                        "payment.created",
                        {"amount": payment.amount, "attempt": payment.attempt},
                    )
        except IntegrityError as exc:
            raise ConflictError(
                f"Payment for order {payment.order_id} conflicts with an existing one: "
                f"{exc.orig}"
            ) from exc

        stored = await self.get_payment(payment.id)
        assert stored is not None
        return stored

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        async with self._session_factory() as session:
            row = await self._load_payment(session, payment_id)
            return _payment_from_row(row) if row else None

    async def _one_payment(self, *conditions: Any) -> Optional[Payment]:
        async with self._session_factory() as session:
            result = await session.execute(select(PaymentRow).where(*conditions).limit(1))
            row = result.scalar_one_or_none()
            return _payment_from_row(row) if row else None

    async def get_payment_by_intent(self, gateway_payment_intent_id: str) -> Optional[Payment]:
        return await self._one_payment(
            PaymentRow.gateway_payment_intent_id == gateway_payment_intent_id
        )

    async def find_pending_payment(self, order_id: str) -> Optional[Payment]:
        return await self._one_payment(
            PaymentRow.order_id == order_id,
            PaymentRow.status == PaymentStatus.PENDING.value,
        )

    async def find_succeeded_payment(self, order_id: str) -> Optional[Payment]:
        return await self._one_payment(
            PaymentRow.order_id == order_id,
            PaymentRow.status.in_(SETTLED_STATUSES),
        )

    async def count_payments(self, order_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(PaymentRow).where(PaymentRow.order_id == order_id)
            )
            return int(result.scalar_one())

    async def list_payments(
        self, user_id: Optional[str] = None, order_id: Optional[str] = None
    ) -> List[Payment]:
        stmt = select(PaymentRow)
        if user_id is not None:
            stmt = stmt.where(PaymentRow.user_id == user_id)
        if order_id is not None:
            stmt = stmt.where(PaymentRow.order_id == order_id)
        stmt = stmt.order_by(PaymentRow.created_at.desc(), PaymentRow.attempt.desc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_payment_from_row(row) for row in result.scalars()]

    async def list_stale_pending_payments(self, created_before: datetime) -> List[Payment]:
        stmt = (
            select(PaymentRow)
            .where(
                PaymentRow.status == PaymentStatus.PENDING.value,
                PaymentRow.created_at < created_before,
            )
            .order_by(PaymentRow.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_payment_from_row(row) for row in result.scalars()]

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle_payment_succeeded(self, payment_id: str) -> Tuple[Order, Payment]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._transition_payment(
                        session,
                        payment_id,
                        PaymentStatus.PENDING,
                        {"status": PaymentStatus.SUCCEEDED.value},
                    )
                    payment_row = await self._load_payment(session, payment_id)
                    await self._transition_order(
                        session,
                        payment_row.order_id,
                        OrderStatus.PENDING_PAYMENT,
                        {"status": OrderStatus.PAID.value},
                    )
                    order_row = await self._load_order(session, payment_row.order_id)
                    now = utcnow()
                    session.add_all(
                        EnrollmentActivationRow(
                            order_id=order_row.id,
                            enrollment_id=item.enrollment_id,
                            dispatched=False,
                            created_at=now,
                        )
                        for item in order_row.line_items
                    )
                    self._record_payment_event(
                        session,
                        payment_row,
                        "payment.succeeded",
                        {"amount": payment_row.amount_cents, "order_status": "PAID"},
                    )
                return _order_from_row(order_row), _payment_from_row(payment_row)
        except IntegrityError as exc:
            raise ConflictError(f"Payment {payment_id} could not be settled: {exc.orig}") from exc

    async def settle_payment_failed(self, payment_id: str, reason: str) -> Payment:
        async with self._session_factory() as session:
            async with session.begin():
                await self._transition_payment(
                    session,
                    payment_id,
                    PaymentStatus.PENDING,
                    {"status": PaymentStatus.FAILED.value, "failure_reason": reason},
                )
                payment_row = await self._load_payment(session, payment_id)
                self._record_payment_event(
                    session, payment_row, "payment.failed", {"reason": reason}
                )
            return _payment_from_row(payment_row)

    async def record_refund(
        self, order_id: str, payment_id: str, refund_id: str, refunded_amount: int
    ) -> Tuple[Order, Payment]:
        async with self._session_factory() as session:
            async with session.begin():
                await self._transition_order(
                    session, order_id, OrderStatus.PAID, {"status": OrderStatus.REFUNDED.value}
                )
                result = await session.execute(
                    update(PaymentRow)
                    .where(
                        PaymentRow.id == payment_id,
                        PaymentRow.order_id == order_id,
                        PaymentRow.status == PaymentStatus.SUCCEEDED.value,
                    )
                    .values(
                        status=PaymentStatus.REFUNDED.value,
                        refund_id=refund_id,
                        refunded_amount_cents=refunded_amount,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConflictError(
                        f"Payment {payment_id} is not a succeeded payment of order {order_id}"
                    )
                payment_row = await self._load_payment(session, payment_id)
                order_row = await self._load_order(session, order_id)
                self._record_payment_event(
                    session,
                    payment_row,
                    "payment.refunded",
                    {"refund_id": refund_id, "amount": refunded_amount},
                )
            return _order_from_row(order_row), _payment_from_row(payment_row)

    # ------------------------------------------------------------------
    # Activation outbox
    # ------------------------------------------------------------------

    async def pending_activations(self, order_id: str) -> List[EnrollmentActivation]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(EnrollmentActivationRow)
                .where(
                    EnrollmentActivationRow.order_id == order_id,
                    EnrollmentActivationRow.dispatched.is_(False),
                )
                .order_by(EnrollmentActivationRow.enrollment_id)
            )
            return [
                EnrollmentActivation(
                    order_id=row.order_id, enrollment_id=row.enrollment_id, dispatched=False
                )
                for row in result.scalars()
            ]

    async def mark_activation_dispatched(self, order_id: str, enrollment_id: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(EnrollmentActivationRow)
                    .where(
                        EnrollmentActivationRow.order_id == order_id,
                        EnrollmentActivationRow.enrollment_id == enrollment_id,
                    )
                    .values(dispatched=True, dispatched_at=utcnow())
                    .execution_options(synchronize_session=False)
                )

    async def list_payment_events(self, payment_id: str) -> List[Dict[str, Any]]:
        """Audit trail of a payment, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentEventRow)
                .where(PaymentEventRow.payment_id == payment_id)
                .order_by(PaymentEventRow.id)
            )
            return [
                {
                    "event_type": row.event_type,
                    "event_data": row.event_data,
                    "created_at": _aware(row.created_at).isoformat(),
                }
                for row in result.scalars()
            ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ping(self) -> None:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))
