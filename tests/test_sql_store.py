"""
SQL store tests on sqlite through aiosqlite.
"""
from datetime import timedelta
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio

from enrollment_checkout.core.orchestrator import CheckoutOrchestrator
from enrollment_checkout.database.connection import (
    build_engine,
    build_session_factory,
    drop_db,
    init_db,
)
from enrollment_checkout.domain.errors import ConflictError
from enrollment_checkout.domain.models import (
    Order,
    OrderLineItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    PricingBreakdown,
    new_id,
    utcnow,
)
from enrollment_checkout.store.base import EnrollmentClaimConflict
from enrollment_checkout.store.sql import SqlCheckoutStore

USER_ID = "user_1"


@pytest_asyncio.fixture
async def sql_store(tmp_path) -> AsyncGenerator[SqlCheckoutStore, Any]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    await init_db(engine)
    yield SqlCheckoutStore(build_session_factory(engine))
    await drop_db(engine)
    await engine.dispose()


def make_order(*enrollment_ids: str) -> Order:
    items = [
        OrderLineItem(position=i, enrollment_id=eid, unit_price=100)
        for i, eid in enumerate(enrollment_ids, start=1)
    ]
    subtotal = 100 * len(items)
    return Order.new(
        USER_ID,
        items,
        PricingBreakdown(subtotal=subtotal, discount=0, tax=0, total=subtotal, currency="USD"),
    )


def make_payment(order: Order, attempt: int = 1, intent: str = None) -> Payment:
    return Payment(
        id=new_id(),
        order_id=order.id,
        user_id=order.user_id,
        amount=order.total,
        currency=order.currency,
        status=PaymentStatus.PENDING,
        gateway_payment_intent_id=intent or f"pi_{order.id}_{attempt}",
        attempt=attempt,
    )


@pytest.mark.integration
class TestSqlOrders:
    @pytest.mark.asyncio
    async def test_create_and_read_back(self, sql_store: SqlCheckoutStore) -> None:
        order = make_order("e1", "e2")

        stored = await sql_store.create_order(order)

        assert stored.id == order.id
        assert stored.enrollment_ids == ["e1", "e2"]
        assert stored.total == 200
        assert stored.created_at.tzinfo is not None
        assert await sql_store.claimed_enrollments(["e1", "e3"]) == {"e1": order.id}

    @pytest.mark.asyncio
    async def test_claimed_enrollment_conflicts(self, sql_store: SqlCheckoutStore) -> None:
        first = await sql_store.create_order(make_order("e1"))

        with pytest.raises(EnrollmentClaimConflict) as exc_info:
            await sql_store.create_order(make_order("e1", "e2"))

        assert exc_info.value.claims == {"e1": first.id}
        assert await sql_store.list_orders(USER_ID) == [first]

    @pytest.mark.asyncio
    async def test_cancel_releases_claims(self, sql_store: SqlCheckoutStore) -> None:
        order = await sql_store.create_order(make_order("e1"))

        cancelled = await sql_store.cancel_order(order.id)

        assert cancelled.status is OrderStatus.CANCELLED
        assert await sql_store.claimed_enrollments(["e1"]) == {}
        await sql_store.create_order(make_order("e1"))

    @pytest.mark.asyncio
    async def test_cancel_refused_with_pending_payment(self, sql_store: SqlCheckoutStore) -> None:
        order = await sql_store.create_order(make_order("e1"))
        await sql_store.add_pending_payment(make_payment(order))

        with pytest.raises(ConflictError):
            await sql_store.cancel_order(order.id)

        assert (await sql_store.get_order(order.id)).status is OrderStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_list_orders_by_status(self, sql_store: SqlCheckoutStore) -> None:
        kept = await sql_store.create_order(make_order("e1"))
        dropped = await sql_store.create_order(make_order("e2"))
        await sql_store.cancel_order(dropped.id)

        pending = await sql_store.list_orders(USER_ID, status=OrderStatus.PENDING_PAYMENT)

        assert [o.id for o in pending] == [kept.id]


@pytest.mark.integration
class TestSqlPayments:
    @pytest.mark.asyncio
    async def test_one_pending_payment_per_order(self, sql_store: SqlCheckoutStore) -> None:
        order = await sql_store.create_order(make_order("e1"))
        await sql_store.add_pending_payment(make_payment(order, 1))

        with pytest.raises(ConflictError):
            await sql_store.add_pending_payment(make_payment(order, 2))

        assert await sql_store.count_payments(order.id) == 1

    @pytest.mark.asyncio
    async def test_settle_succeeded_writes_outbox(self, sql_store: SqlCheckoutStore) -> None:
        order = await sql_store.create_order(make_order("e1", "e2"))
        payment = await sql_store.add_pending_payment(make_payment(order))

        paid, settled = await sql_store.settle_payment_succeeded(payment.id)

        assert paid.status is OrderStatus.PAID
        assert settled.status is PaymentStatus.SUCCEEDED
        pending = await sql_store.pending_activations(order.id)
        assert [a.enrollment_id for a in pending] == ["e1", "e2"]

        await sql_store.mark_activation_dispatched(order.id, "e1")
        assert [a.enrollment_id for a in await sql_store.pending_activations(order.id)] == ["e2"]

    @pytest.mark.asyncio
    async def test_second_settlement_conflicts(self, sql_store: SqlCheckoutStore) -> None:
        order = await sql_store.create_order(make_order("e1"))
        payment = await sql_store.add_pending_payment(make_payment(order))
        await sql_store.settle_payment_succeeded(payment.id)

        with pytest.raises(ConflictError) as exc_info:
            await sql_store.settle_payment_succeeded(payment.id)

        assert exc_info.value.current == "succeeded"

    @pytest.mark.asyncio
    async def test_failed_then_retry(self, sql_store: SqlCheckoutStore) -> None:
        order = await sql_store.create_order(make_order("e1"))
        first = await sql_store.add_pending_payment(make_payment(order, 1))

        failed = await sql_store.settle_payment_failed(first.id, "card_declined")
        retry = await sql_store.add_pending_payment(make_payment(order, 2))

        assert failed.failure_reason == "card_declined"
        assert (await sql_store.find_pending_payment(order.id)).id == retry.id

    @pytest.mark.asyncio
    async def test_refund_records_amount(self, sql_store: SqlCheckoutStore) -> None:
        order = await sql_store.create_order(make_order("e1"))
        payment = await sql_store.add_pending_payment(make_payment(order))
        await sql_store.settle_payment_succeeded(payment.id)

        refunded_order, refunded = await sql_store.record_refund(order.id, payment.id, "re_1", 40)

        assert refunded_order.status is OrderStatus.REFUNDED
        assert refunded.status is PaymentStatus.REFUNDED
        assert refunded.refunded_amount == 40
        assert (await sql_store.find_succeeded_payment(order.id)).id == payment.id

    @pytest.mark.asyncio
    async def test_payment_events_audit_trail(self, sql_store: SqlCheckoutStore) -> None:
        order = await sql_store.create_order(make_order("e1"))
        payment = await sql_store.add_pending_payment(make_payment(order))
        await sql_store.settle_payment_succeeded(payment.id)
        await sql_store.record_refund(order.id, payment.id, "re_1", 100)

        events = await sql_store.list_payment_events(payment.id)

        assert [e["event_type"] for e in events] == [
            "payment.created",
            "payment.succeeded",
            "payment.refunded",
        ]

    @pytest.mark.asyncio
    async def test_stale_pending_payments(self, sql_store: SqlCheckoutStore) -> None:
        order = await sql_store.create_order(make_order("e1"))
        payment = await sql_store.add_pending_payment(make_payment(order))

        assert await sql_store.list_stale_pending_payments(utcnow() - timedelta(hours=1)) == []
        stale = await sql_store.list_stale_pending_payments(utcnow() + timedelta(hours=1))
        assert [p.id for p in stale] == [payment.id]


@pytest.mark.integration
class TestOrchestratorOnSql:
    @pytest.mark.asyncio
    async def test_checkout_flow(
        self, sql_store, gateway, enrollments, promotions, cache, locks, publisher
    ) -> None:
        orchestrator = CheckoutOrchestrator(
            store=sql_store,
            gateway=gateway,
            enrollments=enrollments,
            promotions=promotions,
            cache=cache,
            locks=locks,
            event_publisher=publisher,
        )
        order = await orchestrator.create_order(USER_ID, ["e1", "e2"], "SPRING10")
        checkout = await orchestrator.initiate_checkout(order.id)
        gateway.settle(checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED)

        result = await orchestrator.confirm_payment(
            order.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
        )
        replay = await orchestrator.confirm_payment(
            order.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
        )

        assert result.order.status is OrderStatus.PAID
        assert result.order.total == 112
        assert replay.already_processed
        assert sorted(enrollments.activations) == [("e1", order.id), ("e2", order.id)]
        assert await sql_store.pending_activations(order.id) == []
