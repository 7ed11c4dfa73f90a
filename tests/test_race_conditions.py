"""
Race condition tests for concurrent requests on the same order.

Tests per-order locking and the store's conditional writes under
concurrent load.
"""
import asyncio

import pytest

from enrollment_checkout.core.orchestrator import CheckoutOrchestrator
from enrollment_checkout.domain.errors import (
    InvalidStateTransitionError,
    OrderNotPayableError,
)
from enrollment_checkout.domain.models import OrderStatus, PaymentStatus

USER_ID = "user_1"


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_cancel_and_checkout_exactly_one_wins(
        self, orchestrator, store
    ) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1", "e2"])

        results = await asyncio.gather(
            orchestrator.cancel_order(order.id),
            orchestrator.initiate_checkout(order.id),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], (InvalidStateTransitionError, OrderNotPayableError))

        final = await store.get_order(order.id)
        pending = await store.find_pending_payment(order.id)
        if final.status is OrderStatus.CANCELLED:
            assert pending is None
        else:
            assert final.status is OrderStatus.PENDING_PAYMENT
            assert pending is not None

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_checkouts_create_one_pending_payment(
        self, orchestrator, store
    ) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])

        results = await asyncio.gather(
            *(orchestrator.initiate_checkout(order.id) for _ in range(10)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(
            isinstance(r, OrderNotPayableError) for r in results if isinstance(r, Exception)
        )
        assert await store.count_payments(order.id) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_confirmations_settle_once(
        self, orchestrator, gateway, enrollments
    ) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1", "e2"])
        checkout = await orchestrator.initiate_checkout(order.id)
        gateway.settle(checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED)

        results = await asyncio.gather(
            *(
                orchestrator.confirm_payment(
                    order.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
                )
                for _ in range(10)
            )
        )

        assert sum(1 for r in results if not r.already_processed) == 1
        assert all(r.order.status is OrderStatus.PAID for r in results)
        assert len(enrollments.activations) == 2

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_store_refuses_second_settlement_without_lock(
        self,
        store,
        gateway,
        enrollments,
        promotions,
        cache,
    ) -> None:
        """Two orchestrators with separate locks still settle a payment once."""
        from enrollment_checkout.core.locks import LocalOrderLocks

        first = CheckoutOrchestrator(
            store, gateway, enrollments, promotions, cache, LocalOrderLocks()
        )
        second = CheckoutOrchestrator(
            store, gateway, enrollments, promotions, cache, LocalOrderLocks()
        )
        order = await first.create_order(USER_ID, ["e1"])
        checkout = await first.initiate_checkout(order.id)
        gateway.settle(checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED)

        results = await asyncio.gather(
            first.confirm_payment(order.id, checkout.gateway_payment_intent_id, "succeeded"),
            second.confirm_payment(order.id, checkout.gateway_payment_intent_id, "succeeded"),
        )

        assert sorted(r.already_processed for r in results) == [False, True]
        assert enrollments.activations.count(("e1", order.id)) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_different_orders_do_not_contend(self, orchestrator, locks) -> None:
        orders = [
            await orchestrator.create_order(USER_ID, [eid]) for eid in ("e1", "e2", "e3")
        ]

        results = await asyncio.gather(
            *(orchestrator.initiate_checkout(order.id) for order in orders)
        )

        assert len({r.gateway_payment_intent_id for r in results}) == 3
        assert locks.active_keys() == 0
