"""
Tests for idempotent payment confirmation.

The gateway payment-intent id is the idempotency key: only the first
confirmation settles the payment; later ones replay the stored outcome.
"""
import pytest

from enrollment_checkout.cache import keys
from enrollment_checkout.domain.errors import CacheInvalidationError
from enrollment_checkout.domain.models import OrderStatus, PaymentStatus

USER_ID = "user_1"


async def checked_out(orchestrator, gateway, outcome=PaymentStatus.SUCCEEDED):
    order = await orchestrator.create_order(USER_ID, ["e1", "e2"])
    checkout = await orchestrator.initiate_checkout(order.id)
    gateway.settle(checkout.gateway_payment_intent_id, outcome)
    return order, checkout


@pytest.mark.unit
class TestConfirmationIdempotency:
    @pytest.mark.asyncio
    async def test_repeated_confirm_replays_paid_order(
        self, orchestrator, gateway, enrollments, store
    ) -> None:
        order, checkout = await checked_out(orchestrator, gateway)
        intent = checkout.gateway_payment_intent_id

        first = await orchestrator.confirm_payment(order.id, intent, PaymentStatus.SUCCEEDED)
        activations_after_first = list(enrollments.activations)
        second = await orchestrator.confirm_payment(order.id, intent, PaymentStatus.SUCCEEDED)

        assert first.already_processed is False
        assert second.already_processed is True
        assert second.order.status is OrderStatus.PAID
        assert second.order.to_dict() == first.order.to_dict()
        assert second.payment.to_dict() == first.payment.to_dict()
        assert enrollments.activations == activations_after_first
        assert len(enrollments.activations) == 2
        assert await store.count_payments(order.id) == 1

    @pytest.mark.asyncio
    async def test_replay_does_not_consult_gateway(self, orchestrator, gateway) -> None:
        order, checkout = await checked_out(orchestrator, gateway)
        intent = checkout.gateway_payment_intent_id
        await orchestrator.confirm_payment(order.id, intent, PaymentStatus.SUCCEEDED)
        lookups = gateway.count("get_payment_outcome")

        await orchestrator.confirm_payment(order.id, intent, PaymentStatus.SUCCEEDED)

        assert gateway.count("get_payment_outcome") == lookups

    @pytest.mark.asyncio
    async def test_replay_of_failed_payment(self, orchestrator, gateway) -> None:
        order, checkout = await checked_out(orchestrator, gateway, PaymentStatus.FAILED)
        intent = checkout.gateway_payment_intent_id
        await orchestrator.confirm_payment(order.id, intent, PaymentStatus.FAILED)

        # A late success report for a failed attempt changes nothing
        replay = await orchestrator.confirm_payment(order.id, intent, PaymentStatus.SUCCEEDED)

        assert replay.already_processed is True
        assert replay.payment.status is PaymentStatus.FAILED
        assert replay.order.status is OrderStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_replay_after_refund(self, orchestrator, gateway) -> None:
        order, checkout = await checked_out(orchestrator, gateway)
        intent = checkout.gateway_payment_intent_id
        await orchestrator.confirm_payment(order.id, intent, PaymentStatus.SUCCEEDED)
        await orchestrator.refund(order.id)

        replay = await orchestrator.confirm_payment(order.id, intent, PaymentStatus.SUCCEEDED)

        assert replay.already_processed is True
        assert replay.order.status is OrderStatus.REFUNDED
        assert replay.payment.status is PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_replay_drops_views_again(self, orchestrator, gateway, cache) -> None:
        order, checkout = await checked_out(orchestrator, gateway)
        intent = checkout.gateway_payment_intent_id
        await orchestrator.confirm_payment(order.id, intent, PaymentStatus.SUCCEEDED)
        await cache.set(keys.order_detail(order.id), {"status": "PENDING_PAYMENT"})
        await cache.set(keys.enrollment_list(USER_ID), [{"status": "PENDING"}])

        replay = await orchestrator.confirm_payment(order.id, intent, PaymentStatus.SUCCEEDED)

        assert replay.already_processed is True
        assert await cache.get(keys.order_detail(order.id)) is None
        assert await cache.get(keys.enrollment_list(USER_ID)) is None

    @pytest.mark.asyncio
    async def test_retry_repairs_failed_invalidation(
        self, orchestrator, gateway, cache, cache_backend, enrollments, monkeypatch
    ) -> None:
        order, checkout = await checked_out(orchestrator, gateway)
        intent = checkout.gateway_payment_intent_id
        await cache.set(keys.order_detail(order.id), {"status": "PENDING_PAYMENT"})
        real_delete = cache_backend.delete
        deletes = []

        async def delete_failing_once(*doomed):
            deletes.append(doomed)
            if len(deletes) == 1:
                raise ConnectionError("redis down")
            await real_delete(*doomed)

        monkeypatch.setattr(cache_backend, "delete", delete_failing_once)

        with pytest.raises(CacheInvalidationError):
            await orchestrator.confirm_payment(order.id, intent, PaymentStatus.SUCCEEDED)
        assert await cache.get(keys.order_detail(order.id)) == {"status": "PENDING_PAYMENT"}

        retry = await orchestrator.confirm_payment(order.id, intent, PaymentStatus.SUCCEEDED)

        assert retry.already_processed is True
        assert retry.order.status is OrderStatus.PAID
        assert await cache.get(keys.order_detail(order.id)) is None
        assert len(enrollments.activations) == 2

    @pytest.mark.asyncio
    async def test_replay_of_pending_payment_leaves_views(self, orchestrator, cache) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        checkout = await orchestrator.initiate_checkout(order.id)
        await cache.set(keys.order_detail(order.id), {"marker": True})

        # The gateway still reports the intent as processing
        result = await orchestrator.confirm_payment(
            order.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
        )

        assert result.payment.status is PaymentStatus.PENDING
        assert await cache.get(keys.order_detail(order.id)) == {"marker": True}

    @pytest.mark.asyncio
    async def test_gateway_refund_key_is_stable(self, orchestrator, gateway) -> None:
        order, checkout = await checked_out(orchestrator, gateway)
        await orchestrator.confirm_payment(
            order.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
        )

        await orchestrator.refund(order.id)

        assert ("create_refund", f"refund:{order.id}:{checkout.payment.id}") in gateway.calls
