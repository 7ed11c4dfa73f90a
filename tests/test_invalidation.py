"""
Tests for the invalidation router and the views each operation drops.
"""
from unittest.mock import AsyncMock

import pytest

from enrollment_checkout.cache import keys
from enrollment_checkout.cache.invalidation import (
    INVALIDATION_TABLE,
    CheckoutOperation,
    InvalidationTarget,
    invalidate_for,
    resolve_keys,
)
from enrollment_checkout.cache.keys import KeyFamily
from enrollment_checkout.cache.view_cache import ViewCache
from enrollment_checkout.domain.errors import CacheInvalidationError, InvalidStateTransitionError
from enrollment_checkout.domain.models import OrderStatus, PaymentStatus

USER_ID = "user_1"

TARGET = InvalidationTarget(user_id=USER_ID, order_id="o1", enrollment_ids=("e1", "e2"))


@pytest.mark.unit
class TestInvalidationTable:
    def test_every_operation_has_a_row(self) -> None:
        assert set(INVALIDATION_TABLE) == set(CheckoutOperation)

    def test_confirm_success_drops_every_family(self) -> None:
        assert INVALIDATION_TABLE[CheckoutOperation.CONFIRM_PAYMENT_SUCCEEDED] == frozenset(
            KeyFamily
        )

    def test_list_families_include_filtered_variants(self) -> None:
        exact, prefixes = resolve_keys(CheckoutOperation.CANCEL_ORDER, TARGET)

        assert sorted(exact) == ["order-detail:o1", "order-list:user_1"]
        assert prefixes == ["order-list:user_1:"]

    def test_create_drops_enrollment_details(self) -> None:
        exact, _ = resolve_keys(CheckoutOperation.CREATE_ORDER, TARGET)

        assert "enrollment-detail:e1" in exact
        assert "enrollment-detail:e2" in exact

    def test_failed_confirmation_leaves_lists_of_orders(self) -> None:
        exact, prefixes = resolve_keys(CheckoutOperation.CONFIRM_PAYMENT_FAILED, TARGET)

        assert sorted(exact) == ["order-detail:o1", "payment-list:user_1"]
        assert prefixes == ["payment-list:user_1:"]


@pytest.mark.unit
class TestInvalidateFor:
    @pytest.mark.asyncio
    async def test_drops_base_and_variant_keys(self, cache: ViewCache, cache_backend) -> None:
        await cache.set(keys.order_list(USER_ID), [])
        await cache.set(keys.order_list(USER_ID, "PAID"), [])
        await cache.set(keys.order_list("someone_else"), [])
        await cache.set(keys.order_detail("o1"), {})

        await invalidate_for(cache, CheckoutOperation.CANCEL_ORDER, TARGET)

        assert list(cache_backend.keys()) == [keys.order_list("someone_else")]

    @pytest.mark.asyncio
    async def test_user_id_sharing_a_prefix_is_untouched(
        self, cache: ViewCache, cache_backend
    ) -> None:
        await cache.set(keys.order_list("u1"), [])
        await cache.set(keys.order_list("u1:x"), [{"id": "o9"}])
        await cache.set(keys.order_list("u1:x", "PAID"), [])

        target = InvalidationTarget(user_id="u1", order_id="o1")
        await invalidate_for(cache, CheckoutOperation.CANCEL_ORDER, target)

        assert sorted(cache_backend.keys()) == sorted(
            [keys.order_list("u1:x"), keys.order_list("u1:x", "PAID")]
        )

    @pytest.mark.asyncio
    async def test_backend_failure_raises_cache_invalidation_error(self) -> None:
        backend = AsyncMock()
        backend.delete.side_effect = ConnectionError("redis down")
        cache = ViewCache(backend)

        with pytest.raises(CacheInvalidationError) as exc_info:
            await invalidate_for(cache, CheckoutOperation.REFUND, TARGET)

        assert exc_info.value.http_status == 503
        assert "order-detail:o1" in exc_info.value.details["keys"]


@pytest.mark.integration
class TestOperationsInvalidateViews:
    """Each committed mutation leaves no stale view behind."""

    async def _warm(self, cache: ViewCache, order_id: str, enrollment_ids) -> None:
        await cache.set(keys.order_list(USER_ID), [{"stale": True}])
        await cache.set(keys.order_list(USER_ID, "PENDING_PAYMENT"), [{"stale": True}])
        await cache.set(keys.order_detail(order_id), {"stale": True})
        await cache.set(keys.payment_list(USER_ID), [{"stale": True}])
        await cache.set(keys.enrollment_list(USER_ID), [{"stale": True}])
        for eid in enrollment_ids:
            await cache.set(keys.enrollment_detail(eid), {"stale": True})

    @pytest.mark.asyncio
    async def test_confirm_success_drops_all_views(self, orchestrator, gateway, cache) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1", "e2"])
        checkout = await orchestrator.initiate_checkout(order.id)
        gateway.settle(checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED)
        await self._warm(cache, order.id, order.enrollment_ids)

        await orchestrator.confirm_payment(
            order.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
        )

        assert await cache.get(keys.order_list(USER_ID)) is None
        assert await cache.get(keys.order_list(USER_ID, "PENDING_PAYMENT")) is None
        assert await cache.get(keys.order_detail(order.id)) is None
        assert await cache.get(keys.payment_list(USER_ID)) is None
        assert await cache.get(keys.enrollment_list(USER_ID)) is None
        assert await cache.get(keys.enrollment_detail("e1")) is None

    @pytest.mark.asyncio
    async def test_checkout_keeps_enrollment_views(self, orchestrator, cache) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        await self._warm(cache, order.id, order.enrollment_ids)

        await orchestrator.initiate_checkout(order.id)

        assert await cache.get(keys.order_detail(order.id)) is None
        assert await cache.get(keys.order_list(USER_ID)) is None
        assert await cache.get(keys.enrollment_list(USER_ID)) == [{"stale": True}]

    @pytest.mark.asyncio
    async def test_failed_mutation_invalidates_nothing(self, orchestrator, cache) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        await orchestrator.cancel_order(order.id)
        await self._warm(cache, order.id, order.enrollment_ids)

        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.cancel_order(order.id)

        assert await cache.get(keys.order_detail(order.id)) == {"stale": True}

    @pytest.mark.asyncio
    async def test_reads_after_mutation_are_fresh(self, orchestrator, cache) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])

        async def load():
            return (await orchestrator.get_order(order.id)).to_dict()

        before = await cache.get_or_load(keys.order_detail(order.id), load)
        await orchestrator.cancel_order(order.id)
        after = await cache.get_or_load(keys.order_detail(order.id), load)

        assert before["status"] == OrderStatus.PENDING_PAYMENT.value
        assert after["status"] == OrderStatus.CANCELLED.value
