"""
Tests for the order lifecycle orchestrator.

Covers order capture, checkout, confirmation, cancellation and refunds
against the memory store and the fake gateway.
"""
from typing import Tuple

import pytest

from enrollment_checkout.core import events
from enrollment_checkout.domain.errors import (
    GatewayUnavailableError,
    InvalidEnrollmentError,
    InvalidPromoCodeError,
    InvalidRefundAmountError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    OrderNotPayableError,
    PaymentIntentMismatchError,
    RefundDeclinedError,
)
from enrollment_checkout.domain.models import (
    CheckoutResult,
    Order,
    OrderStatus,
    PaymentStatus,
)

USER_ID = "user_1"


async def paid_order(orchestrator, gateway) -> Tuple[Order, CheckoutResult]:
    order = await orchestrator.create_order(USER_ID, ["e1", "e2"])
    checkout = await orchestrator.initiate_checkout(order.id)
    gateway.settle(checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED)
    result = await orchestrator.confirm_payment(
        order.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
    )
    return result.order, checkout


@pytest.mark.unit
class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_create_order_snapshots_prices(self, orchestrator, publisher) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1", "e2"])

        assert order.status is OrderStatus.PENDING_PAYMENT
        assert [item.unit_price for item in order.line_items] == [50, 75]
        assert [item.position for item in order.line_items] == [1, 2]
        assert order.subtotal == 125
        assert order.total == 125
        assert order.currency == "USD"
        assert len(publisher.of_type(events.ORDER_CREATED)) == 1

    @pytest.mark.asyncio
    async def test_duplicate_ids_collapse_to_one_line(self, orchestrator) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1", "e1", "e2"])

        assert order.enrollment_ids == ["e1", "e2"]

    @pytest.mark.asyncio
    async def test_promo_code_discount(self, orchestrator) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1", "e2"], promo_code="spring10")

        assert order.discount == 13
        assert order.total == 112
        assert order.promo_code == "SPRING10"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["NOPE", "EXPIRED"])
    async def test_invalid_promo_code_rejected(self, orchestrator, store, code) -> None:
        with pytest.raises(InvalidPromoCodeError):
            await orchestrator.create_order(USER_ID, ["e1"], promo_code=code)

        assert await store.list_orders(USER_ID) == []

    @pytest.mark.asyncio
    async def test_every_offending_enrollment_is_reported(self, orchestrator) -> None:
        with pytest.raises(InvalidEnrollmentError) as exc_info:
            await orchestrator.create_order(USER_ID, ["e1", "e9", "missing", "e_active"])

        problems = exc_info.value.problems
        assert set(problems) == {"e9", "missing", "e_active"}
        assert problems["e9"] == "belongs to another user"
        assert problems["missing"] == "not found"
        assert exc_info.value.http_status == 422

    @pytest.mark.asyncio
    async def test_empty_order_rejected(self, orchestrator) -> None:
        with pytest.raises(InvalidEnrollmentError):
            await orchestrator.create_order(USER_ID, [])

    @pytest.mark.asyncio
    async def test_enrollment_cannot_be_in_two_open_orders(self, orchestrator) -> None:
        first = await orchestrator.create_order(USER_ID, ["e1"])

        with pytest.raises(InvalidEnrollmentError) as exc_info:
            await orchestrator.create_order(USER_ID, ["e1", "e2"])

        assert exc_info.value.problems == {"e1": f"already in order {first.id}"}

    @pytest.mark.asyncio
    async def test_cancel_releases_enrollments(self, orchestrator) -> None:
        first = await orchestrator.create_order(USER_ID, ["e1"])
        await orchestrator.cancel_order(first.id)

        second = await orchestrator.create_order(USER_ID, ["e1"])

        assert second.id != first.id
        assert second.status is OrderStatus.PENDING_PAYMENT


@pytest.mark.unit
class TestCalculatePricing:
    @pytest.mark.asyncio
    async def test_quote_stores_nothing(self, orchestrator, store) -> None:
        quote = await orchestrator.calculate_pricing(["e1", "e2"], promo_code="FIVEOFF")

        assert quote.pricing.subtotal == 125
        assert quote.pricing.discount == 125
        assert quote.pricing.total == 0
        assert [item.enrollment_id for item in quote.line_items] == ["e1", "e2"]
        assert await store.list_orders(USER_ID) == []

    @pytest.mark.asyncio
    async def test_quote_ignores_claims(self, orchestrator) -> None:
        await orchestrator.create_order(USER_ID, ["e1"])

        quote = await orchestrator.calculate_pricing(["e1"], user_id=USER_ID)

        assert quote.pricing.total == 50


@pytest.mark.unit
class TestCheckout:
    @pytest.mark.asyncio
    async def test_checkout_records_pending_payment(self, orchestrator, store, gateway) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1", "e2"])

        result = await orchestrator.initiate_checkout(order.id, payment_method_ref="pm_card")

        assert result.order.status is OrderStatus.PENDING_PAYMENT
        assert result.payment.status is PaymentStatus.PENDING
        assert result.payment.amount == 125
        assert result.payment.attempt == 1
        assert result.payment.payment_method_ref == "pm_card"
        assert result.redirect_url.endswith(result.gateway_payment_intent_id)
        assert gateway.calls[0] == ("create_checkout_session", f"checkout:{order.id}:1")
        assert (await store.find_pending_payment(order.id)).id == result.payment.id

    @pytest.mark.asyncio
    async def test_unknown_order(self, orchestrator) -> None:
        with pytest.raises(OrderNotFoundError):
            await orchestrator.initiate_checkout("nope")

    @pytest.mark.asyncio
    async def test_second_checkout_while_pending_is_refused(self, orchestrator, store) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        await orchestrator.initiate_checkout(order.id)

        with pytest.raises(OrderNotPayableError):
            await orchestrator.initiate_checkout(order.id)

        payments = await store.list_payments(order_id=order.id)
        assert [p.status for p in payments] == [PaymentStatus.PENDING]

    @pytest.mark.asyncio
    async def test_gateway_failure_commits_nothing_and_retry_reuses_key(
        self, orchestrator, store, gateway
    ) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        gateway.fail_next("create_checkout_session")

        with pytest.raises(GatewayUnavailableError):
            await orchestrator.initiate_checkout(order.id)

        assert await store.count_payments(order.id) == 0
        assert (await store.get_order(order.id)).status is OrderStatus.PENDING_PAYMENT

        result = await orchestrator.initiate_checkout(order.id)

        keys = [key for op, key in gateway.calls if op == "create_checkout_session"]
        assert keys == [f"checkout:{order.id}:1", f"checkout:{order.id}:1"]
        assert result.payment.attempt == 1

    @pytest.mark.asyncio
    async def test_checkout_reprices_when_promotion_changes(
        self, orchestrator, promotions
    ) -> None:
        from enrollment_checkout.domain.models import Promotion, PromotionKind

        order = await orchestrator.create_order(USER_ID, ["e1", "e2"], promo_code="SPRING10")
        promotions.add(Promotion(code="SPRING10", kind=PromotionKind.PERCENT, value=2000))

        result = await orchestrator.initiate_checkout(order.id)

        assert result.order.discount == 25
        assert result.payment.amount == 100

    @pytest.mark.asyncio
    async def test_withdrawn_promotion_keeps_captured_discount(
        self, orchestrator, promotions
    ) -> None:
        from enrollment_checkout.domain.models import Promotion, PromotionKind

        order = await orchestrator.create_order(USER_ID, ["e1", "e2"], promo_code="SPRING10")
        promotions.add(
            Promotion(code="SPRING10", kind=PromotionKind.PERCENT, value=1000, active=False)
        )

        result = await orchestrator.initiate_checkout(order.id)

        assert result.order.discount == order.discount == 13
        assert result.order.promo_code == "SPRING10"
        assert result.payment.amount == 112


@pytest.mark.unit
class TestConfirmPayment:
    @pytest.mark.asyncio
    async def test_scenario_checkout_then_confirm_succeeded(
        self, orchestrator, gateway, enrollments, publisher
    ) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1", "e2"])
        checkout = await orchestrator.initiate_checkout(order.id)
        assert checkout.order.status is OrderStatus.PENDING_PAYMENT

        gateway.settle(checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED)
        result = await orchestrator.confirm_payment(
            order.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
        )

        assert result.order.status is OrderStatus.PAID
        assert result.payment.status is PaymentStatus.SUCCEEDED
        assert result.already_processed is False
        assert sorted(enrollments.activations) == [("e1", order.id), ("e2", order.id)]
        assert len(publisher.of_type(events.ORDER_PAID)) == 1

    @pytest.mark.asyncio
    async def test_scenario_confirm_failed_then_retry(self, orchestrator, gateway, store) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1", "e2"])
        first = await orchestrator.initiate_checkout(order.id)
        gateway.settle(first.gateway_payment_intent_id, PaymentStatus.FAILED)

        failed = await orchestrator.confirm_payment(
            order.id, first.gateway_payment_intent_id, PaymentStatus.FAILED
        )

        assert failed.order.status is OrderStatus.PENDING_PAYMENT
        assert failed.payment.status is PaymentStatus.FAILED
        assert failed.payment.failure_reason == "payment failed"

        second = await orchestrator.initiate_checkout(order.id)

        assert second.payment.status is PaymentStatus.PENDING
        assert second.payment.attempt == 2
        assert second.gateway_payment_intent_id != first.gateway_payment_intent_id
        assert await store.count_payments(order.id) == 2

    @pytest.mark.asyncio
    async def test_unverified_success_leaves_payment_pending(
        self, orchestrator, enrollments
    ) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        checkout = await orchestrator.initiate_checkout(order.id)

        result = await orchestrator.confirm_payment(
            order.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
        )

        assert result.order.status is OrderStatus.PENDING_PAYMENT
        assert result.payment.status is PaymentStatus.PENDING
        assert enrollments.activations == []

    @pytest.mark.asyncio
    async def test_gateway_outcome_wins_over_report(self, orchestrator, gateway) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        checkout = await orchestrator.initiate_checkout(order.id)
        gateway.settle(checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED)

        result = await orchestrator.confirm_payment(
            order.id, checkout.gateway_payment_intent_id, PaymentStatus.FAILED
        )

        assert result.order.status is OrderStatus.PAID
        assert result.payment.status is PaymentStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_trusted_confirmation_skips_gateway(self, orchestrator, gateway) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        checkout = await orchestrator.initiate_checkout(order.id)

        result = await orchestrator.confirm_payment(
            order.id, checkout.gateway_payment_intent_id, "succeeded", trusted=True
        )

        assert result.order.status is OrderStatus.PAID
        assert gateway.count("get_payment_outcome") == 0

    @pytest.mark.asyncio
    async def test_gateway_unreachable_changes_nothing(self, orchestrator, gateway, store) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        checkout = await orchestrator.initiate_checkout(order.id)
        gateway.fail_next("get_payment_outcome")

        with pytest.raises(GatewayUnavailableError):
            await orchestrator.confirm_payment(
                order.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
            )

        payment = await store.get_payment(checkout.payment.id)
        assert payment.status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_intent_is_mismatch(self, orchestrator) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])

        with pytest.raises(PaymentIntentMismatchError):
            await orchestrator.confirm_payment(order.id, "pi_unknown", PaymentStatus.SUCCEEDED)

    @pytest.mark.asyncio
    async def test_intent_of_another_order_is_mismatch(self, orchestrator) -> None:
        first = await orchestrator.create_order(USER_ID, ["e1"])
        second = await orchestrator.create_order(USER_ID, ["e2"])
        checkout = await orchestrator.initiate_checkout(first.id)

        with pytest.raises(PaymentIntentMismatchError):
            await orchestrator.confirm_payment(
                second.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
            )

    @pytest.mark.asyncio
    async def test_failed_activation_is_resent_on_replay(
        self, orchestrator, gateway, enrollments, store, mocker
    ) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        checkout = await orchestrator.initiate_checkout(order.id)
        gateway.settle(checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED)
        original_activate = enrollments.activate
        mocker.patch.object(
            enrollments, "activate", side_effect=ConnectionError("enrollment service down")
        )

        result = await orchestrator.confirm_payment(
            order.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
        )

        assert result.order.status is OrderStatus.PAID
        assert len(await store.pending_activations(order.id)) == 1

        mocker.patch.object(enrollments, "activate", side_effect=original_activate)
        replay = await orchestrator.confirm_payment(
            order.id, checkout.gateway_payment_intent_id, PaymentStatus.SUCCEEDED
        )

        assert replay.already_processed is True
        assert enrollments.activations == [("e1", order.id)]
        assert await store.pending_activations(order.id) == []


@pytest.mark.unit
class TestCancelOrder:
    @pytest.mark.asyncio
    async def test_cancel_pending_order(self, orchestrator, publisher) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])

        cancelled = await orchestrator.cancel_order(order.id)

        assert cancelled.status is OrderStatus.CANCELLED
        assert len(publisher.of_type(events.ORDER_CANCELLED)) == 1

    @pytest.mark.asyncio
    async def test_cancel_refused_while_payment_pending(self, orchestrator) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        await orchestrator.initiate_checkout(order.id)

        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.cancel_order(order.id)

    @pytest.mark.asyncio
    async def test_cancelled_order_rejects_every_mutation(self, orchestrator) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        await orchestrator.cancel_order(order.id)

        with pytest.raises(OrderNotPayableError):
            await orchestrator.initiate_checkout(order.id)
        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.cancel_order(order.id)
        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.refund(order.id)

    @pytest.mark.asyncio
    async def test_paid_order_cannot_be_cancelled(self, orchestrator, gateway) -> None:
        order, _ = await paid_order(orchestrator, gateway)

        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.cancel_order(order.id)


@pytest.mark.unit
class TestRefund:
    @pytest.mark.asyncio
    async def test_full_refund(self, orchestrator, gateway, publisher) -> None:
        order, checkout = await paid_order(orchestrator, gateway)

        result = await orchestrator.refund(order.id, reason="requested_by_customer")

        assert result.order.status is OrderStatus.REFUNDED
        assert result.payment.status is PaymentStatus.REFUNDED
        assert result.payment.refunded_amount == 125
        assert result.amount == 125
        assert result.refund_id == f"re_refund_{order.id}_{checkout.payment.id}"
        assert len(publisher.of_type(events.ORDER_REFUNDED)) == 1

    @pytest.mark.asyncio
    async def test_partial_refund_still_ends_refunded(self, orchestrator, gateway) -> None:
        order, _ = await paid_order(orchestrator, gateway)

        result = await orchestrator.refund(order.id, amount=25)

        assert result.order.status is OrderStatus.REFUNDED
        assert result.payment.refunded_amount == 25

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 126])
    async def test_refund_amount_bounds(self, orchestrator, gateway, amount) -> None:
        order, _ = await paid_order(orchestrator, gateway)

        with pytest.raises(InvalidRefundAmountError):
            await orchestrator.refund(order.id, amount=amount)

    @pytest.mark.asyncio
    async def test_declined_refund_leaves_order_paid(self, orchestrator, gateway, store) -> None:
        order, _ = await paid_order(orchestrator, gateway)
        gateway.decline_refunds = True

        with pytest.raises(RefundDeclinedError):
            await orchestrator.refund(order.id)

        assert (await store.get_order(order.id)).status is OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_refund_of_unpaid_order_rejected(self, orchestrator) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])

        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.refund(order.id)

    @pytest.mark.asyncio
    async def test_refunded_order_is_terminal(self, orchestrator, gateway) -> None:
        order, _ = await paid_order(orchestrator, gateway)
        await orchestrator.refund(order.id)

        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.refund(order.id)
        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.cancel_order(order.id)
        with pytest.raises(OrderNotPayableError):
            await orchestrator.initiate_checkout(order.id)


@pytest.mark.unit
class TestTotalsInvariant:
    @pytest.mark.asyncio
    async def test_total_identity_holds_through_lifecycle(self, orchestrator, gateway, store) -> None:
        order, _ = await paid_order(orchestrator, gateway)
        await orchestrator.refund(order.id, amount=10)

        for stored in await store.list_orders(USER_ID):
            assert stored.total == stored.subtotal - stored.discount + stored.tax
            assert stored.total >= 0


@pytest.mark.unit
class TestFailedPaymentIsVoided:
    @pytest.mark.asyncio
    async def test_failure_report_cancels_intent(self, orchestrator, gateway) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        checkout = await orchestrator.initiate_checkout(order.id)
        intent = checkout.gateway_payment_intent_id

        result = await orchestrator.confirm_payment(
            order.id, intent, PaymentStatus.FAILED, trusted=True
        )

        assert result.payment.status is PaymentStatus.FAILED
        assert gateway.intents[intent].canceled
        assert gateway.count("cancel_payment_intent") == 1

    @pytest.mark.asyncio
    async def test_paid_intent_wins_over_failure_report(
        self, orchestrator, gateway, enrollments
    ) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        checkout = await orchestrator.initiate_checkout(order.id)
        intent = checkout.gateway_payment_intent_id
        # Paid after the decline event was sent
        gateway.settle(intent, PaymentStatus.SUCCEEDED)

        result = await orchestrator.confirm_payment(
            order.id, intent, PaymentStatus.FAILED, trusted=True
        )

        assert result.order.status is OrderStatus.PAID
        assert result.payment.status is PaymentStatus.SUCCEEDED
        assert enrollments.activations == [("e1", order.id)]
        assert not gateway.intents[intent].canceled

    @pytest.mark.asyncio
    async def test_cancel_outage_leaves_payment_pending(self, orchestrator, gateway, store) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        checkout = await orchestrator.initiate_checkout(order.id)
        gateway.fail_next("cancel_payment_intent")

        with pytest.raises(GatewayUnavailableError):
            await orchestrator.confirm_payment(
                order.id, checkout.gateway_payment_intent_id, PaymentStatus.FAILED, trusted=True
            )

        payment = await store.get_payment(checkout.payment.id)
        assert payment.status is PaymentStatus.PENDING

        retried = await orchestrator.confirm_payment(
            order.id, checkout.gateway_payment_intent_id, PaymentStatus.FAILED, trusted=True
        )
        assert retried.payment.status is PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_already_canceled_intent_is_not_cancelled_again(
        self, orchestrator, gateway
    ) -> None:
        order = await orchestrator.create_order(USER_ID, ["e1"])
        checkout = await orchestrator.initiate_checkout(order.id)
        intent = checkout.gateway_payment_intent_id
        await gateway.cancel_payment_intent(intent)

        result = await orchestrator.confirm_payment(order.id, intent, PaymentStatus.FAILED)

        assert result.payment.status is PaymentStatus.FAILED
        assert gateway.count("cancel_payment_intent") == 1
