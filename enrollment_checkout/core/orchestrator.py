"""
Order lifecycle orchestrator.

Owns every order and payment mutation. Each state-changing operation:
1. Acquires the per-order lock (except create_order, which makes a new order)
2. Validates against the state machine
3. Calls the gateway where needed (nothing is written if it fails)
4. Commits through a conditional store write
5. Invalidates the affected views
6. Publishes a lifecycle event
7. Returns the authoritative result

confirm_payment is idempotent on the gateway payment-intent id: only the
call that finds the payment pending settles it; every later call replays
the stored outcome with already_processed=True. A replay changes no state
but drops the settled views again, so a retry after a failed invalidation
repairs the cache.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Union

import structlog

from enrollment_checkout.cache.invalidation import (
    CheckoutOperation,
    InvalidationTarget,
    confirmation_operation,
    invalidate_for,
)
from enrollment_checkout.cache.view_cache import ViewCache
from enrollment_checkout.core import events
from enrollment_checkout.core.events import CheckoutEvent, EventPublisher, LoggingEventPublisher
from enrollment_checkout.core.locks import OrderLocks
from enrollment_checkout.directory.base import EnrollmentDirectory, PromotionCatalog
from enrollment_checkout.domain.errors import (
    ConflictError,
    GatewayUnavailableError,
    InvalidEnrollmentError,
    InvalidPromoCodeError,
    InvalidRefundAmountError,
    InvalidStateTransitionError,
    OrderBusyError,
    OrderNotFoundError,
    OrderNotPayableError,
    PaymentIntentMismatchError,
    RefundDeclinedError,
)
from enrollment_checkout.domain.models import (
    CheckoutResult,
    ConfirmationResult,
    Enrollment,
    EnrollmentStatus,
    Order,
    OrderLineItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    PricingBreakdown,
    PricingQuote,
    Promotion,
    PromotionKind,
    RefundResult,
    new_id,
    utcnow,
)
from enrollment_checkout.domain.pricing import price_line_items
from enrollment_checkout.domain.state_machine import ensure_transition
from enrollment_checkout.gateway.base import PaymentGatewayAdapter, PaymentOutcome
from enrollment_checkout.monitoring.metrics import metrics
from enrollment_checkout.store.base import CheckoutStore, EnrollmentClaimConflict

logger = structlog.get_logger(__name__)


@dataclass
class ExpirySummary:
    """Result of one stale-payment sweep."""

    examined: int = 0
    expired: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "examined": self.examined,
            "expired": self.expired,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class CheckoutOrchestrator:
    """
    Checkout core: orders, payment attempts, confirmation, cancel and refund.

    Collaborators are injected so that the same orchestrator runs against
    memory doubles in tests and against SQL, Redis and Stripe in production.
    """

    def __init__(
        self,
        store: CheckoutStore,
        gateway: PaymentGatewayAdapter,
        enrollments: EnrollmentDirectory,
        promotions: PromotionCatalog,
        cache: ViewCache,
        locks: OrderLocks,
        event_publisher: Optional[EventPublisher] = None,
        currency: str = "USD",
        tax_rate_bps: int = 0,
        pending_payment_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.enrollments = enrollments
        self.promotions = promotions
        self.cache = cache
        self.locks = locks
        self.event_publisher = event_publisher or LoggingEventPublisher()
        self.currency = currency
        self.tax_rate_bps = tax_rate_bps
        self.pending_payment_ttl = pending_payment_ttl
        self.clock = clock

        logger.info(
            "checkout_orchestrator_initialized",
            gateway=gateway.name,
            currency=currency,
            tax_rate_bps=tax_rate_bps,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_order(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def _promotion(self, promo_code: Optional[str]) -> Optional[Promotion]:
        if not promo_code:
            return None
        promotion = await self.promotions.get_promotion(promo_code)
        if promotion is None or not promotion.active:
            raise InvalidPromoCodeError(promo_code)
        return promotion

    async def _price(
        self, line_items: List[OrderLineItem], promo_code: Optional[str]
    ) -> PricingBreakdown:
        promotion = await self._promotion(promo_code)
        return price_line_items(
            line_items,
            currency=self.currency,
            tax_rate_bps=self.tax_rate_bps,
            promotion=promotion,
        )

    async def _reprice(self, order: Order) -> PricingBreakdown:
        """
        Price an existing order from its snapshotted line items.

        A promo code withdrawn since the order was captured does not void
        the order: the discount it had at capture is honoured as a fixed
        amount.
        """
        promotion: Optional[Promotion] = None
        if order.promo_code:
            promotion = await self.promotions.get_promotion(order.promo_code)
            if promotion is None or not promotion.active:
                logger.info(
                    "order_promotion_withdrawn",
                    order_id=order.id,
                    promo_code=order.promo_code,
                    discount=order.discount,
                )
                promotion = Promotion(
                    code=order.promo_code, kind=PromotionKind.FIXED, value=order.discount
                )
        return price_line_items(
            order.line_items,
            currency=self.currency,
            tax_rate_bps=self.tax_rate_bps,
            promotion=promotion,
        )

    async def _resolve_line_items(
        self,
        enrollment_ids: Iterable[str],
        user_id: Optional[str],
        check_claims: bool,
    ) -> List[OrderLineItem]:
        """
        Look up enrollments and snapshot their prices into line items.

        Raises:
            InvalidEnrollmentError: Listing every offending enrollment
        """
        unique_ids = list(dict.fromkeys(enrollment_ids))
        if not unique_ids:
            raise InvalidEnrollmentError({"enrollment_ids": "at least one enrollment is required"})

        problems: Dict[str, str] = {}
        found: List[Enrollment] = []
        for enrollment_id in unique_ids:
            enrollment = await self.enrollments.get_enrollment(enrollment_id)
            if enrollment is None:
                problems[enrollment_id] = "not found"
            elif user_id is not None and enrollment.user_id != user_id:
                problems[enrollment_id] = "belongs to another user"
            elif enrollment.status is not EnrollmentStatus.PENDING:
                problems[enrollment_id] = f"enrollment is {enrollment.status.value}"
            else:
                found.append(enrollment)

        if check_claims:
            claims = await self.store.claimed_enrollments(e.id for e in found)
            for enrollment_id, order_id in claims.items():
                problems[enrollment_id] = f"already in order {order_id}"

        if problems:
            raise InvalidEnrollmentError(problems)

        return [
            OrderLineItem(
                position=position,
                enrollment_id=enrollment.id,
                unit_price=enrollment.price,
                description=enrollment.description,
            )
            for position, enrollment in enumerate(found, start=1)
        ]

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

    async def _publish(self, event_type: str, order: Order, **payload: object) -> None:
        await self.event_publisher.publish(
            CheckoutEvent(
                event_type=event_type,
                order_id=order.id,
                user_id=order.user_id,
                payload=dict(payload),
            )
        )

    async def _dispatch_activations(self, order_id: str) -> int:
        """
        Send owed activation signals and mark each one dispatched.

        A failed signal stays owed and is retried by the next confirmation
        of the same order.
        """
        dispatched = 0
        for activation in await self.store.pending_activations(order_id):
            try:
                await self.enrollments.activate(activation.enrollment_id, order_id)
            except Exception as e:
                logger.error(
                    "enrollment_activation_failed",
                    order_id=order_id,
                    enrollment_id=activation.enrollment_id,
                    error=str(e),
                )
                continue
            await self.store.mark_activation_dispatched(order_id, activation.enrollment_id)
            dispatched += 1
        return dispatched

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_order(
        self,
        user_id: str,
        enrollment_ids: Iterable[str],
        promo_code: Optional[str] = None,
    ) -> Order:
        """
        Capture a PENDING_PAYMENT order for the user's enrollments.

        Raises:
            InvalidEnrollmentError: Empty, unknown, foreign or already-ordered enrollments
            InvalidPromoCodeError: Unknown or inactive promo code
        """
        started = time.perf_counter()
        logger.info("create_order_started", user_id=user_id, promo_code=promo_code)

        line_items = await self._resolve_line_items(enrollment_ids, user_id, check_claims=True)
        pricing = await self._price(line_items, promo_code)
        order = Order.new(user_id=user_id, line_items=line_items, pricing=pricing)

        try:
            order = await self.store.create_order(order)
        except EnrollmentClaimConflict as e:
            logger.warning("create_order_claim_conflict", user_id=user_id, claims=e.claims)
            raise InvalidEnrollmentError(
                {eid: f"already in order {oid}" for eid, oid in e.claims.items()}
            ) from e

        await self._invalidate(CheckoutOperation.CREATE_ORDER, order)
        await self._publish(events.ORDER_CREATED, order, total=order.total)

        metrics.record_order_created(order.currency, order.total)
        metrics.record_operation_duration("create_order", time.perf_counter() - started)
        logger.info(
            "order_created",
            order_id=order.id,
            user_id=user_id,
            items=len(order.line_items),
            total=order.total,
        )
        return order

    async def calculate_pricing(
        self,
        enrollment_ids: Iterable[str],
        promo_code: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> PricingQuote:
        """Price a prospective order. Nothing is stored."""
        line_items = await self._resolve_line_items(enrollment_ids, user_id, check_claims=False)
        pricing = await self._price(line_items, promo_code)
        return PricingQuote(line_items=line_items, pricing=pricing)

    async def initiate_checkout(
        self,
        order_id: str,
        payment_method_ref: Optional[str] = None,
        installment_plan_ref: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Open a payment attempt at the gateway and record it as pending.

        Raises:
            OrderNotFoundError: Unknown order
            OrderNotPayableError: Order not PENDING_PAYMENT or a payment is in flight
            GatewayUnavailableError: Gateway failed; nothing was recorded
            OrderBusyError: Per-order lock not acquired in time
        """
        started = time.perf_counter()
        logger.info("checkout_started", order_id=order_id)

        try:
            async with self.locks.hold(order_id):
                order = await self._require_order(order_id)
                if order.status is not OrderStatus.PENDING_PAYMENT:
                    metrics.record_checkout_attempt("not_payable")
                    raise OrderNotPayableError(
                        order_id, f"order is {order.status.value}", status=order.status.value
                    )
                if await self.store.find_pending_payment(order_id) is not None:
                    metrics.record_checkout_attempt("not_payable")
                    raise OrderNotPayableError(
                        order_id, "a payment is already in progress", status=order.status.value
                    )

                # Authoritative amount from the snapshotted line items
                pricing = await self._reprice(order)
                if pricing != order.pricing:
                    logger.info(
                        "order_repriced",
                        order_id=order_id,
                        previous_total=order.total,
                        total=pricing.total,
                    )
                    try:
                        order = await self.store.update_order_pricing(order_id, pricing)
                    except ConflictError as e:
                        raise OrderNotPayableError(order_id, str(e), status=e.current) from e

                attempt = await self.store.count_payments(order_id) + 1
                idempotency_key = f"checkout:{order_id}:{attempt}"
                try:
                    handle = await self.gateway.create_checkout_session(
                        order, payment_method_ref, installment_plan_ref, idempotency_key
                    )
                except GatewayUnavailableError:
                    metrics.record_checkout_attempt("gateway_unavailable")
                    logger.error("checkout_gateway_failed", order_id=order_id, attempt=attempt)
                    raise

                now = self.clock()
                payment = Payment(
                    id=new_id(),
                    order_id=order.id,
                    user_id=order.user_id,
                    amount=order.total,
                    currency=order.currency,
                    status=PaymentStatus.PENDING,
                    gateway_payment_intent_id=handle.gateway_payment_intent_id,
                    attempt=attempt,
                    payment_method_ref=payment_method_ref,
                    installment_plan_ref=installment_plan_ref,
                    redirect_url=handle.redirect_url,
                    created_at=now,
                    updated_at=now,
                )
                try:
                    payment = await self.store.add_pending_payment(payment)
                except ConflictError as e:
                    metrics.record_checkout_attempt("not_payable")
                    logger.warning(
                        "checkout_payment_conflict",
                        order_id=order_id,
                        payment_intent_id=handle.gateway_payment_intent_id,
                        error=str(e),
                    )
                    raise OrderNotPayableError(order_id, str(e), status=e.current) from e

                await self._invalidate(CheckoutOperation.INITIATE_CHECKOUT, order)
        except OrderBusyError:
            metrics.record_checkout_attempt("busy")
            raise

        await self._publish(
            events.CHECKOUT_INITIATED,
            order,
            payment_id=payment.id,
            payment_intent_id=payment.gateway_payment_intent_id,
            attempt=attempt,
        )
        metrics.record_checkout_attempt("created")
        metrics.record_operation_duration("initiate_checkout", time.perf_counter() - started)
        logger.info(
            "checkout_initiated",
            order_id=order_id,
            payment_id=payment.id,
            payment_intent_id=payment.gateway_payment_intent_id,
            attempt=attempt,
            amount=payment.amount,
        )
        return CheckoutResult(
            order=order,
            payment=payment,
            redirect_url=handle.redirect_url,
            gateway_payment_intent_id=handle.gateway_payment_intent_id,
            client_secret=handle.client_secret,
        )

    async def confirm_payment(
        self,
        order_id: str,
        gateway_payment_intent_id: str,
        reported_status: Union[PaymentStatus, str],
        trusted: bool = False,
    ) -> ConfirmationResult:
        """
        Apply the outcome of a payment attempt.

        Args:
            order_id: Order the payment belongs to
            gateway_payment_intent_id: Idempotency key of the confirmation
            reported_status: Outcome reported by the caller; anything other
                than succeeded is a failure report
            trusted: Skip verification with the gateway (signed webhooks)

        Raises:
            OrderNotFoundError: Unknown order
            PaymentIntentMismatchError: Intent not tied to this order
            GatewayUnavailableError: Verification or void call failed; nothing changed
            OrderBusyError: Per-order lock not acquired in time
        """
        started = time.perf_counter()
        reported = PaymentStatus(reported_status)
        logger.info(
            "payment_confirmation_started",
            order_id=order_id,
            payment_intent_id=gateway_payment_intent_id,
            reported_status=reported.value,
            trusted=trusted,
        )

        async with self.locks.hold(order_id):
            order = await self._require_order(order_id)
            payment = await self.store.get_payment_by_intent(gateway_payment_intent_id)
            if payment is None:
                raise PaymentIntentMismatchError(
                    order_id, gateway_payment_intent_id, "no payment records this intent"
                )
            if payment.order_id != order_id:
                raise PaymentIntentMismatchError(
                    order_id, gateway_payment_intent_id, "intent belongs to another order"
                )

            if payment.status.is_terminal:
                return await self._replay(order, payment)

            outcome = reported
            verified: Optional[PaymentOutcome] = None
            if not trusted:
                verified = await self.gateway.get_payment_outcome(gateway_payment_intent_id)
                if verified.status.is_terminal:
                    outcome = verified.status
                    if outcome is not reported:
                        logger.warning(
                            "payment_outcome_disagrees_with_report",
                            order_id=order_id,
                            payment_intent_id=gateway_payment_intent_id,
                            reported_status=reported.value,
                            gateway_status=outcome.value,
                        )
                elif reported is PaymentStatus.SUCCEEDED:
                    logger.info(
                        "payment_confirmation_unverified",
                        order_id=order_id,
                        payment_intent_id=gateway_payment_intent_id,
                    )
                    metrics.record_confirmation("pending", replay=False)
                    return ConfirmationResult(order=order, payment=payment)

            if outcome is not PaymentStatus.SUCCEEDED:
                voided = await self._void_intent(payment, verified)
                if voided.status is PaymentStatus.SUCCEEDED:
                    logger.warning(
                        "payment_succeeded_despite_failure_report",
                        order_id=order_id,
                        payment_intent_id=gateway_payment_intent_id,
                        reported_status=reported.value,
                    )
                    outcome = PaymentStatus.SUCCEEDED

            if outcome is PaymentStatus.SUCCEEDED:
                result = await self._settle_succeeded(order, payment)
            else:
                reason = f"payment {reported.value}"
                if outcome is not reported:
                    reason = f"gateway reported {outcome.value}"
                result = await self._settle_failed(
                    order,
                    payment,
                    reason=reason,
                    operation=CheckoutOperation.CONFIRM_PAYMENT_FAILED,
                    event_type=events.PAYMENT_FAILED,
                )

        metrics.record_operation_duration("confirm_payment", time.perf_counter() - started)
        return result

    async def _void_intent(
        self, payment: Payment, known: Optional[PaymentOutcome] = None
    ) -> PaymentOutcome:
        """
        Make sure a payment about to be recorded as failed can no longer be
        charged. A declined intent stays payable at the gateway until it is
        cancelled.
        """
        if known is not None and known.canceled:
            return known
        return await self.gateway.cancel_payment_intent(payment.gateway_payment_intent_id)

    async def _settle_succeeded(self, order: Order, payment: Payment) -> ConfirmationResult:
        try:
            order, payment = await self.store.settle_payment_succeeded(payment.id)
        except ConflictError as e:
            return await self._after_lost_race(order, payment, e, OrderStatus.PAID)

        activated = await self._dispatch_activations(order.id)
        await self._invalidate(CheckoutOperation.CONFIRM_PAYMENT_SUCCEEDED, order)
        await self._publish(
            events.ORDER_PAID,
            order,
            payment_id=payment.id,
            payment_intent_id=payment.gateway_payment_intent_id,
            amount=payment.amount,
        )
        metrics.record_confirmation("succeeded", replay=False)
        logger.info(
            "order_paid",
            order_id=order.id,
            payment_id=payment.id,
            amount=payment.amount,
            activations=activated,
        )
        return ConfirmationResult(order=order, payment=payment)

    async def _settle_failed(
        self,
        order: Order,
        payment: Payment,
        reason: str,
        operation: CheckoutOperation,
        event_type: str,
    ) -> ConfirmationResult:
        try:
            payment = await self.store.settle_payment_failed(payment.id, reason)
        except ConflictError as e:
            return await self._after_lost_race(order, payment, e, OrderStatus.PENDING_PAYMENT)

        await self._invalidate(operation, order)
        await self._publish(event_type, order, payment_id=payment.id, reason=reason)
        metrics.record_confirmation("failed", replay=False)
        logger.info(
            "payment_failed",
            order_id=order.id,
            payment_id=payment.id,
            reason=reason,
        )
        return ConfirmationResult(order=order, payment=payment)

    async def _after_lost_race(
        self, order: Order, payment: Payment, error: ConflictError, target: OrderStatus
    ) -> ConfirmationResult:
        # Another process settled the payment between our read and write
        current_payment = await self.store.get_payment(payment.id)
        current_order = await self._require_order(order.id)
        if current_payment is not None and current_payment.status.is_terminal:
            return await self._replay(current_order, current_payment)
        logger.error(
            "payment_settlement_conflict",
            order_id=order.id,
            payment_id=payment.id,
            error=str(error),
        )
        raise InvalidStateTransitionError(
            attempted=target.value, current=current_order.status.value, reason=str(error)
        ) from error

    async def _replay(self, order: Order, payment: Payment) -> ConfirmationResult:
        redelivered = 0
        if payment.status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
            redelivered = await self._dispatch_activations(order.id)
        operation = confirmation_operation(payment.status)
        if operation is not None:
            await self._invalidate(operation, order)
        metrics.record_confirmation(payment.status.value, replay=True)
        logger.info(
            "payment_confirmation_replayed",
            order_id=order.id,
            payment_id=payment.id,
            payment_status=payment.status.value,
            redelivered_activations=redelivered,
        )
        return ConfirmationResult(order=order, payment=payment, already_processed=True)

    async def cancel_order(self, order_id: str) -> Order:
        """
        Cancel an unpaid order and release its enrollments.

        Raises:
            OrderNotFoundError: Unknown order
            InvalidStateTransitionError: Not PENDING_PAYMENT, or a payment is in flight
        """
        logger.info("cancel_order_started", order_id=order_id)
        async with self.locks.hold(order_id):
            order = await self._require_order(order_id)
            ensure_transition(order.status, OrderStatus.CANCELLED)
            if await self.store.find_pending_payment(order_id) is not None:
                raise InvalidStateTransitionError(
                    attempted=OrderStatus.CANCELLED.value,
                    current=order.status.value,
                    reason="a payment is in progress",
                )
            try:
                order = await self.store.cancel_order(order_id)
            except ConflictError as e:
                current = await self._require_order(order_id)
                raise InvalidStateTransitionError(
                    attempted=OrderStatus.CANCELLED.value,
                    current=current.status.value,
                    reason=str(e),
                ) from e

            await self._invalidate(CheckoutOperation.CANCEL_ORDER, order)

        await self._publish(events.ORDER_CANCELLED, order)
        logger.info("order_cancelled", order_id=order_id, user_id=order.user_id)
        return order

    async def refund(
        self,
        order_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a paid order, fully or partially. Either way it ends REFUNDED.

        Raises:
            OrderNotFoundError: Unknown order
            InvalidStateTransitionError: Order not PAID
            InvalidRefundAmountError: Amount not in (0, paid amount]
            RefundDeclinedError: Gateway refused; nothing changed
            GatewayUnavailableError: Gateway unreachable; nothing changed
        """
        logger.info("refund_started", order_id=order_id, amount=amount)
        async with self.locks.hold(order_id):
            order = await self._require_order(order_id)
            ensure_transition(order.status, OrderStatus.REFUNDED)
            payment = await self.store.find_succeeded_payment(order_id)
            if payment is None or payment.status is not PaymentStatus.SUCCEEDED:
                raise InvalidStateTransitionError(
                    attempted=OrderStatus.REFUNDED.value,
                    current=order.status.value,
                    reason="no captured payment",
                )

            refund_amount = payment.amount if amount is None else amount
            if not 0 < refund_amount <= payment.amount:
                raise InvalidRefundAmountError(refund_amount, payment.amount)

            idempotency_key = f"refund:{order_id}:{payment.id}"
            try:
                receipt = await self.gateway.create_refund(
                    payment.gateway_payment_intent_id, refund_amount, reason, idempotency_key
                )
            except GatewayUnavailableError:
                metrics.record_refund("gateway_unavailable")
                raise
            if not receipt.accepted:
                metrics.record_refund("declined")
                logger.warning(
                    "refund_declined",
                    order_id=order_id,
                    payment_id=payment.id,
                    gateway_status=receipt.status,
                )
                raise RefundDeclinedError(order_id, receipt.status)

            refund_id = receipt.refund_id or idempotency_key
            try:
                order, payment = await self.store.record_refund(
                    order_id, payment.id, refund_id, refund_amount
                )
            except ConflictError as e:
                current = await self._require_order(order_id)
                raise InvalidStateTransitionError(
                    attempted=OrderStatus.REFUNDED.value,
                    current=current.status.value,
                    reason=str(e),
                ) from e

            await self._invalidate(CheckoutOperation.REFUND, order)

        await self._publish(
            events.ORDER_REFUNDED, order, refund_id=refund_id, amount=refund_amount
        )
        metrics.record_refund("refunded")
        logger.info(
            "order_refunded",
            order_id=order_id,
            refund_id=refund_id,
            amount=refund_amount,
            gateway_status=receipt.status,
        )
        return RefundResult(order=order, payment=payment, refund_id=refund_id, amount=refund_amount)

    # ------------------------------------------------------------------
    # Stale payment expiry
    # ------------------------------------------------------------------

    async def expire_stale_payments(self, now: Optional[datetime] = None) -> ExpirySummary:
        """
        Close pending payments older than the configured TTL.

        The gateway is asked first: a payment it reports paid is settled as
        paid. Any other intent is cancelled so it can no longer be charged,
        then the payment is marked failed, with reason "expired" when the
        gateway still had it pending. Payments whose gateway
        or lock could not be reached stay pending for the next sweep.
        """
        cutoff = (now or self.clock()) - self.pending_payment_ttl
        stale = await self.store.list_stale_pending_payments(cutoff)
        summary = ExpirySummary(examined=len(stale))
        logger.info("payment_expiry_started", cutoff=cutoff.isoformat(), candidates=len(stale))

        for candidate in stale:
            try:
                resolution = await self._expire_payment(candidate)
            except (GatewayUnavailableError, OrderBusyError, InvalidStateTransitionError) as e:
                summary.errors.append(candidate.id)
                logger.warning(
                    "payment_expiry_deferred",
                    payment_id=candidate.id,
                    order_id=candidate.order_id,
                    error=str(e),
                )
                continue
            setattr(summary, resolution, getattr(summary, resolution) + 1)
            if resolution != "skipped":
                metrics.record_expired_payment(resolution)

        logger.info("payment_expiry_completed", **summary.to_dict())
        return summary

    async def _expire_payment(self, candidate: Payment) -> str:
        async with self.locks.hold(candidate.order_id):
            payment = await self.store.get_payment(candidate.id)
            if payment is None or payment.status.is_terminal:
                return "skipped"
            order = await self._require_order(payment.order_id)

            outcome = await self.gateway.get_payment_outcome(payment.gateway_payment_intent_id)
            if outcome.status is not PaymentStatus.SUCCEEDED:
                voided = await self._void_intent(payment, outcome)
                if voided.status is PaymentStatus.SUCCEEDED:
                    outcome = voided
            if outcome.status is PaymentStatus.SUCCEEDED:
                result = await self._settle_succeeded(order, payment)
                return "skipped" if result.already_processed else "succeeded"

            if outcome.status.is_terminal:
                result = await self._settle_failed(
                    order,
                    payment,
                    reason=f"gateway reported {outcome.status.value}",
                    operation=CheckoutOperation.EXPIRE_PAYMENT,
                    event_type=events.PAYMENT_FAILED,
                )
                return "skipped" if result.already_processed else "failed"

            result = await self._settle_failed(
                order,
                payment,
                reason="expired",
                operation=CheckoutOperation.EXPIRE_PAYMENT,
                event_type=events.PAYMENT_EXPIRED,
            )
            return "skipped" if result.already_processed else "expired"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order:
        return await self._require_order(order_id)

    async def list_orders(self, user_id: str, status: Optional[OrderStatus] = None) -> List[Order]:
        return await self.store.list_orders(user_id, status=status)

    async def list_payments(self, user_id: str) -> List[Payment]:
        return await self.store.list_payments(user_id=user_id)

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        return await self.enrollments.get_enrollment(enrollment_id)

    async def list_enrollments(self, user_id: str) -> List[Enrollment]:
        return await self.enrollments.list_enrollments(user_id)
