"""
Stripe implementation of the payment gateway adapter.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotent intent and refund creation
- Mapping of Stripe statuses and errors onto the checkout vocabulary
"""
import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type
from urllib.parse import urlencode

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from enrollment_checkout.config import Settings
from enrollment_checkout.domain.errors import GatewayUnavailableError
from enrollment_checkout.domain.models import Order, PaymentStatus
from enrollment_checkout.gateway.base import (
    CheckoutHandle,
    PaymentGatewayAdapter,
    PaymentOutcome,
    RefundReceipt,
)
from enrollment_checkout.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMIT = "rate_limit"


# First match wins; anything unlisted counts as transient
_ERROR_TYPES: Tuple[Tuple[Tuple[Type[Exception], ...], StripeErrorType], ...] = (
    ((stripe.RateLimitError,), StripeErrorType.RATE_LIMIT),
    ((stripe.APIConnectionError, stripe.APIError), StripeErrorType.TRANSIENT),
    (
        (
            stripe.CardError,
            stripe.InvalidRequestError,
            stripe.AuthenticationError,
            stripe.PermissionError,
        ),
        StripeErrorType.PERMANENT,
    ),
)


class StripeError(Exception):
    """A Stripe failure after classification. Never leaves this module."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type is not StripeErrorType.PERMANENT


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling Stripe after a run of transient failures.

    Once open, calls fail fast until ``timeout`` seconds have passed since
    the last failure; then trial calls are let through and
    ``success_threshold`` of them in a row close the circuit again. A
    failure while half-open reopens it. Permanent errors (declines, bad
    requests) say nothing about Stripe's health and are not counted.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = BreakerState.CLOSED
        self._clock = clock

    async def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking SDK call in a worker thread if the circuit admits it."""
        self._admit()
        try:
            result = await asyncio.to_thread(func, *args, **kwargs)
        except stripe.StripeError as e:
            if StripeGateway.classify_error(e) is not StripeErrorType.PERMANENT:
                self.on_failure()
            raise
        self.on_success()
        return result

    def _admit(self) -> None:
        if self.state is not BreakerState.OPEN:
            return
        cooled = (
            self.last_failure_time is not None
            and self._clock() - self.last_failure_time > self.timeout
        )
        if not cooled:
            raise StripeError("Circuit breaker is open", StripeErrorType.TRANSIENT)
        self.success_count = 0
        self._move_to(BreakerState.HALF_OPEN)

    def _move_to(self, state: BreakerState) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state.value)
        logger.info("circuit_breaker_state_changed", state=state.value)

    def on_success(self) -> None:
        self.failure_count = 0
        if self.state is BreakerState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._move_to(BreakerState.CLOSED)

    def on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        tripped = self.failure_count >= self.failure_threshold
        if self.state is BreakerState.HALF_OPEN or (
            tripped and self.state is BreakerState.CLOSED
        ):
            logger.warning("circuit_breaker_tripped", failure_count=self.failure_count)
            self._move_to(BreakerState.OPEN)


def _outcome(intent: Any) -> PaymentOutcome:
    return PaymentOutcome(
        status=_map_intent_status(intent),
        amount=getattr(intent, "amount", None),
        canceled=getattr(intent, "status", None) == "canceled",
    )


def _map_intent_status(intent: Any) -> PaymentStatus:
    status = getattr(intent, "status", None)
    if status == "succeeded":
        return PaymentStatus.SUCCEEDED
    if status == "canceled":
        return PaymentStatus.FAILED
    # A fresh intent also sits in requires_payment_method; only a recorded
    # payment error makes it a failure.
    if status == "requires_payment_method" and getattr(intent, "last_payment_error", None):
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


class StripeGateway(PaymentGatewayAdapter):
    """
    PaymentIntent-based gateway.

    Retries transient and rate-limit errors with exponential backoff;
    Stripe idempotency keys make the retried create/refund calls safe.
    Every failure that survives the retries is raised as
    GatewayUnavailableError, except refund refusals which come back as a
    declined RefundReceipt.
    """

    name = "stripe"

    def __init__(
        self,
        settings: Settings,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.return_url = settings.checkout_return_url
        self.max_attempts = settings.gateway_retry_max_attempts
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.gateway_circuit_failure_threshold,
            timeout=settings.gateway_circuit_reset_seconds,
        )
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=16)

        logger.info(
            "stripe_gateway_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def classify_error(error: stripe.StripeError) -> StripeErrorType:
        for error_classes, error_type in _ERROR_TYPES:
            if isinstance(error, error_classes):
                return error_type
        return StripeErrorType.TRANSIENT

    async def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        """
        Invoke one SDK function with retry, breaker and metrics.

        Raises:
            StripeError: Classified failure after retries are exhausted
        """
        started = time.perf_counter()
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(
                    lambda e: isinstance(e, StripeError) and e.retryable
                ),
                stop=stop_after_attempt(self.max_attempts),
                wait=self.retry_wait,
                reraise=True,
            ):
                with attempt:
                    try:
                        result = await self.circuit_breaker.call(func, **kwargs)
                    except stripe.StripeError as e:
                        error_type = self.classify_error(e)
                        metrics.record_gateway_error(error_type.value)
                        logger.error(
                            "stripe_api_error",
                            operation=operation,
                            error_type=error_type.value,
                            error_code=getattr(e, "code", None),
                            error_message=str(e),
                            attempt=attempt.retry_state.attempt_number,
                        )
                        raise StripeError(str(e), error_type, original_error=e) from e
        except StripeError:
            metrics.record_gateway_call(operation, "error", time.perf_counter() - started)
            raise
        metrics.record_gateway_call(operation, "ok", time.perf_counter() - started)
        return result

    def _redirect_url(self, order_id: str, intent_id: str) -> str:
        separator = "&" if "?" in self.return_url else "?"
        query = urlencode({"order_id": order_id, "payment_intent": intent_id})
        return f"{self.return_url}{separator}{query}"

    async def create_checkout_session(
        self,
        order: Order,
        payment_method_ref: Optional[str],
        installment_plan_ref: Optional[str],
        idempotency_key: str,
    ) -> CheckoutHandle:
        logger.info(
            "creating_payment_intent",
            order_id=order.id,
            amount_cents=order.total,
            currency=order.currency,
            idempotency_key=idempotency_key,
        )
        params: Dict[str, Any] = {
            "amount": order.total,
            "currency": order.currency.lower(),
            "idempotency_key": idempotency_key,
            "metadata": {"order_id": order.id, "user_id": order.user_id},
        }
        if installment_plan_ref:
            params["metadata"]["installment_plan_ref"] = installment_plan_ref
        if payment_method_ref:
            params["payment_method"] = payment_method_ref
        else:
            params["automatic_payment_methods"] = {"enabled": True}

        try:
            intent = await self._call("create_payment_intent", stripe.PaymentIntent.create, **params)
        except StripeError as e:
            raise GatewayUnavailableError("create_checkout_session", str(e)) from e

        logger.info(
            "payment_intent_created",
            order_id=order.id,
            payment_intent_id=intent.id,
            status=intent.status,
        )
        return CheckoutHandle(
            redirect_url=self._redirect_url(order.id, intent.id),
            gateway_payment_intent_id=intent.id,
            client_secret=getattr(intent, "client_secret", None),
        )

    async def get_payment_outcome(self, gateway_payment_intent_id: str) -> PaymentOutcome:
        logger.info("retrieving_payment_intent", payment_intent_id=gateway_payment_intent_id)
        try:
            intent = await self._call(
                "retrieve_payment_intent",
                stripe.PaymentIntent.retrieve,
                id=gateway_payment_intent_id,
            )
        except StripeError as e:
            raise GatewayUnavailableError("get_payment_outcome", str(e)) from e
        return _outcome(intent)

    async def create_refund(
        self,
        gateway_payment_intent_id: str,
        amount: int,
        reason: Optional[str],
        idempotency_key: str,
    ) -> RefundReceipt:
        logger.info(
            "creating_refund",
            payment_intent_id=gateway_payment_intent_id,
            amount_cents=amount,
        )
        params: Dict[str, Any] = {
            "payment_intent": gateway_payment_intent_id,
            "amount": amount,
            "idempotency_key": idempotency_key,
        }
        if reason:
            params["metadata"] = {"reason": reason}

        try:
            refund = await self._call("create_refund", stripe.Refund.create, **params)
        except StripeError as e:
            if e.error_type is StripeErrorType.PERMANENT:
                logger.warning(
                    "refund_rejected",
                    payment_intent_id=gateway_payment_intent_id,
                    error_message=str(e),
                )
                return RefundReceipt(refund_id=None, status="failed")
            raise GatewayUnavailableError("create_refund", str(e)) from e

        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return RefundReceipt(refund_id=refund.id, status=refund.status)

    async def cancel_payment_intent(self, gateway_payment_intent_id: str) -> PaymentOutcome:
        logger.info("canceling_payment_intent", payment_intent_id=gateway_payment_intent_id)
        try:
            intent = await self._call(
                "cancel_payment_intent",
                stripe.PaymentIntent.cancel,
                intent=gateway_payment_intent_id,
            )
        except StripeError as e:
            if e.error_type is not StripeErrorType.PERMANENT:
                raise GatewayUnavailableError("cancel_payment_intent", str(e)) from e
            # Stripe refuses to cancel a paid or already canceled intent;
            # report where it actually ended up
            logger.warning(
                "payment_intent_not_cancelable",
                payment_intent_id=gateway_payment_intent_id,
                error_message=str(e),
            )
            return await self.get_payment_outcome(gateway_payment_intent_id)
        return _outcome(intent)

    async def ping(self) -> None:
        try:
            await self._call("balance", stripe.Balance.retrieve)
        except StripeError as e:
            raise GatewayUnavailableError("ping", str(e)) from e
