"""HTTP client for the checkout API."""
from typing import Any, Dict, Iterable, List, Optional, Union

import httpx
import structlog

from enrollment_checkout.core.orchestrator import ExpirySummary
from enrollment_checkout.domain.errors import ERRORS_BY_CODE, CheckoutError
from enrollment_checkout.domain.models import (
    CheckoutResult,
    ConfirmationResult,
    Enrollment,
    Order,
    OrderLineItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    PricingBreakdown,
    PricingQuote,
    RefundResult,
)

logger = structlog.get_logger(__name__)


def error_from_payload(payload: Dict[str, Any], http_status: int) -> CheckoutError:
    """
    Rebuild the server-side exception from an error body.

    Known codes come back as their own class with message and details
    intact; anything else is a plain CheckoutError carrying the status.
    """
    body = payload.get("error") or {}
    code = body.get("code")
    message = body.get("message") or f"HTTP {http_status}"
    details = body.get("details") or {}

    cls = ERRORS_BY_CODE.get(code)
    if cls is None:
        error = CheckoutError(message, **details)
        error.error_code = code or CheckoutError.error_code
        error.http_status = http_status
        return error

    # Subclass constructors take domain arguments; restore the wire form instead
    error = cls.__new__(cls)
    CheckoutError.__init__(error, message, **details)
    for name, value in details.items():
        setattr(error, name, value)
    return error


def _checkout_result(data: Dict[str, Any]) -> CheckoutResult:
    return CheckoutResult(
        order=Order.from_dict(data["order"]),
        payment=Payment.from_dict(data["payment"]),
        redirect_url=data["redirect_url"],
        gateway_payment_intent_id=data["gateway_payment_intent_id"],
        client_secret=data.get("client_secret"),
    )


def _pricing_quote(data: Dict[str, Any]) -> PricingQuote:
    return PricingQuote(
        line_items=[OrderLineItem.from_dict(item) for item in data["line_items"]],
        pricing=PricingBreakdown(
            subtotal=data["subtotal"],
            discount=data["discount"],
            tax=data["tax"],
            total=data["total"],
            currency=data["currency"],
            promo_code=data.get("promo_code"),
        ),
    )


class CheckoutApiClient:
    """
    Checkout backend reached over HTTP.

    Mirrors the orchestrator's operations so a CheckoutSession can run on
    either. Error responses are raised as the matching CheckoutError
    subclass.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._client.request(method, path, **kwargs)
        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
                error = error_from_payload(payload, response.status_code)
                logger.info(
                    "checkout_api_error",
                    method=method,
                    path=path,
                    status_code=response.status_code,
                    error_code=error.error_code,
                )
                raise error
            response.raise_for_status()
        return response.json()

    async def create_order(
        self, user_id: str, enrollment_ids: Iterable[str], promo_code: Optional[str] = None
    ) -> Order:
        data = await self._request(
            "POST",
            "/orders",
            json={
                "user_id": user_id,
                "enrollment_ids": list(enrollment_ids),
                "promo_code": promo_code,
            },
        )
        return Order.from_dict(data)

    async def calculate_pricing(
        self,
        enrollment_ids: Iterable[str],
        promo_code: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> PricingQuote:
        data = await self._request(
            "POST",
            "/orders/calculate",
            json={
                "enrollment_ids": list(enrollment_ids),
                "promo_code": promo_code,
                "user_id": user_id,
            },
        )
        return _pricing_quote(data)

    async def initiate_checkout(
        self,
        order_id: str,
        payment_method_ref: Optional[str] = None,
        installment_plan_ref: Optional[str] = None,
    ) -> CheckoutResult:
        data = await self._request(
            "POST",
            f"/orders/{order_id}/checkout",
            json={
                "payment_method_ref": payment_method_ref,
                "installment_plan_ref": installment_plan_ref,
            },
        )
        return _checkout_result(data)

    async def confirm_payment(
        self,
        order_id: str,
        gateway_payment_intent_id: str,
        reported_status: Union[PaymentStatus, str],
    ) -> ConfirmationResult:
        data = await self._request(
            "POST",
            f"/orders/{order_id}/confirm",
            json={
                "gateway_payment_intent_id": gateway_payment_intent_id,
                "status": PaymentStatus(reported_status).value,
            },
        )
        return ConfirmationResult(
            order=Order.from_dict(data["order"]),
            payment=Payment.from_dict(data["payment"]),
            already_processed=data["already_processed"],
        )

    async def cancel_order(self, order_id: str) -> Order:
        return Order.from_dict(await self._request("POST", f"/orders/{order_id}/cancel"))

    async def refund(
        self, order_id: str, amount: Optional[int] = None, reason: Optional[str] = None
    ) -> RefundResult:
        data = await self._request(
            "POST", f"/orders/{order_id}/refund", json={"amount": amount, "reason": reason}
        )
        return RefundResult(
            order=Order.from_dict(data["order"]),
            payment=Payment.from_dict(data["payment"]),
            refund_id=data["refund_id"],
            amount=data["amount"],
        )

    async def expire_stale_payments(self) -> ExpirySummary:
        return ExpirySummary(**await self._request("POST", "/admin/expire-payments"))

    async def get_order(self, order_id: str) -> Order:
        return Order.from_dict(await self._request("GET", f"/orders/{order_id}"))

    async def list_orders(self, user_id: str, status: Optional[OrderStatus] = None) -> List[Order]:
        params = {"user_id": user_id}
        if status is not None:
            params["status"] = OrderStatus(status).value
        return [Order.from_dict(row) for row in await self._request("GET", "/orders", params=params)]

    async def list_payments(self, user_id: str) -> List[Payment]:
        rows = await self._request("GET", "/payments", params={"user_id": user_id})
        return [Payment.from_dict(row) for row in rows]

    async def list_enrollments(self, user_id: str) -> List[Enrollment]:
        rows = await self._request("GET", "/enrollments", params={"user_id": user_id})
        return [Enrollment.from_dict(row) for row in rows]

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        response = await self._client.get(f"/enrollments/{enrollment_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return Enrollment.from_dict(response.json())

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
