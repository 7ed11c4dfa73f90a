"""
Domain entities for the checkout core.

Orders and payments are plain dataclasses. Stores hand out fresh instances,
so mutating one never changes stored state; every change goes through a
store method.

All money amounts are integers in minor currency units (cents).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class OrderStatus(str, Enum):
    """
    Order lifecycle states.

    State machine:
    PENDING_PAYMENT → PAID → REFUNDED
           ↓
       CANCELLED

    "Processing" is not a status: it is a pending Payment on the order.
    """

    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    """Payment attempt states. Only succeeded → refunded leaves a terminal state."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class EnrollmentStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class PricingBreakdown:
    """Subtotal, discount, tax and total for a set of line items."""

    subtotal: int
    discount: int
    tax: int
    total: int
    currency: str
    promo_code: Optional[str] = None

    def __post_init__(self) -> None:
        if min(self.subtotal, self.discount, self.tax) < 0:
            raise ValueError("Pricing components must be non-negative")
        if self.total != self.subtotal - self.discount + self.tax:
            raise ValueError(
                f"total {self.total} != subtotal {self.subtotal} - discount "
                f"{self.discount} + tax {self.tax}"
            )
        if self.total < 0:
            raise ValueError("Order total cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subtotal": self.subtotal,
            "discount": self.discount,
            "tax": self.tax,
            "total": self.total,
            "currency": self.currency,
            "promo_code": self.promo_code,
        }


@dataclass(frozen=True)
class OrderLineItem:
    """One enrollment and the price it had when the order was captured."""

    position: int
    enrollment_id: str
    unit_price: int
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "enrollment_id": self.enrollment_id,
            "unit_price": self.unit_price,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderLineItem":
        return cls(
            position=data["position"],
            enrollment_id=data["enrollment_id"],
            unit_price=data["unit_price"],
            description=data.get("description", ""),
        )


@dataclass
class Order:
    """
    Order aggregate.

    Invariant: total == subtotal - discount + tax, total >= 0.
    """

    id: str
    user_id: str
    status: OrderStatus
    line_items: List[OrderLineItem]
    subtotal: int
    discount: int
    tax: int
    total: int
    currency: str
    promo_code: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        line_items: List[OrderLineItem],
        pricing: PricingBreakdown,
    ) -> "Order":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            status=OrderStatus.PENDING_PAYMENT,
            line_items=list(line_items),
            subtotal=pricing.subtotal,
            discount=pricing.discount,
            tax=pricing.tax,
            total=pricing.total,
            currency=pricing.currency,
            promo_code=pricing.promo_code,
            created_at=now,
            updated_at=now,
        )

    @property
    def pricing(self) -> PricingBreakdown:
        return PricingBreakdown(
            subtotal=self.subtotal,
            discount=self.discount,
            tax=self.tax,
            total=self.total,
            currency=self.currency,
            promo_code=self.promo_code,
        )

    @property
    def enrollment_ids(self) -> List[str]:
        return [item.enrollment_id for item in self.line_items]

    def with_pricing(self, pricing: PricingBreakdown) -> "Order":
        return replace(
            self,
            subtotal=pricing.subtotal,
            discount=pricing.discount,
            tax=pricing.tax,
            total=pricing.total,
            currency=pricing.currency,
            promo_code=pricing.promo_code,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "line_items": [item.to_dict() for item in self.line_items],
            "subtotal": self.subtotal,
            "discount": self.discount,
            "tax": self.tax,
            "total": self.total,
            "currency": self.currency,
            "promo_code": self.promo_code,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            status=OrderStatus(data["status"]),
            line_items=[OrderLineItem.from_dict(item) for item in data["line_items"]],
            subtotal=data["subtotal"],
            discount=data["discount"],
            tax=data["tax"],
            total=data["total"],
            currency=data["currency"],
            promo_code=data.get("promo_code"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass
class Payment:
    """
    One attempt to charge for an order through the gateway.

    The gateway payment-intent id is unique across payments and is the
    idempotency key for confirmation.
    """

    id: str
    order_id: str
    user_id: str
    amount: int
    currency: str
    status: PaymentStatus
    gateway_payment_intent_id: str
    attempt: int
    payment_method_ref: Optional[str] = None
    installment_plan_ref: Optional[str] = None
    redirect_url: Optional[str] = None
    refunded_amount: int = 0
    refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status.value,
            "gateway_payment_intent_id": self.gateway_payment_intent_id,
            "attempt": self.attempt,
            "payment_method_ref": self.payment_method_ref,
            "installment_plan_ref": self.installment_plan_ref,
            "redirect_url": self.redirect_url,
            "refunded_amount": self.refunded_amount,
            "refund_id": self.refund_id,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Payment":
        return cls(
            id=data["id"],
            order_id=data["order_id"],
            user_id=data["user_id"],
            amount=data["amount"],
            currency=data["currency"],
            status=PaymentStatus(data["status"]),
            gateway_payment_intent_id=data["gateway_payment_intent_id"],
            attempt=data["attempt"],
            payment_method_ref=data.get("payment_method_ref"),
            installment_plan_ref=data.get("installment_plan_ref"),
            redirect_url=data.get("redirect_url"),
            refunded_amount=data.get("refunded_amount", 0),
            refund_id=data.get("refund_id"),
            failure_reason=data.get("failure_reason"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass(frozen=True)
class Enrollment:
    """Enrollment as seen from checkout. Owned by the enrollment service."""

    id: str
    user_id: str
    price: int
    description: str = ""
    status: EnrollmentStatus = EnrollmentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "price": self.price,
            "description": self.description,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Enrollment":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            price=data["price"],
            description=data.get("description", ""),
            status=EnrollmentStatus(data.get("status", EnrollmentStatus.PENDING.value)),
        )


@dataclass(frozen=True)
class EnrollmentActivation:
    """Outbox row: activation signal owed to an enrollment for a paid order."""

    order_id: str
    enrollment_id: str
    dispatched: bool = False


class PromotionKind(str, Enum):
    PERCENT = "percent"
    FIXED = "fixed"


@dataclass(frozen=True)
class Promotion:
    """
    Discount rule behind a promo code.

    PERCENT values are basis points (1000 = 10%); FIXED values are cents.
    """

    code: str
    kind: PromotionKind
    value: int
    active: bool = True


@dataclass
class CheckoutResult:
    """Outcome of initiate_checkout: the new pending payment and where to pay."""

    order: Order
    payment: Payment
    redirect_url: str
    gateway_payment_intent_id: str
    client_secret: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "payment": self.payment.to_dict(),
            "redirect_url": self.redirect_url,
            "gateway_payment_intent_id": self.gateway_payment_intent_id,
            "client_secret": self.client_secret,
        }


@dataclass
class ConfirmationResult:
    """
    Outcome of confirm_payment.

    already_processed is True when the intent had been settled by an earlier
    call and this one only replayed the stored result.
    """

    order: Order
    payment: Payment
    already_processed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "payment": self.payment.to_dict(),
            "already_processed": self.already_processed,
        }


@dataclass
class PricingQuote:
    """Preview of what an order for these enrollments would cost. Never stored."""

    line_items: List[OrderLineItem]
    pricing: PricingBreakdown

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_items": [item.to_dict() for item in self.line_items],
            **self.pricing.to_dict(),
        }


@dataclass
class RefundResult:
    order: Order
    payment: Payment
    refund_id: str
    amount: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "payment": self.payment.to_dict(),
            "refund_id": self.refund_id,
            "amount": self.amount,
        }
