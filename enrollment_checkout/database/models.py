"""SQLAlchemy database models for the checkout store."""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Autoincrement needs INTEGER PRIMARY KEY on sqlite
AutoIncrementId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class OrderRow(Base):
    """
    Orders table.

    Totals are stored denormalized so that the pricing invariant can be
    enforced by a check constraint.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    promo_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    line_items: Mapped[List["OrderLineItemRow"]] = relationship(
        order_by="OrderLineItemRow.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "total_cents = subtotal_cents - discount_cents + tax_cents",
            name="total_matches_breakdown",
        ),
        CheckConstraint("total_cents >= 0", name="non_negative_total"),
        CheckConstraint(
            "status IN ('PENDING_PAYMENT', 'PAID', 'CANCELLED', 'REFUNDED')",
            name="valid_order_status",
        ),
        Index("idx_orders_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<OrderRow(id={self.id}, user_id={self.user_id}, status={self.status})>"


class OrderLineItemRow(Base):
    """Line items: enrollment reference plus the price captured at creation."""

    __tablename__ = "order_line_items"

    order_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("orders.id", ondelete="CASCADE"), primary_key=True
    )
    position: Mapped[int] = mapped_column(Integer, primary_key=True)
    enrollment_id: Mapped[str] = mapped_column(String(64), nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    __table_args__ = (CheckConstraint("unit_price_cents >= 0", name="non_negative_price"),)


class EnrollmentClaimRow(Base):
    """
    Enrollment claims table.

    One row per enrollment held by a non-cancelled order. The primary key
    keeps an enrollment from entering two live orders; cancelling an order
    deletes its claims.
    """

    __tablename__ = "enrollment_claims"

    enrollment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )


class PaymentRow(Base):
    """
    Payment attempts table.

    The gateway intent id is unique, and partial unique indexes allow at
    most one pending and at most one settled payment per order.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    order_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("orders.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    gateway_payment_intent_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    installment_plan_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    redirect_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="non_negative_amount"),
        CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed', 'refunded')",
            name="valid_payment_status",
        ),
        CheckConstraint(
            "refunded_amount_cents >= 0 AND refunded_amount_cents <= amount_cents",
            name="refund_within_amount",
        ),
        Index("uq_payments_order_attempt", "order_id", "attempt", unique=True),
        Index(
            "uq_payments_one_pending_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index(
            "uq_payments_one_settled_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("status IN ('succeeded', 'refunded')"),
            sqlite_where=text("status IN ('succeeded', 'refunded')"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentRow(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class EnrollmentActivationRow(Base):
    """
    Activation outbox table.

    Written in the same transaction that marks the order PAID, then
    dispatched to the enrollment service after commit.
    """

    __tablename__ = "enrollment_activations"

    order_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("orders.id"), primary_key=True
    )
    enrollment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    dispatched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index(
            "idx_activations_undispatched",
            "order_id",
            postgresql_where=text("NOT dispatched"),
        ),
    )


class PaymentEventRow(Base):
    """
    Payment events audit trail table.

    One immutable row per payment status change.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    payment_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<PaymentEventRow(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )
