"""Database package for the checkout store."""
from .connection import (
    build_engine,
    build_session_factory,
    drop_db,
    engine_from_settings,
    init_db,
)
from .models import (
    Base,
    EnrollmentActivationRow,
    EnrollmentClaimRow,
    OrderLineItemRow,
    OrderRow,
    PaymentEventRow,
    PaymentRow,
)

__all__ = [
    "Base",
    "OrderRow",
    "OrderLineItemRow",
    "EnrollmentClaimRow",
    "PaymentRow",
    "EnrollmentActivationRow",
    "PaymentEventRow",
    "build_engine",
    "build_session_factory",
    "engine_from_settings",
    "init_db",
    "drop_db",
]
