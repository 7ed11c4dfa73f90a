"""
Order pricing.

subtotal = sum of snapshotted unit prices
discount = promotion applied to the subtotal, capped at the subtotal
tax      = tax_rate_bps of (subtotal - discount), rounded half up
total    = subtotal - discount + tax
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from enrollment_checkout.domain.models import (
    OrderLineItem,
    PricingBreakdown,
    Promotion,
    PromotionKind,
)

BASIS_POINTS = Decimal(10_000)


def _apply_bps(amount: int, bps: int) -> int:
    value = Decimal(amount) * Decimal(bps) / BASIS_POINTS
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def discount_for(subtotal: int, promotion: Optional[Promotion]) -> int:
    if promotion is None or not promotion.active:
        return 0
    if promotion.kind is PromotionKind.PERCENT:
        discount = _apply_bps(subtotal, promotion.value)
    else:
        discount = promotion.value
    return max(0, min(discount, subtotal))


def price_line_items(
    line_items: Iterable[OrderLineItem],
    currency: str,
    tax_rate_bps: int = 0,
    promotion: Optional[Promotion] = None,
) -> PricingBreakdown:
    """Compute the breakdown for a set of line items. Pure."""
    subtotal = sum(item.unit_price for item in line_items)
    discount = discount_for(subtotal, promotion)
    tax = _apply_bps(subtotal - discount, tax_rate_bps)
    return PricingBreakdown(
        subtotal=subtotal,
        discount=discount,
        tax=tax,
        total=subtotal - discount + tax,
        currency=currency,
        promo_code=promotion.code if promotion is not None else None,
    )
