"""
Invalidation router.

Each state-changing operation declares, in INVALIDATION_TABLE, which view
families it makes stale. ``invalidate_for`` is the only routine that turns a
row of the table into concrete keys and drops them. It is called after the
mutation is committed and before the operation returns.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

import structlog

from enrollment_checkout.cache import keys
from enrollment_checkout.cache.keys import KeyFamily
from enrollment_checkout.cache.view_cache import ViewCache
from enrollment_checkout.domain.errors import CacheInvalidationError
from enrollment_checkout.domain.models import PaymentStatus
from enrollment_checkout.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class CheckoutOperation(str, Enum):
    CREATE_ORDER = "create_order"
    INITIATE_CHECKOUT = "initiate_checkout"
    CONFIRM_PAYMENT_SUCCEEDED = "confirm_payment_succeeded"
    CONFIRM_PAYMENT_FAILED = "confirm_payment_failed"
    CANCEL_ORDER = "cancel_order"
    REFUND = "refund"
    EXPIRE_PAYMENT = "expire_payment"


INVALIDATION_TABLE: Dict[CheckoutOperation, FrozenSet[KeyFamily]] = {
    CheckoutOperation.CREATE_ORDER: frozenset(
        {KeyFamily.ORDER_LIST, KeyFamily.ORDER_DETAIL, KeyFamily.ENROLLMENT_DETAIL}
    ),
    CheckoutOperation.INITIATE_CHECKOUT: frozenset(
        {KeyFamily.ORDER_DETAIL, KeyFamily.ORDER_LIST}
    ),
    CheckoutOperation.CONFIRM_PAYMENT_SUCCEEDED: frozenset(
        {
            KeyFamily.ORDER_DETAIL,
            KeyFamily.ORDER_LIST,
            KeyFamily.ENROLLMENT_LIST,
            KeyFamily.ENROLLMENT_DETAIL,
            KeyFamily.PAYMENT_LIST,
        }
    ),
    CheckoutOperation.CONFIRM_PAYMENT_FAILED: frozenset(
        {KeyFamily.ORDER_DETAIL, KeyFamily.PAYMENT_LIST}
    ),
    CheckoutOperation.CANCEL_ORDER: frozenset({KeyFamily.ORDER_DETAIL, KeyFamily.ORDER_LIST}),
    CheckoutOperation.REFUND: frozenset(
        {KeyFamily.ORDER_DETAIL, KeyFamily.ORDER_LIST, KeyFamily.PAYMENT_LIST}
    ),
    CheckoutOperation.EXPIRE_PAYMENT: frozenset(
        {KeyFamily.ORDER_DETAIL, KeyFamily.PAYMENT_LIST}
    ),
}



def confirmation_operation(status: PaymentStatus) -> Optional[CheckoutOperation]:
    """
    Table row for a confirmation that left the payment in ``status``.

    Replays use it too: dropping views is idempotent, and the first
    delivery may have been handled by another caller or failed half way.
    A refunded payment maps to the success row, which covers every view
    the refund touched. A pending payment changed nothing.
    """
    if status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
        return CheckoutOperation.CONFIRM_PAYMENT_SUCCEEDED
    if status is PaymentStatus.FAILED:
        return CheckoutOperation.CONFIRM_PAYMENT_FAILED
    return None

@dataclass(frozen=True)
class InvalidationTarget:
    """Identifiers the table's key families are filled in with."""

    user_id: str
    order_id: str
    enrollment_ids: Sequence[str] = field(default_factory=tuple)


def resolve_keys(
    operation: CheckoutOperation, target: InvalidationTarget
) -> Tuple[List[str], List[str]]:
    """
    Concrete (exact keys, prefixes) an operation invalidates.

    List families contribute their base key and the prefix of their
    filtered variants.
    """
    exact: List[str] = []
    prefixes: List[str] = []
    for family in sorted(INVALIDATION_TABLE[operation], key=lambda f: f.value):
        if family is KeyFamily.ORDER_LIST:
            list_key = keys.order_list(target.user_id)
        elif family is KeyFamily.ENROLLMENT_LIST:
            list_key = keys.enrollment_list(target.user_id)
        elif family is KeyFamily.PAYMENT_LIST:
            list_key = keys.payment_list(target.user_id)
        elif family is KeyFamily.ORDER_DETAIL:
            exact.append(keys.order_detail(target.order_id))
            continue
        else:
            exact.extend(keys.enrollment_detail(eid) for eid in target.enrollment_ids)
            continue
        exact.append(list_key)
        prefixes.append(keys.variants_prefix(list_key))
    return exact, prefixes


async def invalidate_for(
    cache: ViewCache, operation: CheckoutOperation, target: InvalidationTarget
) -> List[str]:
    """
    Drop every view the operation made stale.

    Returns:
        The exact keys dropped (prefix deletes not expanded)

    Raises:
        CacheInvalidationError: If the cache backend fails
    """
    exact, prefixes = resolve_keys(operation, target)
    try:
        await cache.invalidate(exact, prefixes)
    except Exception as e:
        metrics.record_invalidation(operation.value, "failed")
        logger.error(
            "view_cache_invalidation_failed",
            operation=operation.value,
            order_id=target.order_id,
            keys=exact,
            error=str(e),
        )
        raise CacheInvalidationError(exact + prefixes, str(e)) from e

    metrics.record_invalidation(operation.value, "ok")
    logger.debug(
        "view_cache_invalidated",
        operation=operation.value,
        order_id=target.order_id,
        keys=exact,
        prefixes=prefixes,
    )
    return exact
