"""
View cache key scheme.

    order-list:{user_id}                  all orders of a user
    order-list:{user_id}:status={STATUS}  filtered variant
    order-detail:{order_id}
    enrollment-detail:{enrollment_id}
    enrollment-list:{user_id}
    payment-list:{user_id}

Filtered variants of a list extend the base key with ``:``, so dropping a
list means dropping the base key and everything under ``{base}:``. Ids are
percent-encoded, so an id never contains ``:`` and user ``u1`` never shares
a prefix with user ``u1:x``.
"""

from enum import Enum
from typing import Optional
from urllib.parse import quote


class KeyFamily(str, Enum):
    ORDER_LIST = "order-list"
    ORDER_DETAIL = "order-detail"
    ENROLLMENT_DETAIL = "enrollment-detail"
    ENROLLMENT_LIST = "enrollment-list"
    PAYMENT_LIST = "payment-list"

    @property
    def is_list(self) -> bool:
        return self in LIST_FAMILIES


LIST_FAMILIES = frozenset(
    {KeyFamily.ORDER_LIST, KeyFamily.ENROLLMENT_LIST, KeyFamily.PAYMENT_LIST}
)


def _segment(value: str) -> str:
    return quote(str(value), safe="")


def order_list(user_id: str, status: Optional[str] = None) -> str:
    base = f"{KeyFamily.ORDER_LIST.value}:{_segment(user_id)}"
    return f"{base}:status={_segment(status)}" if status else base


def order_detail(order_id: str) -> str:
    return f"{KeyFamily.ORDER_DETAIL.value}:{_segment(order_id)}"


def enrollment_detail(enrollment_id: str) -> str:
    return f"{KeyFamily.ENROLLMENT_DETAIL.value}:{_segment(enrollment_id)}"


def enrollment_list(user_id: str) -> str:
    return f"{KeyFamily.ENROLLMENT_LIST.value}:{_segment(user_id)}"


def payment_list(user_id: str) -> str:
    return f"{KeyFamily.PAYMENT_LIST.value}:{_segment(user_id)}"


def variants_prefix(list_key: str) -> str:
    """Prefix shared by every filtered variant of a list key."""
    return f"{list_key}:"


def generation_scope(key: str) -> str:
    """
    Invalidation scope of a key or prefix: its family and id.

    ``order-list:u1``, ``order-list:u1:status=PAID`` and the prefix
    ``order-list:u1:`` all share the scope ``order-list:u1``.
    """
    return ":".join(key.split(":", 2)[:2])
