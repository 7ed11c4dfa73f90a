"""
Checkout lifecycle events.

Published after the corresponding state change is committed. The durable
record of a payment is the store; events are notifications for whoever
listens (logs by default).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

import structlog

from enrollment_checkout.domain.models import utcnow

logger = structlog.get_logger(__name__)

ORDER_CREATED = "order.created"
CHECKOUT_INITIATED = "checkout.initiated"
ORDER_PAID = "order.paid"
PAYMENT_FAILED = "payment.failed"
PAYMENT_EXPIRED = "payment.expired"
ORDER_CANCELLED = "order.cancelled"
ORDER_REFUNDED = "order.refunded"


@dataclass(frozen=True)
class CheckoutEvent:
    event_type: str
    order_id: str
    user_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }


class EventPublisher(ABC):
    @abstractmethod
    async def publish(self, event: CheckoutEvent) -> None:
        ...


class LoggingEventPublisher(EventPublisher):
    """Writes each event to the structured log."""

    async def publish(self, event: CheckoutEvent) -> None:
        logger.info(
            "checkout_event",
            event_type=event.event_type,
            order_id=event.order_id,
            user_id=event.user_id,
            **event.payload,
        )


class CollectingEventPublisher(EventPublisher):
    """Keeps events in memory; for tests and local inspection."""

    def __init__(self) -> None:
        self.events: List[CheckoutEvent] = []

    async def publish(self, event: CheckoutEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[CheckoutEvent]:
        return [e for e in self.events if e.event_type == event_type]
