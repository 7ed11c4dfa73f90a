"""Checkout core: orchestrator, per-order locks and lifecycle events."""
from .events import CheckoutEvent, CollectingEventPublisher, EventPublisher, LoggingEventPublisher
from .locks import LocalOrderLocks, OrderLocks, RedisOrderLocks
from .orchestrator import CheckoutOrchestrator, ExpirySummary

__all__ = [
    "CheckoutEvent",
    "CheckoutOrchestrator",
    "CollectingEventPublisher",
    "EventPublisher",
    "ExpirySummary",
    "LocalOrderLocks",
    "LoggingEventPublisher",
    "OrderLocks",
    "RedisOrderLocks",
]
