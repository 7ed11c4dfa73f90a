"""
Per-order single-writer sections.

Every state-changing operation on an order runs inside
``async with locks.hold(order_id)``. Locks are keyed by order id; two
different orders never contend.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from enrollment_checkout.domain.errors import OrderBusyError
from enrollment_checkout.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderLocks(ABC):
    @abstractmethod
    def hold(self, order_id: str) -> AsyncContextManager[None]:
        """
        Async context manager holding the order's lock.

        Raises:
            OrderBusyError: If the lock cannot be acquired in time
        """


class _KeyedLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


def _release_if_acquired(lock: asyncio.Lock) -> Callable[["asyncio.Future[bool]"], None]:
    def callback(acquire: "asyncio.Future[bool]") -> None:
        if not acquire.cancelled() and acquire.exception() is None:
            lock.release()

    return callback


async def _acquire_within(lock: asyncio.Lock, timeout: Optional[float]) -> bool:
    """
    Acquire the lock, giving up after timeout seconds.

    The acquire runs as its own task. If it is abandoned, by a timeout or by
    the caller being cancelled, a grant that still lands is handed straight
    back, so a failed attempt never leaves the lock held.
    """
    if timeout is None:
        await lock.acquire()
        return True
    acquire = asyncio.ensure_future(lock.acquire())
    try:
        done, _ = await asyncio.wait({acquire}, timeout=timeout)
    except BaseException:
        acquire.cancel()
        acquire.add_done_callback(_release_if_acquired(lock))
        raise
    if done:
        return True
    acquire.cancel()
    acquire.add_done_callback(_release_if_acquired(lock))
    return False


class LocalOrderLocks(OrderLocks):
    """
    One asyncio.Lock per order id within this process.

    Entries are reference counted and discarded once nobody holds or waits
    for them, so the table only grows with concurrently active orders.
    """

    def __init__(self, blocking_timeout: Optional[float] = None):
        self.blocking_timeout = blocking_timeout
        self._locks: Dict[str, _KeyedLock] = {}

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(order_id)
        if entry is None:
            entry = self._locks[order_id] = _KeyedLock()
        entry.users += 1
        started = time.perf_counter()
        try:
            if not await _acquire_within(entry.lock, self.blocking_timeout):
                metrics.record_lock("timeout")
                logger.warning("order_lock_acquisition_failed", order_id=order_id)
                raise OrderBusyError(order_id)
            metrics.record_lock("acquired", time.perf_counter() - started)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(order_id, None)

    def active_keys(self) -> int:
        return len(self._locks)


class RedisOrderLocks(OrderLocks):
    """
    Redis lock per order, shared by every process of the service.

    The lock expires after ``timeout`` seconds so a crashed holder cannot
    wedge an order.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        timeout: int = 30,
        blocking_timeout: float = 10.0,
    ):
        self.redis_client = redis_client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    @staticmethod
    def lock_key(order_id: str) -> str:
        return f"order:lock:{order_id}"

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        lock_key = self.lock_key(order_id)
        lock = self.redis_client.lock(
            lock_key, timeout=self.timeout, blocking_timeout=self.blocking_timeout
        )
        started = time.perf_counter()
        if not await lock.acquire():
            metrics.record_lock("timeout")
            logger.warning("order_lock_acquisition_failed", order_id=order_id, lock_key=lock_key)
            raise OrderBusyError(order_id)

        metrics.record_lock("acquired", time.perf_counter() - started)
        logger.debug("order_lock_acquired", order_id=order_id, lock_key=lock_key)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Expired while held; another holder may already own it
                logger.warning("order_lock_expired_before_release", order_id=order_id)
