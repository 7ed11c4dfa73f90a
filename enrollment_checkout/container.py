"""
Component wiring.

Builds the orchestrator and its collaborators from settings. The API, the
expiry worker and tests all go through ``build_container`` so that one
process never ends up with two stores or two caches.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from enrollment_checkout.cache.view_cache import (
    CacheBackend,
    MemoryCacheBackend,
    RedisCacheBackend,
    ViewCache,
)
from enrollment_checkout.config import Settings, get_settings
from enrollment_checkout.core.events import EventPublisher
from enrollment_checkout.core.locks import LocalOrderLocks, OrderLocks, RedisOrderLocks
from enrollment_checkout.core.orchestrator import CheckoutOrchestrator
from enrollment_checkout.database.connection import build_session_factory, engine_from_settings, init_db
from enrollment_checkout.directory.base import EnrollmentDirectory, PromotionCatalog
from enrollment_checkout.directory.http import HttpEnrollmentDirectory
from enrollment_checkout.directory.memory import MemoryPromotionCatalog
from enrollment_checkout.domain.models import Promotion, PromotionKind
from enrollment_checkout.gateway.base import PaymentGatewayAdapter
from enrollment_checkout.gateway.fake import FakePaymentGateway
from enrollment_checkout.monitoring.health import HealthCheck
from enrollment_checkout.store.base import CheckoutStore
from enrollment_checkout.store.memory import MemoryCheckoutStore

logger = structlog.get_logger(__name__)


@dataclass
class CheckoutContainer:
    settings: Settings
    store: CheckoutStore
    gateway: PaymentGatewayAdapter
    enrollments: EnrollmentDirectory
    promotions: PromotionCatalog
    cache: ViewCache
    locks: OrderLocks
    orchestrator: CheckoutOrchestrator
    health: HealthCheck
    engine: Optional[AsyncEngine] = None
    _closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def startup(self) -> None:
        """Create tables when running on the SQL store."""
        if self.engine is not None:
            await init_db(self.engine)
            logger.info("database_initialized")

    async def close(self) -> None:
        for closer in reversed(self._closers):
            try:
                await closer()
            except Exception as e:
                logger.error("component_shutdown_error", error=str(e))
        self._closers.clear()


def build_promotions(settings: Settings) -> MemoryPromotionCatalog:
    return MemoryPromotionCatalog(
        Promotion(code=code, kind=PromotionKind(kind), value=value)
        for code, kind, value in settings.get_promo_code_specs()
    )


def build_container(
    settings: Optional[Settings] = None,
    *,
    store: Optional[CheckoutStore] = None,
    gateway: Optional[PaymentGatewayAdapter] = None,
    enrollments: Optional[EnrollmentDirectory] = None,
    promotions: Optional[PromotionCatalog] = None,
    cache_backend: Optional[CacheBackend] = None,
    locks: Optional[OrderLocks] = None,
    event_publisher: Optional[EventPublisher] = None,
) -> CheckoutContainer:
    """
    Assemble every component. Anything passed in is used as-is; the rest is
    built from settings.
    """
    settings = settings or get_settings()
    closers: List[Callable[[], Awaitable[None]]] = []
    engine: Optional[AsyncEngine] = None
    redis_client: Optional[aioredis.Redis] = None

    def shared_redis() -> aioredis.Redis:
        nonlocal redis_client
        if redis_client is None:
            redis_client = aioredis.from_url(
                settings.redis_url, encoding="utf-8", decode_responses=True
            )
            closers.append(redis_client.aclose)
        return redis_client

    if store is None:
        if settings.store_backend == "sql":
            engine = engine_from_settings(settings)
            closers.append(engine.dispose)
            # Imported here so the memory configuration never needs a DB driver
            from enrollment_checkout.store.sql import SqlCheckoutStore

            store = SqlCheckoutStore(build_session_factory(engine))
        else:
            store = MemoryCheckoutStore()

    if cache_backend is None:
        if settings.cache_backend == "redis":
            # Closed through the shared client
            cache_backend = RedisCacheBackend(shared_redis())
        else:
            cache_backend = MemoryCacheBackend()
    else:
        closers.append(cache_backend.close)

    if locks is None:
        if settings.lock_backend == "redis":
            locks = RedisOrderLocks(
                shared_redis(),
                timeout=settings.order_lock_timeout,
                blocking_timeout=settings.order_lock_blocking_timeout,
            )
        else:
            locks = LocalOrderLocks(blocking_timeout=settings.order_lock_blocking_timeout)

    if gateway is None:
        if settings.stripe_secret_key:
            from enrollment_checkout.gateway.stripe_gateway import StripeGateway

            gateway = StripeGateway(settings)
        else:
            logger.warning("stripe_not_configured_using_fake_gateway")
            gateway = FakePaymentGateway(return_url=settings.checkout_return_url)

    if enrollments is None:
        http_directory = HttpEnrollmentDirectory(
            settings.enrollment_service_url, timeout=settings.enrollment_service_timeout
        )
        closers.append(http_directory.close)
        enrollments = http_directory

    promotions = promotions or build_promotions(settings)
    cache = ViewCache(cache_backend, ttl=settings.view_cache_ttl)

    orchestrator = CheckoutOrchestrator(
        store=store,
        gateway=gateway,
        enrollments=enrollments,
        promotions=promotions,
        cache=cache,
        locks=locks,
        event_publisher=event_publisher,
        currency=settings.default_currency,
        tax_rate_bps=settings.tax_rate_bps,
        pending_payment_ttl=timedelta(hours=settings.pending_payment_ttl_hours),
    )
    closers.append(store.close)

    logger.info(
        "container_built",
        store=type(store).__name__,
        cache=type(cache_backend).__name__,
        locks=type(locks).__name__,
        gateway=gateway.name,
    )
    return CheckoutContainer(
        settings=settings,
        store=store,
        gateway=gateway,
        enrollments=enrollments,
        promotions=promotions,
        cache=cache,
        locks=locks,
        orchestrator=orchestrator,
        health=HealthCheck(store=store.ping, cache=cache_backend.ping, gateway=gateway.ping),
        engine=engine,
        _closers=closers,
    )
