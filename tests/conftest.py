"""
Pytest configuration and fixtures.

Everything runs in-process: memory store and cache, local per-order locks,
the fake gateway and memory enrollment directory. SQL store tests use
aiosqlite; Stripe and Redis are mocked.
"""
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from enrollment_checkout.api.main import create_app
from enrollment_checkout.cache.view_cache import MemoryCacheBackend, ViewCache
from enrollment_checkout.config import Settings
from enrollment_checkout.container import CheckoutContainer, build_container
from enrollment_checkout.core.events import CollectingEventPublisher
from enrollment_checkout.core.locks import LocalOrderLocks
from enrollment_checkout.core.orchestrator import CheckoutOrchestrator
from enrollment_checkout.directory.memory import MemoryEnrollmentDirectory, MemoryPromotionCatalog
from enrollment_checkout.domain.models import (
    Enrollment,
    EnrollmentStatus,
    Promotion,
    PromotionKind,
)
from enrollment_checkout.gateway.fake import FakePaymentGateway
from enrollment_checkout.store.memory import MemoryCheckoutStore

USER_ID = "user_1"
OTHER_USER_ID = "user_2"


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast in-process tests")
    config.addinivalue_line("markers", "integration: tests spanning several components")
    config.addinivalue_line("markers", "race: concurrent request tests")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        stripe_secret_key=None,
        stripe_webhook_secret="whsec_test_fake_secret",
        store_backend="memory",
        cache_backend="memory",
        lock_backend="local",
        order_lock_blocking_timeout=2.0,
        app_name="enrollment-checkout-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest.fixture
def enrollments() -> MemoryEnrollmentDirectory:
    return MemoryEnrollmentDirectory(
        [
            Enrollment(id="e1", user_id=USER_ID, price=50, description="Spring soccer"),
            Enrollment(id="e2", user_id=USER_ID, price=75, description="Swim lessons"),
            Enrollment(id="e3", user_id=USER_ID, price=10_000, description="Summer camp"),
            Enrollment(id="e9", user_id=OTHER_USER_ID, price=40, description="Chess club"),
            Enrollment(
                id="e_active",
                user_id=USER_ID,
                price=60,
                description="Already active",
                status=EnrollmentStatus.ACTIVE,
            ),
        ]
    )


@pytest.fixture
def promotions() -> MemoryPromotionCatalog:
    return MemoryPromotionCatalog(
        [
            Promotion(code="SPRING10", kind=PromotionKind.PERCENT, value=1000),
            Promotion(code="FIVEOFF", kind=PromotionKind.FIXED, value=500),
            Promotion(code="EXPIRED", kind=PromotionKind.PERCENT, value=5000, active=False),
        ]
    )


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def store() -> MemoryCheckoutStore:
    return MemoryCheckoutStore()


@pytest.fixture
def cache_backend() -> MemoryCacheBackend:
    return MemoryCacheBackend()


@pytest.fixture
def cache(cache_backend: MemoryCacheBackend) -> ViewCache:
    return ViewCache(cache_backend)


@pytest.fixture
def locks() -> LocalOrderLocks:
    return LocalOrderLocks(blocking_timeout=2.0)


@pytest.fixture
def publisher() -> CollectingEventPublisher:
    return CollectingEventPublisher()


@pytest.fixture
def orchestrator(
    store: MemoryCheckoutStore,
    gateway: FakePaymentGateway,
    enrollments: MemoryEnrollmentDirectory,
    promotions: MemoryPromotionCatalog,
    cache: ViewCache,
    locks: LocalOrderLocks,
    publisher: CollectingEventPublisher,
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        store=store,
        gateway=gateway,
        enrollments=enrollments,
        promotions=promotions,
        cache=cache,
        locks=locks,
        event_publisher=publisher,
    )


@pytest.fixture
def container(
    test_settings: Settings,
    store: MemoryCheckoutStore,
    gateway: FakePaymentGateway,
    enrollments: MemoryEnrollmentDirectory,
    promotions: MemoryPromotionCatalog,
    cache_backend: MemoryCacheBackend,
    locks: LocalOrderLocks,
    publisher: CollectingEventPublisher,
) -> CheckoutContainer:
    return build_container(
        test_settings,
        store=store,
        gateway=gateway,
        enrollments=enrollments,
        promotions=promotions,
        cache_backend=cache_backend,
        locks=locks,
        event_publisher=publisher,
    )


@pytest_asyncio.fixture
async def client(container: CheckoutContainer) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(container)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
