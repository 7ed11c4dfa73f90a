"""Engine and session construction for the SQL checkout store."""
from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from enrollment_checkout.config import Settings
from enrollment_checkout.database.models import Base


def build_engine(database_url: str, echo: bool = False, **pool: Any) -> AsyncEngine:
    """
    Create an async engine for a database URL.

    Pool sizing only applies to server databases; sqlite URLs (used by the
    test suite through aiosqlite) get the driver defaults.
    """
    options: Dict[str, Any] = {"echo": echo}
    if not database_url.startswith("sqlite"):
        options.update(pool_pre_ping=True, pool_recycle=3600, **pool)
    return create_async_engine(database_url, **options)


def engine_from_settings(settings: Settings) -> AsyncEngine:
    return build_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows stay readable after commit; the store maps them to domain models
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create the checkout tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
