"""Database session management with async SQLAlchemy."""

import logging
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from receptionist.core.config import settings

logger = logging.getLogger(__name__)

# Each live call opens short-lived sessions for its call record and for every
# tool invocation, so the pool is sized for concurrent calls, not requests.
engine = create_async_engine(
    str(settings.DATABASE_URL),
    echo=False,
    pool_pre_ping=True,
    pool_size=20,
    max_overflow=30,
    pool_recycle=1800,
    pool_timeout=30,
    pool_use_lifo=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            logger.exception("Database session error")
            raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the session factory.

    The call relay runs tool invocations concurrently with audio forwarding,
    and an AsyncSession must not be shared between tasks, so relay components
    receive the factory and open one session per unit of work.
    """
    return AsyncSessionLocal
