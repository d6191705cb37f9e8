"""Pytest configuration and fixtures for relay tests."""

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from receptionist.db.base import Base
from receptionist.db.session import get_db, get_session_factory
from receptionist.main import app

# Import all models to ensure they're registered with Base.metadata
import receptionist.models  # noqa: F401
from receptionist.models import (
    Appointment,
    AppointmentStatus,
    BlackoutDate,
    Customer,
    Service,
    Tenant,
    default_working_hours,
)
from receptionist.services.tenants import TenantConfig

# Tuesday 2030-01-01, 12:00 in America/New_York
FIXED_NOW = datetime(2030, 1, 1, 17, 0, tzinfo=UTC)


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    """Clock pinned to FIXED_NOW."""
    return lambda: FIXED_NOW


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path: Path) -> AsyncGenerator[Any, None]:
    """Create test database engine.

    File-backed so that every session opened by the code under test sees the
    same database.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}",
        echo=False,
        poolclass=NullPool,
    )

    # Enable foreign keys for SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection: Any, _connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine: Any) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def test_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function", autouse=True)
async def test_redis(monkeypatch: pytest.MonkeyPatch) -> AsyncGenerator[Any, None]:
    """Fake Redis wired into the cache helpers for every test."""
    redis_client = fakeredis.FakeAsyncRedis(decode_responses=True)

    async def _get_redis() -> Any:
        return redis_client

    monkeypatch.setattr("receptionist.core.cache.get_redis", _get_redis)
    monkeypatch.setattr("receptionist.api.health.get_redis", _get_redis)

    yield redis_client

    await redis_client.flushall()
    await redis_client.aclose()


@pytest_asyncio.fixture(scope="function")
async def test_client(
    test_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with dependency overrides."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield test_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def sample_tenant_data() -> dict[str, Any]:
    """Sample tenant data: weekdays 09:00-17:00, 30 minute slots, 10 minute buffer."""
    return {
        "name": "Bright Smile Dental",
        "phone_number": "+15551234567",
        "timezone": "America/New_York",
        "business_type": "dental_clinic",
        "system_prompt": "We are closed on public holidays.",
        "greeting_message": None,
        "working_hours": default_working_hours(),
        "slot_duration_minutes": 30,
        "buffer_minutes": 10,
        "max_advance_days": 30,
        "fallback_phone": "+15550000000",
        "fallback_enabled": True,
        "provider": "twilio",
        "is_active": True,
    }


@pytest_asyncio.fixture
async def create_test_tenant(test_session: AsyncSession, sample_tenant_data: dict[str, Any]) -> Any:
    """Factory fixture to create test tenants."""

    async def _create_tenant(**kwargs: Any) -> Tenant:
        tenant_data = dict(sample_tenant_data)
        tenant_data.update(kwargs)
        tenant = Tenant(**tenant_data)
        test_session.add(tenant)
        await test_session.commit()
        await test_session.refresh(tenant)
        return tenant

    return _create_tenant


@pytest_asyncio.fixture
async def tenant(create_test_tenant: Any) -> Tenant:
    """A persisted default tenant."""
    return await create_test_tenant()


@pytest.fixture
def tenant_config(tenant: Tenant) -> TenantConfig:
    """Snapshot of the default tenant."""
    return TenantConfig.from_model(tenant)


@pytest_asyncio.fixture
async def create_test_appointment(test_session: AsyncSession) -> Any:
    """Factory fixture to create test appointments (``scheduled_at`` in UTC)."""

    async def _create_appointment(tenant: Tenant, scheduled_at: datetime, **kwargs: Any) -> Appointment:
        appointment_data = {
            "tenant_id": tenant.id,
            "customer_name": "Existing Customer",
            "customer_phone": "+15559999999",
            "scheduled_at": scheduled_at,
            "duration_minutes": tenant.slot_duration_minutes,
            "status": AppointmentStatus.CONFIRMED,
        }
        appointment_data.update(kwargs)
        appointment = Appointment(**appointment_data)
        test_session.add(appointment)
        await test_session.commit()
        await test_session.refresh(appointment)
        return appointment

    return _create_appointment


@pytest_asyncio.fixture
async def create_test_customer(test_session: AsyncSession) -> Any:
    """Factory fixture to create test customers."""

    async def _create_customer(tenant: Tenant, **kwargs: Any) -> Customer:
        customer_data = {"tenant_id": tenant.id, "phone": "+15557654321", "name": "Jane Doe"}
        customer_data.update(kwargs)
        customer = Customer(**customer_data)
        test_session.add(customer)
        await test_session.commit()
        await test_session.refresh(customer)
        return customer

    return _create_customer


@pytest_asyncio.fixture
async def create_test_service(test_session: AsyncSession) -> Any:
    """Factory fixture to create test services."""

    async def _create_service(tenant: Tenant, **kwargs: Any) -> Service:
        service_data = {"tenant_id": tenant.id, "name": "Teeth Cleaning", "duration_minutes": 30}
        service_data.update(kwargs)
        service = Service(**service_data)
        test_session.add(service)
        await test_session.commit()
        await test_session.refresh(service)
        return service

    return _create_service


@pytest_asyncio.fixture
async def create_test_blackout(test_session: AsyncSession) -> Any:
    """Factory fixture to create blackout dates."""

    async def _create_blackout(tenant: Tenant, day: Any, reason: str = "Holiday") -> BlackoutDate:
        blackout = BlackoutDate(tenant_id=tenant.id, day=day, reason=reason)
        test_session.add(blackout)
        await test_session.commit()
        return blackout

    return _create_blackout
