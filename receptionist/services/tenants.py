"""Tenant lookup: resolve call metadata to an immutable tenant snapshot."""

import uuid
from datetime import date, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receptionist.core.cache import cache_delete, cache_get, cache_set
from receptionist.core.config import settings
from receptionist.core.exceptions import ConfigurationError, TenantNotFoundError
from receptionist.models.tenant import Tenant

logger = structlog.get_logger()

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class WorkingHours(BaseModel):
    """Opening window for one weekday."""

    model_config = ConfigDict(frozen=True)

    start: time
    end: time
    enabled: bool = True


class TenantConfig(BaseModel):
    """Snapshot of a tenant's configuration, loaded once per call."""

    model_config = ConfigDict(frozen=True)

    tenant_id: uuid.UUID
    name: str
    business_type: str | None = None
    system_prompt: str | None = None
    greeting_message: str | None = None
    timezone: str = "America/New_York"
    working_hours: dict[str, WorkingHours] = Field(default_factory=dict)
    slot_duration_minutes: int = Field(default=30, gt=0)
    buffer_minutes: int = Field(default=10, ge=0)
    max_advance_days: int = Field(default=30, ge=0)
    fallback_phone: str | None = None
    fallback_enabled: bool = True

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def transfer_number(self) -> str | None:
        """Number to hand a caller over to, if human fallback is enabled."""
        if self.fallback_enabled and self.fallback_phone:
            return self.fallback_phone
        return None

    def hours_for(self, day: date) -> WorkingHours | None:
        """Return the opening window for ``day``, or None when closed."""
        hours = self.working_hours.get(WEEKDAYS[day.weekday()])
        if hours is None or not hours.enabled:
            return None
        return hours

    def describe_working_hours(self) -> str:
        """Readable weekly schedule, one line per weekday."""
        lines = []
        for weekday in WEEKDAYS:
            hours = self.working_hours.get(weekday)
            if hours is None or not hours.enabled:
                lines.append(f"{weekday.capitalize()}: Closed")
            else:
                lines.append(
                    f"{weekday.capitalize()}: {hours.start:%H:%M} - {hours.end:%H:%M}"
                )
        return "\n".join(lines)

    @classmethod
    def from_model(cls, tenant: Tenant) -> "TenantConfig":
        """Build a snapshot from a ``Tenant`` row.

        Raises:
            ConfigurationError: If the stored timezone or working hours are invalid
        """
        try:
            ZoneInfo(tenant.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(f"Unknown timezone {tenant.timezone!r}") from e

        try:
            return cls(
                tenant_id=tenant.id,
                name=tenant.name,
                business_type=tenant.business_type,
                system_prompt=tenant.system_prompt,
                greeting_message=tenant.greeting_message,
                timezone=tenant.timezone,
                working_hours=tenant.working_hours or {},
                slot_duration_minutes=tenant.slot_duration_minutes,
                buffer_minutes=tenant.buffer_minutes,
                max_advance_days=tenant.max_advance_days,
                fallback_phone=tenant.fallback_phone,
                fallback_enabled=tenant.fallback_enabled,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration for tenant {tenant.id}: {e}") from e


def tenant_cache_key(tenant_id: uuid.UUID | str) -> str:
    return f"tenant:config:{tenant_id}"


class TenantDirectory:
    """Resolves a tenant id or called number to a ``TenantConfig``.

    Snapshots are cached in Redis for ``TENANT_CACHE_TTL_SECONDS``. A Redis
    failure is treated as a miss and falls through to the database.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache_ttl: int | None = None,
    ):
        self.session_factory = session_factory
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.TENANT_CACHE_TTL_SECONDS
        self.logger = logger.bind(component="tenant_directory")

    async def resolve(
        self,
        tenant_id: str | uuid.UUID | None = None,
        called_number: str | None = None,
    ) -> TenantConfig:
        """Resolve call metadata to a tenant snapshot.

        The explicit tenant id wins; the called number is only consulted when
        no id was supplied.

        Raises:
            TenantNotFoundError: If no active tenant matches
            ConfigurationError: If the tenant's stored configuration is invalid
        """
        if tenant_id:
            try:
                parsed_id = tenant_id if isinstance(tenant_id, uuid.UUID) else uuid.UUID(str(tenant_id))
            except ValueError as e:
                raise TenantNotFoundError(f"Invalid tenant id {tenant_id!r}") from e
            return await self.get(parsed_id)

        if called_number:
            return await self._get_by_number(called_number)

        raise TenantNotFoundError("No tenant id or called number supplied")

    async def get(self, tenant_id: uuid.UUID) -> TenantConfig:
        """Load a tenant snapshot by id, using the cache when possible."""
        cached = await cache_get(tenant_cache_key(tenant_id))
        if cached is not None:
            try:
                return TenantConfig.model_validate(cached)
            except ValidationError:
                self.logger.warning("tenant_cache_entry_invalid", tenant_id=str(tenant_id))

        async with self.session_factory() as db:
            result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
            tenant = result.scalar_one_or_none()

        return await self._snapshot(tenant, lookup=str(tenant_id))

    async def _get_by_number(self, called_number: str) -> TenantConfig:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Tenant).where(Tenant.phone_number == called_number, Tenant.is_active.is_(True))
            )
            tenant = result.scalars().first()

        return await self._snapshot(tenant, lookup=called_number)

    async def _snapshot(self, tenant: Tenant | None, lookup: str) -> TenantConfig:
        if tenant is None or not tenant.is_active:
            self.logger.warning("tenant_not_found", lookup=lookup)
            raise TenantNotFoundError(f"No active tenant for {lookup!r}")

        config = TenantConfig.from_model(tenant)
        await cache_set(
            tenant_cache_key(config.tenant_id),
            config.model_dump(mode="json"),
            ttl=self.cache_ttl,
        )
        self.logger.debug("tenant_loaded", tenant_id=str(config.tenant_id))
        return config

    async def invalidate(self, tenant_id: uuid.UUID | str) -> None:
        """Drop a cached snapshot after the tenant row changes."""
        await cache_delete(tenant_cache_key(tenant_id))

