"""Tenant (business) model."""

import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from receptionist.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from receptionist.models.blackout_date import BlackoutDate
    from receptionist.models.service import Service


def default_working_hours() -> dict[str, dict[str, Any]]:
    """Monday to Friday 09:00-17:00, weekends configured but closed."""
    weekday = {"start": "09:00", "end": "17:00", "enabled": True}
    weekend = {"start": "10:00", "end": "14:00", "enabled": False}
    return {
        "monday": dict(weekday),
        "tuesday": dict(weekday),
        "wednesday": dict(weekday),
        "thursday": dict(weekday),
        "friday": dict(weekday),
        "saturday": dict(weekend),
        "sunday": dict(weekend),
    }


class Tenant(Base, TimestampMixin):
    """A business whose calls are answered by the receptionist.

    The relay reads this row once per call and works from an immutable
    snapshot (see ``TenantConfig``); nothing here is written during a call.
    """

    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(
        String(20), unique=True, nullable=True, comment="Number callers dial to reach this tenant"
    )
    timezone: Mapped[str] = mapped_column(String(50), nullable=False, default="America/New_York")

    # Conversation configuration
    business_type: Mapped[str | None] = mapped_column(
        String(100), nullable=True, comment="e.g. dental_clinic, salon, consultant"
    )
    system_prompt: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Custom instructions appended to the receptionist persona"
    )
    greeting_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # {"monday": {"start": "09:00", "end": "17:00", "enabled": true}, ...}
    working_hours: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=default_working_hours
    )

    # Booking settings
    slot_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    buffer_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    max_advance_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    # Human fallback
    fallback_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    fallback_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    provider: Mapped[str] = mapped_column(
        String(20), nullable=False, default="twilio", comment="Telephony provider: twilio or exotel"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    services: Mapped[list["Service"]] = relationship(
        "Service", back_populates="tenant", cascade="all, delete-orphan"
    )
    blackout_dates: Mapped[list["BlackoutDate"]] = relationship(
        "BlackoutDate", back_populates="tenant", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Tenant {self.id} {self.name!r}>"
