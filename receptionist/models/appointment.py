"""Appointment model."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from receptionist.db.base import Base, TimestampMixin


class AppointmentStatus:
    """Allowed values of ``Appointment.status``."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"

    # Statuses that occupy a slot
    ACTIVE = (PENDING, CONFIRMED)


ACTIVE_STATUS_CLAUSE = "status IN ('pending', 'confirmed')"


class Appointment(Base, TimestampMixin):
    """Booked slot for a customer.

    ``scheduled_at`` is always stored in UTC; the tenant's timezone is only
    used to translate the caller's local date/time at the edges.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_tenant_scheduled", "tenant_id", "scheduled_at"),
        # At most one active booking per tenant and start time
        Index(
            "uq_appointments_tenant_active_slot",
            "tenant_id",
            "scheduled_at",
            unique=True,
            postgresql_where=text(ACTIVE_STATUS_CLAUSE),
            sqlite_where=text(ACTIVE_STATUS_CLAUSE),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    service_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("services.id", ondelete="SET NULL"), nullable=True
    )
    call_record_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("call_records.id", ondelete="SET NULL"),
        nullable=True,
        comment="Call during which the appointment was booked",
    )

    # Denormalized so confirmations can be read without joins
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    service_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AppointmentStatus.CONFIRMED, index=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Appointment {self.customer_phone} at {self.scheduled_at} ({self.status})>"
