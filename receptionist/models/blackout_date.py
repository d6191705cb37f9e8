"""Blackout date model."""

import uuid
from datetime import date
from typing import TYPE_CHECKING

from sqlalchemy import Date, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from receptionist.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from receptionist.models.tenant import Tenant


class BlackoutDate(Base, TimestampMixin):
    """A calendar day on which the tenant takes no bookings."""

    __tablename__ = "blackout_dates"
    __table_args__ = (UniqueConstraint("tenant_id", "date", name="uq_blackout_dates_tenant_date"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day: Mapped[date] = mapped_column("date", Date, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="blackout_dates")

    def __repr__(self) -> str:
        return f"<BlackoutDate {self.day}>"
