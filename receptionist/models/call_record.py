"""Call record model for logging phone calls."""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from receptionist.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from receptionist.models.conversation_message import ConversationMessage


class CallRecord(Base, TimestampMixin):
    """One provider call, opened on the stream start and finalized at teardown."""

    __tablename__ = "call_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Provider identifiers
    provider: Mapped[str] = mapped_column(String(20), nullable=False, comment="twilio or exotel")
    provider_call_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    stream_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    from_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    to_number: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # in_progress -> completed | failed
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="in_progress")
    # inquiry, booked, cancelled, transferred, failed
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    end_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)

    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    dropped_frames: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    messages: Mapped[list["ConversationMessage"]] = relationship(
        "ConversationMessage",
        back_populates="call_record",
        cascade="all, delete-orphan",
        order_by="ConversationMessage.position",
    )

    def __repr__(self) -> str:
        return f"<CallRecord {self.provider}:{self.provider_call_id} ({self.status})>"
