"""Per-turn conversation log attached to a call record."""

import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from receptionist.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from receptionist.models.call_record import CallRecord


class ConversationMessage(Base, TimestampMixin):
    """A caller/assistant utterance or a tool invocation."""

    __tablename__ = "conversation_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    call_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("call_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, comment="Order within the call")

    # caller, assistant, tool
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)

    tool_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tool_args: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    tool_result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    call_record: Mapped["CallRecord"] = relationship("CallRecord", back_populates="messages")

    def __repr__(self) -> str:
        return f"<ConversationMessage #{self.position} {self.role}>"
