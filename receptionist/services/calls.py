"""Call record persistence."""

import uuid

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receptionist.models.call_record import CallRecord
from receptionist.models.conversation_message import ConversationMessage
from receptionist.services.relay.state import CallOutcome, CallSession, ToolInvocation

logger = structlog.get_logger()


class CallRecorder:
    """Creates and finalizes ``CallRecord`` rows for live calls.

    Persistence failures are logged and swallowed: they must never keep the
    relay from tearing a call down.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def open_call(self, call: CallSession) -> uuid.UUID | None:
        """Insert an in-progress record for a call whose tenant is resolved."""
        log = logger.bind(session_id=str(call.session_id), provider=call.provider)
        if call.tenant is None:
            log.warning("call_record_skipped_no_tenant")
            return None

        try:
            async with self.session_factory() as db:
                record = CallRecord(
                    tenant_id=call.tenant.tenant_id,
                    provider=call.provider,
                    provider_call_id=call.call_id or "unknown",
                    stream_id=call.stream_id,
                    from_number=call.from_number,
                    to_number=call.to_number,
                    status="in_progress",
                    started_at=call.started_at,
                )
                db.add(record)
                await db.commit()
                record_id = record.id
        except SQLAlchemyError:
            log.exception("call_record_create_failed")
            return None

        log.info("call_record_created", call_record_id=str(record_id))
        return record_id

    async def finalize_call(self, call: CallSession) -> bool:
        """Write transcript, outcome and conversation messages.

        Returns:
            True if the record was updated
        """
        log = logger.bind(session_id=str(call.session_id), call_record_id=str(call.call_record_id))
        if call.call_record_id is None:
            log.info("call_record_finalize_skipped")
            return False

        try:
            async with self.session_factory() as db:
                record = await db.get(CallRecord, call.call_record_id)
                if record is None:
                    log.warning("call_record_not_found")
                    return False

                record.status = "failed" if call.outcome is CallOutcome.FAILED else "completed"
                record.outcome = call.outcome.value
                record.end_reason = call.end_reason
                record.transcript = call.format_transcript() or None
                record.dropped_frames = call.dropped_frames
                record.ended_at = call.ended_at
                record.duration_seconds = call.duration_seconds

                for position, message in enumerate(self._messages(call)):
                    message.call_record_id = record.id
                    message.position = position
                    db.add(message)

                await db.commit()
        except SQLAlchemyError:
            log.exception("call_record_finalize_failed")
            return False

        log.info(
            "call_record_finalized",
            outcome=call.outcome.value,
            duration_seconds=call.duration_seconds,
            message_count=len(call.transcript) + len(call.tool_log),
        )
        return True

    @staticmethod
    def _messages(call: CallSession) -> list[ConversationMessage]:
        """Transcript entries and tool invocations, in the order they happened."""
        timeline: list[tuple] = [(entry.at, 0, entry) for entry in call.transcript]
        timeline += [(invocation.at, 1, invocation) for invocation in call.tool_log]
        timeline.sort(key=lambda item: (item[0], item[1]))

        messages = []
        for _, _, item in timeline:
            if isinstance(item, ToolInvocation):
                messages.append(
                    ConversationMessage(
                        role="tool",
                        content=item.result.get("message") or item.result.get("error"),
                        tool_name=item.name,
                        tool_args=item.arguments,
                        tool_result=item.result,
                    )
                )
            else:
                messages.append(ConversationMessage(role=item.speaker.value, content=item.text))
        return messages
