"""Per-call session state."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from receptionist.core.exceptions import InvalidStateTransitionError
from receptionist.services.tenants import TenantConfig


class CallState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


ALLOWED_TRANSITIONS: dict[CallState, frozenset[CallState]] = {
    # IDLE -> CLOSING when the provider hangs up before sending start
    CallState.IDLE: frozenset({CallState.CONNECTING, CallState.CLOSING}),
    CallState.CONNECTING: frozenset({CallState.STREAMING, CallState.CLOSING}),
    CallState.STREAMING: frozenset({CallState.STREAMING, CallState.CLOSING}),
    CallState.CLOSING: frozenset({CallState.CLOSED}),
    CallState.CLOSED: frozenset(),
}


class CallOutcome(str, Enum):
    INQUIRY = "inquiry"
    BOOKED = "booked"
    CANCELLED = "cancelled"
    TRANSFERRED = "transferred"
    FAILED = "failed"


class Speaker(str, Enum):
    CALLER = "caller"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TranscriptEntry:
    speaker: Speaker
    text: str
    at: datetime


@dataclass(frozen=True)
class ToolInvocation:
    call_id: str
    name: str
    arguments: dict[str, Any]
    result: dict[str, Any]
    at: datetime


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class CallSession:
    """Everything known about one live call.

    Owned by a single orchestrator and handed to the tool dispatcher; it is
    never shared between calls.
    """

    provider: str
    session_id: uuid.UUID = field(default_factory=uuid.uuid4)
    state: CallState = CallState.IDLE

    stream_id: str | None = None
    call_id: str | None = None
    tenant_id: str | None = None
    tenant: TenantConfig | None = None
    from_number: str | None = None
    to_number: str | None = None
    call_record_id: uuid.UUID | None = None

    transcript: list[TranscriptEntry] = field(default_factory=list)
    tool_log: list[ToolInvocation] = field(default_factory=list)

    started_at: datetime = field(default_factory=_utcnow)
    ended_at: datetime | None = None
    outcome: CallOutcome = CallOutcome.INQUIRY
    end_reason: str | None = None
    dropped_frames: int = 0
    finalized: bool = False

    def transition(self, target: CallState) -> None:
        """Move to ``target`` or raise if that edge does not exist."""
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(f"Cannot move call from {self.state.value} to {target.value}")
        self.state = target

    def can_transition(self, target: CallState) -> bool:
        return target in ALLOWED_TRANSITIONS[self.state]

    def add_transcript(self, speaker: Speaker, text: str) -> None:
        text = text.strip()
        if text:
            self.transcript.append(TranscriptEntry(speaker=speaker, text=text, at=_utcnow()))

    def log_tool(self, call_id: str, name: str, arguments: dict[str, Any], result: dict[str, Any]) -> None:
        self.tool_log.append(
            ToolInvocation(call_id=call_id, name=name, arguments=arguments, result=result, at=_utcnow())
        )

    def set_outcome(self, outcome: CallOutcome) -> None:
        # A transfer is the final word on the call
        if self.outcome is CallOutcome.TRANSFERRED:
            return
        self.outcome = outcome

    def format_transcript(self) -> str:
        """Transcript as ``[Speaker]: text`` lines."""
        return "\n".join(f"[{entry.speaker.value.capitalize()}]: {entry.text}" for entry in self.transcript)

    @property
    def duration_seconds(self) -> int | None:
        if self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds())
