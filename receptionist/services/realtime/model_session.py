"""OpenAI Realtime session client for one call.

Outbound traffic is expressed as directive objects and inbound traffic is
parsed into typed events, so the orchestrator never touches raw protocol
dictionaries.
"""

import json
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from openai import AsyncOpenAI

from receptionist.core.config import settings
from receptionist.core.exceptions import ConfigurationError, MalformedMessageError, ModelSessionError
from receptionist.services.tenants import TenantConfig
from receptionist.services.tools.definitions import get_tool_definitions

logger = structlog.get_logger()

# Error codes after which the model session cannot continue
FATAL_ERROR_CODES = frozenset({"session_expired", "invalid_api_key", "insufficient_quota"})

DEFAULT_GREETING_INSTRUCTIONS = "Greet the caller warmly and ask how you can help them today."


# Outbound directives


@dataclass(frozen=True)
class AppendAudio:
    audio: str


@dataclass(frozen=True)
class FunctionOutput:
    call_id: str
    output: dict[str, Any]


@dataclass(frozen=True)
class CreateResponse:
    instructions: str | None = None


ModelDirective = AppendAudio | FunctionOutput | CreateResponse


# Inbound events


@dataclass(frozen=True)
class AudioDelta:
    delta: str


@dataclass(frozen=True)
class AudioDone:
    pass


@dataclass(frozen=True)
class AssistantTranscript:
    text: str


@dataclass(frozen=True)
class CallerTranscript:
    text: str


@dataclass(frozen=True)
class FunctionCall:
    call_id: str
    name: str
    arguments: str = "{}"


@dataclass(frozen=True)
class ModelError:
    code: str | None
    message: str
    fatal: bool = False
    details: dict[str, Any] = field(default_factory=dict)


ModelEvent = AudioDelta | AudioDone | AssistantTranscript | CallerTranscript | FunctionCall | ModelError


def build_instructions(tenant: TenantConfig, now: datetime | None = None) -> str:
    """Build the receptionist instructions for a tenant.

    The persona comes first, then business details, then the tenant's own
    instructions appended verbatim.
    """
    local_now = (now or datetime.now(UTC)).astimezone(tenant.zone)

    instructions = f"""You are a professional AI receptionist for {tenant.name}.

Your responsibilities:
- Answer calls professionally and warmly
- Help callers book or cancel appointments
- Answer questions about services and business hours
- Collect caller information (name, phone, preferred time)
- Confirm all details before finalizing bookings

Business Information:
- Name: {tenant.name}
- Type: {tenant.business_type or "General Business"}
- Timezone: {tenant.timezone}
- Today's date: {local_now:%A, %Y-%m-%d}
- Slot Duration: {tenant.slot_duration_minutes} minutes
- Working Hours:
{tenant.describe_working_hours()}

Guidelines:
- You are on a live phone call; be concise and natural
- Always confirm the date and time before booking
- If you cannot help, offer to transfer to a human
- Never make up availability - use the check_availability tool
- Always use the book_appointment tool to finalize bookings
"""

    if tenant.system_prompt:
        instructions += f"\n{tenant.system_prompt}"

    return instructions


def greeting_instructions(tenant: TenantConfig) -> str:
    if tenant.greeting_message:
        return f'Greet the caller by saying: "{tenant.greeting_message}"'
    return DEFAULT_GREETING_INSTRUCTIONS


def build_session_config(
    tenant: TenantConfig,
    audio_format: str,
    tools: list[dict[str, Any]],
    voice: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """``session.update`` payload for a call."""
    return {
        "modalities": ["text", "audio"],
        "instructions": build_instructions(tenant, now),
        "voice": voice,
        # Same format as the provider leg, so audio is relayed without transcoding
        "input_audio_format": audio_format,
        "output_audio_format": audio_format,
        "input_audio_transcription": {"model": "whisper-1"},
        "turn_detection": {
            "type": "server_vad",
            "threshold": 0.5,
            "prefix_padding_ms": 300,
            "silence_duration_ms": 500,
        },
        "tools": tools,
        "tool_choice": "auto",
    }


def _get(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _required_str(event: Any, key: str, event_type: str) -> str:
    value = _get(event, key)
    if not isinstance(value, str):
        raise MalformedMessageError(f"'{event_type}' event without '{key}'")
    return value


def parse_model_event(event: Any) -> ModelEvent | None:
    """Translate an SDK event (or raw dict) into a typed event.

    Returns None for event types the relay does not act on.

    Raises:
        MalformedMessageError: If a known event type lacks its required fields
    """
    event_type = _get(event, "type")
    if not isinstance(event_type, str):
        raise MalformedMessageError("Event without a type")

    if event_type == "response.audio.delta":
        return AudioDelta(delta=_required_str(event, "delta", event_type))

    if event_type == "response.audio.done":
        return AudioDone()

    if event_type == "response.audio_transcript.done":
        return AssistantTranscript(text=_required_str(event, "transcript", event_type))

    if event_type == "conversation.item.input_audio_transcription.completed":
        return CallerTranscript(text=_required_str(event, "transcript", event_type))

    if event_type == "response.function_call_arguments.done":
        arguments = _get(event, "arguments")
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments)
        return FunctionCall(
            call_id=_required_str(event, "call_id", event_type),
            name=_required_str(event, "name", event_type),
            arguments=arguments if isinstance(arguments, str) else "{}",
        )

    if event_type == "error":
        error = _get(event, "error")
        if error is None:
            raise MalformedMessageError("'error' event without 'error'")
        code = _get(error, "code")
        return ModelError(
            code=code,
            message=_get(error, "message") or "Unknown model error",
            fatal=code in FATAL_ERROR_CODES,
            details={"type": _get(error, "type"), "param": _get(error, "param")},
        )

    return None


class RealtimeModelSession:
    """One OpenAI Realtime connection, owned by one call.

    There is no reconnection: once the connection drops, the session stays
    closed and the call ends.
    """

    def __init__(
        self,
        tenant: TenantConfig,
        audio_format: str,
        tools: list[dict[str, Any]] | None = None,
        *,
        api_key: str | None = None,
        model: str | None = None,
        voice: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.tenant = tenant
        self.audio_format = audio_format
        self.tools = tools if tools is not None else get_tool_definitions()
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_REALTIME_MODEL
        self.voice = voice or settings.OPENAI_VOICE
        self.client = client
        self.connection: Any = None
        self._open = False
        self._closed = False
        self.logger = logger.bind(
            component="model_session",
            tenant_id=str(tenant.tenant_id),
            model=self.model,
        )

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self) -> None:
        """Open the connection and configure the session.

        Raises:
            ConfigurationError: If no API key is configured
            ModelSessionError: If the connection or configuration fails
        """
        if self.client is None:
            if not self.api_key:
                raise ConfigurationError("OpenAI API key not configured")
            self.client = AsyncOpenAI(api_key=self.api_key, timeout=settings.OPENAI_TIMEOUT)

        self.logger.info("connecting_to_openai_realtime", audio_format=self.audio_format)

        try:
            self.connection = await self.client.beta.realtime.connect(model=self.model).__aenter__()
            await self.connection.session.update(
                session=build_session_config(self.tenant, self.audio_format, self.tools, self.voice)
            )
        except Exception as e:
            self.logger.exception("realtime_connection_failed", error_type=type(e).__name__)
            await self.close()
            raise ModelSessionError(f"Realtime connection failed: {e}") from e

        self._open = True
        self.logger.info("session_configured", tool_count=len(self.tools))

    async def greet(self) -> None:
        """Ask the model to open the conversation."""
        await self.send(CreateResponse(instructions=greeting_instructions(self.tenant)))

    async def send(self, directive: ModelDirective) -> None:
        """Send one directive to the model.

        Raises:
            ModelSessionError: If the session is not open or the send fails
        """
        if not self._open or self.connection is None:
            raise ModelSessionError("Model session is not open")

        if not isinstance(directive, AppendAudio | FunctionOutput | CreateResponse):
            raise TypeError(f"Unsupported directive {type(directive).__name__}")

        try:
            if isinstance(directive, AppendAudio):
                await self.connection.input_audio_buffer.append(audio=directive.audio)
            elif isinstance(directive, FunctionOutput):
                await self.connection.conversation.item.create(
                    item={
                        "type": "function_call_output",
                        "call_id": directive.call_id,
                        "output": json.dumps(directive.output, default=str),
                    }
                )
            elif directive.instructions:
                await self.connection.response.create(response={"instructions": directive.instructions})
            else:
                await self.connection.response.create()
        except Exception as e:
            self._open = False
            raise ModelSessionError(f"Send failed: {e}") from e

    async def events(self) -> AsyncIterator[ModelEvent]:
        """Yield parsed model events until the connection closes.

        Malformed events are dropped with a warning.

        Raises:
            ModelSessionError: If the connection fails while reading
        """
        if self.connection is None:
            raise ModelSessionError("Model session is not open")

        try:
            async for raw in self.connection:
                try:
                    event = parse_model_event(raw)
                except MalformedMessageError as e:
                    self.logger.warning("malformed_model_event_dropped", error=str(e))
                    continue
                if event is not None:
                    yield event
        except Exception as e:
            if self._closed:
                return
            raise ModelSessionError(f"Realtime connection lost: {e}") from e
        finally:
            self._open = False

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._open = False

        if self.connection is not None:
            try:
                await self.connection.close()
            except Exception:
                self.logger.exception("connection_close_failed")

        self.logger.info("model_session_closed")


ModelSessionFactory = Callable[[TenantConfig, str], RealtimeModelSession]


def create_model_session(tenant: TenantConfig, audio_format: str) -> RealtimeModelSession:
    """Default factory used by the websocket endpoints."""
    return RealtimeModelSession(tenant, audio_format)
