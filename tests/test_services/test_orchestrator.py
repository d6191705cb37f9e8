"""Tests for the call session orchestrator."""

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest
from fastapi import WebSocketDisconnect
from sqlalchemy import func, select

from receptionist.core.exceptions import ModelSessionError
from receptionist.models import Appointment, CallRecord, ConversationMessage
from receptionist.services.calls import CallRecorder
from receptionist.services.realtime.model_session import (
    AppendAudio,
    AssistantTranscript,
    AudioDelta,
    AudioDone,
    CallerTranscript,
    CreateResponse,
    FunctionCall,
    FunctionOutput,
    ModelError,
)
from receptionist.services.relay.orchestrator import CallOrchestrator
from receptionist.services.relay.state import CallOutcome, CallState
from receptionist.services.scheduling import SchedulingEngine
from receptionist.services.telephony.providers import ExotelAdapter, TwilioAdapter
from receptionist.services.tenants import TenantDirectory

_END = object()
_BINARY = object()


class FakeProviderConnection:
    """Provider websocket double fed from a queue."""

    def __init__(self) -> None:
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    def push(self, **message: Any) -> None:
        self.inbound.put_nowait(json.dumps(message))

    def push_raw(self, raw: str) -> None:
        self.inbound.put_nowait(raw)

    def hang_up(self) -> None:
        self.inbound.put_nowait(_END)

    def push_binary(self) -> None:
        self.inbound.put_nowait(_BINARY)

    async def receive_text(self) -> str:
        message = await self.inbound.get()
        if message is _END:
            raise WebSocketDisconnect(code=1000)
        if message is _BINARY:
            # What Starlette's receive_text does with a bytes frame
            raise KeyError("text")
        return message

    async def send_json(self, data: Any) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True


class FakeModelSession:
    """Model session double; events are pushed by the test."""

    def __init__(self, connect_error: Exception | None = None) -> None:
        self.connect_error = connect_error
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[Any] = []
        self.greeted = False
        self.close_count = 0
        self.tenant = None
        self.audio_format = None

    @property
    def is_open(self) -> bool:
        return self.close_count == 0

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error

    async def greet(self) -> None:
        self.greeted = True
        self.sent.append(CreateResponse(instructions="greeting"))

    async def send(self, directive: Any) -> None:
        self.sent.append(directive)

    def emit(self, event: Any) -> None:
        self.incoming.put_nowait(event)

    async def events(self):
        while True:
            event = await self.incoming.get()
            if isinstance(event, Exception):
                raise event
            if event is _END:
                return
            yield event

    async def close(self) -> None:
        self.close_count += 1
        self.incoming.put_nowait(_END)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


def twilio_start(tenant_id: Any = None, stream_sid: str = "MZ1") -> dict[str, Any]:
    parameters = {"from": "+15557654321", "to": "+15551234567"}
    if tenant_id is not None:
        parameters["tenant_id"] = str(tenant_id)
    return {
        "event": "start",
        "streamSid": stream_sid,
        "start": {"streamSid": stream_sid, "callSid": "CA1", "customParameters": parameters},
    }


@pytest.fixture
def provider() -> FakeProviderConnection:
    return FakeProviderConnection()


@pytest.fixture
def model() -> FakeModelSession:
    return FakeModelSession()


@pytest.fixture
def make_orchestrator(session_factory: Any, fixed_clock: Any, provider: FakeProviderConnection, model: Any) -> Any:
    """Build an orchestrator wired to the test database and fakes."""
    directory = TenantDirectory(session_factory)

    def _make(adapter: Any = None, model_session: Any = None, **kwargs: Any) -> CallOrchestrator:
        session = model_session or model

        def model_factory(tenant: Any, audio_format: str) -> Any:
            session.tenant = tenant
            session.audio_format = audio_format
            return session

        return CallOrchestrator(
            provider,
            adapter or TwilioAdapter(),
            tenant_resolver=directory.resolve,
            recorder=CallRecorder(session_factory),
            model_session_factory=model_factory,
            scheduling_engine_factory=lambda tenant: SchedulingEngine(session_factory, tenant, clock=fixed_clock),
            **kwargs,
        )

    return _make


async def record_for(session_factory: Any, orchestrator: CallOrchestrator) -> CallRecord:
    async with session_factory() as db:
        return await db.get(CallRecord, orchestrator.call.call_record_id)


class TestCallLifecycle:
    """Test a call from start to persistence."""

    @pytest.mark.asyncio
    async def test_twilio_call_relays_audio_both_ways(
        self,
        make_orchestrator: Any,
        provider: FakeProviderConnection,
        model: FakeModelSession,
        tenant: Any,
        session_factory: Any,
    ) -> None:
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        provider.push(event="connected", protocol="Call")
        provider.push(**twilio_start(tenant.id))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)

        assert model.greeted is True
        assert model.audio_format == "g711_ulaw"

        provider.push(event="media", media={"payload": "AAAA"})
        provider.push(event="media", media={"payload": "BBBB"})
        model.emit(AudioDelta("ZZZZ"))
        model.emit(AudioDone())
        model.emit(CallerTranscript("I'd like to book a cleaning"))
        model.emit(AssistantTranscript("Sure, which day?"))

        await wait_until(lambda: len(provider.sent) == 1)
        await wait_until(lambda: AppendAudio("BBBB") in model.sent)
        await wait_until(lambda: len(orchestrator.call.transcript) == 2)

        provider.push(event="stop", stop={})
        call = await asyncio.wait_for(run, 2.0)

        audio = [d for d in model.sent if isinstance(d, AppendAudio)]
        assert audio == [AppendAudio("AAAA"), AppendAudio("BBBB")]
        assert provider.sent == [{"event": "media", "streamSid": "MZ1", "media": {"payload": "ZZZZ"}}]

        assert call.state is CallState.CLOSED
        assert call.end_reason == "provider_stop"
        assert call.outcome is CallOutcome.INQUIRY
        assert model.close_count == 1
        assert provider.closed is True

        record = await record_for(session_factory, orchestrator)
        assert record.status == "completed"
        assert record.outcome == "inquiry"
        assert record.end_reason == "provider_stop"
        assert record.provider_call_id == "CA1"
        assert "[Caller]: I'd like to book a cleaning" in record.transcript

    @pytest.mark.asyncio
    async def test_exotel_sequence_and_mark(
        self,
        make_orchestrator: Any,
        provider: FakeProviderConnection,
        model: FakeModelSession,
        tenant: Any,
    ) -> None:
        orchestrator = make_orchestrator(adapter=ExotelAdapter(), tenant_id=str(tenant.id))
        run = asyncio.create_task(orchestrator.run())

        provider.push(
            event="start",
            start={"stream_sid": "st-1", "call_sid": "call-1", "from": "+919800000000", "to": "+911100000000"},
        )
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)
        assert model.audio_format == "pcm16"

        provider.push(event="media", media={"chunk": "UENN"})
        model.emit(AudioDelta("AAAA"))
        model.emit(AudioDelta("BBBB"))
        model.emit(AudioDone())
        await wait_until(lambda: len(provider.sent) == 3)

        provider.hang_up()
        call = await asyncio.wait_for(run, 2.0)

        assert [frame["sequence_number"] for frame in provider.sent] == [1, 2, 3]
        assert [frame["event"] for frame in provider.sent] == ["media", "media", "mark"]
        assert AppendAudio("UENN") in model.sent
        assert call.end_reason == "provider_disconnected"

    @pytest.mark.asyncio
    async def test_tenant_resolved_by_called_number(
        self, make_orchestrator: Any, provider: FakeProviderConnection, tenant: Any
    ) -> None:
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start())
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)
        provider.hang_up()
        call = await asyncio.wait_for(run, 2.0)

        assert call.tenant_id == str(tenant.id)

    @pytest.mark.asyncio
    async def test_media_before_model_ready_is_dropped(
        self, make_orchestrator: Any, provider: FakeProviderConnection, model: FakeModelSession
    ) -> None:
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        provider.push(event="media", media={"payload": "AAAA"})
        provider.push(event="media", media={"payload": "BBBB"})
        provider.hang_up()
        call = await asyncio.wait_for(run, 2.0)

        assert call.dropped_frames == 2
        assert not any(isinstance(d, AppendAudio) for d in model.sent)

    @pytest.mark.asyncio
    async def test_hang_up_before_start(
        self, make_orchestrator: Any, provider: FakeProviderConnection, model: FakeModelSession
    ) -> None:
        orchestrator = make_orchestrator()
        provider.hang_up()

        call = await asyncio.wait_for(orchestrator.run(), 2.0)

        assert call.state is CallState.CLOSED
        assert call.end_reason == "provider_disconnected"
        assert call.call_record_id is None
        assert model.close_count == 0

    @pytest.mark.asyncio
    async def test_duplicate_start_is_ignored(
        self, make_orchestrator: Any, provider: FakeProviderConnection, tenant: Any
    ) -> None:
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start(tenant.id, stream_sid="MZ1"))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)
        provider.push(**twilio_start(tenant.id, stream_sid="MZ2"))
        provider.hang_up()
        call = await asyncio.wait_for(run, 2.0)

        assert call.stream_id == "MZ1"

    @pytest.mark.asyncio
    async def test_malformed_provider_frames_are_skipped(
        self, make_orchestrator: Any, provider: FakeProviderConnection, model: FakeModelSession, tenant: Any
    ) -> None:
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start(tenant.id))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)
        provider.push_raw("{not json")
        provider.push(event="bogus")
        provider.push(event="media", media={"payload": "AAAA"})
        await wait_until(lambda: AppendAudio("AAAA") in model.sent)
        provider.hang_up()
        call = await asyncio.wait_for(run, 2.0)

        assert call.end_reason == "provider_disconnected"

    @pytest.mark.asyncio
    async def test_binary_frame_is_skipped(
        self, make_orchestrator: Any, provider: FakeProviderConnection, model: FakeModelSession, tenant: Any
    ) -> None:
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start(tenant.id))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)
        provider.push_binary()
        provider.push(event="media", media={"payload": "AAAA"})
        await wait_until(lambda: AppendAudio("AAAA") in model.sent)
        provider.hang_up()
        call = await asyncio.wait_for(run, 2.0)

        assert call.end_reason == "provider_disconnected"
        assert call.outcome is CallOutcome.INQUIRY


class TestTenantSelection:
    """Test which tenant a call is attributed to."""

    @pytest.mark.asyncio
    async def test_url_tenant_wins_over_custom_parameter(
        self,
        make_orchestrator: Any,
        provider: FakeProviderConnection,
        model: FakeModelSession,
        tenant: Any,
        create_test_tenant: Any,
    ) -> None:
        other = await create_test_tenant(name="Other Clinic", phone_number="+15552223333")
        orchestrator = make_orchestrator(tenant_id=str(tenant.id))
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start(other.id))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)
        provider.hang_up()
        call = await asyncio.wait_for(run, 2.0)

        assert call.tenant_id == str(tenant.id)
        assert model.tenant.tenant_id == tenant.id

    @pytest.mark.asyncio
    async def test_custom_parameter_used_without_url_tenant(
        self,
        make_orchestrator: Any,
        provider: FakeProviderConnection,
        model: FakeModelSession,
        tenant: Any,
        create_test_tenant: Any,
    ) -> None:
        other = await create_test_tenant(name="Other Clinic", phone_number="+15552223333")
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        # The called number belongs to the default tenant; the parameter still wins
        provider.push(**twilio_start(other.id))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)
        provider.hang_up()
        call = await asyncio.wait_for(run, 2.0)

        assert call.tenant_id == str(other.id)
        assert model.tenant.tenant_id == other.id


class TestEstablishmentFailures:
    """Test calls whose model session never opens."""

    @pytest.mark.asyncio
    async def test_unknown_tenant(
        self, make_orchestrator: Any, provider: FakeProviderConnection, model: FakeModelSession
    ) -> None:
        orchestrator = make_orchestrator(tenant_id="00000000-0000-0000-0000-000000000000")

        provider.push(**twilio_start())
        call = await asyncio.wait_for(orchestrator.run(), 2.0)

        assert call.outcome is CallOutcome.FAILED
        assert call.end_reason == "establishment_failed:configuration"
        assert call.call_record_id is None
        assert provider.closed is True
        assert model.greeted is False

    @pytest.mark.asyncio
    async def test_model_connection_failure(
        self, make_orchestrator: Any, provider: FakeProviderConnection, tenant: Any, session_factory: Any
    ) -> None:
        failing = FakeModelSession(connect_error=ModelSessionError("unreachable"))
        orchestrator = make_orchestrator(model_session=failing)

        provider.push(**twilio_start(tenant.id))
        call = await asyncio.wait_for(orchestrator.run(), 2.0)

        assert call.outcome is CallOutcome.FAILED
        assert call.end_reason == "establishment_failed:transport"
        assert failing.close_count == 1

        record = await record_for(session_factory, orchestrator)
        assert record.status == "failed"
        assert record.outcome == "failed"


class TestModelSide:
    """Test model-originated events and failures."""

    @pytest.mark.asyncio
    async def test_function_call_books_and_replies(
        self,
        make_orchestrator: Any,
        provider: FakeProviderConnection,
        model: FakeModelSession,
        tenant: Any,
        session_factory: Any,
    ) -> None:
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start(tenant.id))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)

        model.emit(
            FunctionCall(
                call_id="call_1",
                name="book_appointment",
                arguments=json.dumps(
                    {
                        "customer_name": "John Doe",
                        "customer_phone": "+15557654321",
                        "date": "2030-01-07",
                        "time": "09:00",
                    }
                ),
            )
        )
        await wait_until(lambda: any(isinstance(d, FunctionOutput) for d in model.sent))
        provider.hang_up()
        call = await asyncio.wait_for(run, 2.0)

        output = next(d for d in model.sent if isinstance(d, FunctionOutput))
        assert output.call_id == "call_1"
        assert output.output["success"] is True
        assert model.sent[model.sent.index(output) + 1] == CreateResponse()
        assert call.outcome is CallOutcome.BOOKED

        async with session_factory() as db:
            appointment = (await db.execute(select(Appointment))).scalar_one()
        assert appointment.call_record_id == call.call_record_id

        record = await record_for(session_factory, orchestrator)
        assert record.outcome == "booked"

    @pytest.mark.asyncio
    async def test_inflight_tool_call_finishes_before_teardown(
        self,
        make_orchestrator: Any,
        provider: FakeProviderConnection,
        model: FakeModelSession,
        tenant: Any,
        session_factory: Any,
    ) -> None:
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start(tenant.id))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)

        model.emit(
            FunctionCall(
                call_id="call_1",
                name="book_appointment",
                arguments=json.dumps(
                    {
                        "customer_name": "John Doe",
                        "customer_phone": "+15557654321",
                        "date": "2030-01-07",
                        "time": "09:40",
                    }
                ),
            )
        )
        # Hang up right away; the booking still commits
        await wait_until(lambda: bool(orchestrator._tool_tasks or orchestrator.call.tool_log))
        provider.hang_up()
        call = await asyncio.wait_for(run, 5.0)

        assert call.outcome is CallOutcome.BOOKED
        async with session_factory() as db:
            count = len((await db.execute(select(Appointment))).scalars().all())
        assert count == 1

    @pytest.mark.asyncio
    async def test_fatal_model_error_ends_call(
        self, make_orchestrator: Any, provider: FakeProviderConnection, model: FakeModelSession, tenant: Any
    ) -> None:
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start(tenant.id))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)
        model.emit(ModelError(code="invalid_value", message="bad", fatal=False))
        model.emit(ModelError(code="session_expired", message="expired", fatal=True))
        call = await asyncio.wait_for(run, 2.0)

        assert call.end_reason == "model_error"
        assert provider.closed is True

    @pytest.mark.asyncio
    async def test_model_connection_lost(
        self, make_orchestrator: Any, provider: FakeProviderConnection, model: FakeModelSession, tenant: Any
    ) -> None:
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start(tenant.id))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)
        model.emit(ModelSessionError("reset"))
        call = await asyncio.wait_for(run, 2.0)

        assert call.end_reason == "model_transport_error"
        assert call.state is CallState.CLOSED

    @pytest.mark.asyncio
    async def test_model_closes_normally(
        self, make_orchestrator: Any, provider: FakeProviderConnection, model: FakeModelSession, tenant: Any
    ) -> None:
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start(tenant.id))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)
        model.emit(_END)
        call = await asyncio.wait_for(run, 2.0)

        assert call.end_reason == "model_closed"


class TestTimeouts:
    """Test the hardening limits."""

    @pytest.mark.asyncio
    async def test_provider_inactivity(self, make_orchestrator: Any) -> None:
        orchestrator = make_orchestrator(inactivity_timeout=0.05)

        call = await asyncio.wait_for(orchestrator.run(), 2.0)

        assert call.end_reason == "provider_inactivity"

    @pytest.mark.asyncio
    async def test_max_duration(
        self, make_orchestrator: Any, provider: FakeProviderConnection, tenant: Any
    ) -> None:
        orchestrator = make_orchestrator(max_duration=0.2)
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start(tenant.id))
        call = await asyncio.wait_for(run, 2.0)

        assert call.end_reason == "max_duration"
        assert call.state is CallState.CLOSED


class TestFinalize:
    @pytest.mark.asyncio
    async def test_finalize_is_idempotent(
        self, make_orchestrator: Any, provider: FakeProviderConnection, model: FakeModelSession, tenant: Any
    ) -> None:
        orchestrator = make_orchestrator()
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start(tenant.id))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)
        provider.hang_up()
        await asyncio.wait_for(run, 2.0)

        # Second teardown is a no-op
        await orchestrator.finalize()

        assert model.close_count == 1
        assert orchestrator.call.state is CallState.CLOSED

    @pytest.mark.asyncio
    async def test_stop_then_disconnect_persists_once(
        self,
        make_orchestrator: Any,
        provider: FakeProviderConnection,
        model: FakeModelSession,
        tenant: Any,
        session_factory: Any,
    ) -> None:
        orchestrator = make_orchestrator()
        recorder = orchestrator.recorder
        finalize_calls = []

        async def counting_finalize(call: Any) -> bool:
            finalize_calls.append(call.session_id)
            return await CallRecorder.finalize_call(recorder, call)

        recorder.finalize_call = counting_finalize
        run = asyncio.create_task(orchestrator.run())

        provider.push(**twilio_start(tenant.id))
        await wait_until(lambda: orchestrator.call.state is CallState.STREAMING)
        model.emit(CallerTranscript("Are you open on Monday?"))
        await wait_until(lambda: len(orchestrator.call.transcript) == 1)

        provider.push(event="stop", stop={})
        provider.hang_up()
        call = await asyncio.wait_for(run, 2.0)

        # The disconnect arrives after teardown already ran
        orchestrator.request_close("provider_disconnected")
        await orchestrator.finalize()

        assert call.end_reason == "provider_stop"
        assert finalize_calls == [call.session_id]
        async with session_factory() as db:
            count = await db.scalar(
                select(func.count())
                .select_from(ConversationMessage)
                .where(ConversationMessage.call_record_id == call.call_record_id)
            )
        assert count == 1
