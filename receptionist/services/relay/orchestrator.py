"""Call session orchestrator.

One orchestrator owns one provider websocket for the whole call. It runs a
small group of tasks that only talk to each other through queues:

- provider reader: parses inbound provider frames
- provider writer: sends reframed model audio to the provider
- establishment: resolves the tenant and opens the model session
- model reader / model writer: the two directions of the model connection
- one task per in-flight function call

Teardown is idempotent: whichever side ends the call first wins, every later
closure path is a no-op.
"""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from fastapi import WebSocketDisconnect

from receptionist.core.exceptions import ConfigurationError, MalformedMessageError, ModelSessionError
from receptionist.services.calls import CallRecorder
from receptionist.services.realtime.model_session import (
    AssistantTranscript,
    AudioDelta,
    AudioDone,
    CallerTranscript,
    FunctionCall,
    ModelError,
    ModelEvent,
    ModelSessionFactory,
    RealtimeModelSession,
)
from receptionist.services.relay.bridge import AudioBridge
from receptionist.services.relay.state import CallOutcome, CallSession, CallState, Speaker
from receptionist.services.scheduling import SchedulingEngine
from receptionist.services.telephony.providers import (
    ConnectedEvent,
    DtmfEvent,
    MarkEvent,
    MediaEvent,
    ProviderAdapter,
    ProviderEvent,
    StartEvent,
    StopEvent,
)
from receptionist.services.tenants import TenantConfig
from receptionist.services.tools.dispatcher import ToolDispatcher

logger = structlog.get_logger()

# How long teardown waits for in-flight tool calls before cancelling them
TOOL_DRAIN_TIMEOUT_SECONDS = 5.0


class ProviderConnection(Protocol):
    """The subset of ``fastapi.WebSocket`` the orchestrator uses."""

    async def receive_text(self) -> str: ...

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


TenantResolver = Callable[[str | None, str | None], Awaitable[TenantConfig]]
SchedulingEngineFactory = Callable[[TenantConfig], SchedulingEngine]


class CallOrchestrator:
    """Drives one call from the provider ``start`` event to persistence."""

    def __init__(
        self,
        connection: ProviderConnection,
        adapter: ProviderAdapter,
        *,
        tenant_resolver: TenantResolver,
        recorder: CallRecorder,
        model_session_factory: ModelSessionFactory,
        scheduling_engine_factory: SchedulingEngineFactory,
        tenant_id: str | None = None,
        inactivity_timeout: float | None = None,
        max_duration: float | None = None,
    ) -> None:
        self.connection = connection
        self.adapter = adapter
        self.tenant_resolver = tenant_resolver
        self.recorder = recorder
        self.model_session_factory = model_session_factory
        self.scheduling_engine_factory = scheduling_engine_factory
        self.url_tenant_id = tenant_id
        # 0 disables either limit
        self.inactivity_timeout = inactivity_timeout or None
        self.max_duration = max_duration or None

        self.call = CallSession(provider=adapter.name)
        self.model_outbox: asyncio.Queue = asyncio.Queue()
        self.provider_outbox: asyncio.Queue = asyncio.Queue()
        self.bridge = AudioBridge(adapter, self.model_outbox, self.provider_outbox)
        self.model_session: RealtimeModelSession | None = None
        self.dispatcher: ToolDispatcher | None = None

        self._tasks: set[asyncio.Task] = set()
        self._tool_tasks: set[asyncio.Task] = set()
        self._shutdown = asyncio.Event()
        self.logger = logger.bind(
            component="call_orchestrator",
            session_id=str(self.call.session_id),
            provider=adapter.name,
        )

    async def run(self) -> CallSession:
        """Relay the call until it ends, then tear down and persist."""
        self.logger.info("call_session_started", tenant_id=self.url_tenant_id)
        self._spawn(self._provider_reader(), "provider_reader")
        self._spawn(self._provider_writer(), "provider_writer")

        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=self.max_duration)
        except TimeoutError:
            self.logger.warning("call_max_duration_reached", max_duration=self.max_duration)
            self.request_close("max_duration")
        finally:
            await self.finalize()

        return self.call

    def request_close(self, reason: str) -> None:
        """Start closing the call. The first reason given is kept."""
        if not self.call.can_transition(CallState.CLOSING):
            return

        self.call.end_reason = reason
        self.call.transition(CallState.CLOSING)
        self.bridge.close_model()
        self.logger.info("call_closing", reason=reason)
        self._shutdown.set()

    async def finalize(self) -> None:
        """Close both connections, then persist the call exactly once."""
        if self.call.finalized:
            return
        self.call.finalized = True

        self.request_close(self.call.end_reason or "finalized")
        self.call.ended_at = datetime.now(UTC)

        await self._drain_tool_tasks()

        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self.model_session is not None:
            await self.model_session.close()

        try:
            await self.connection.close()
        except Exception as e:
            # Provider already went away
            self.logger.debug("provider_close_skipped", error=str(e))

        self.call.transition(CallState.CLOSED)
        self.call.dropped_frames = self.bridge.dropped_frames

        await self.recorder.finalize_call(self.call)

        self.logger.info(
            "call_session_ended",
            tenant_id=self.call.tenant_id,
            reason=self.call.end_reason,
            outcome=self.call.outcome.value,
            duration_seconds=self.call.duration_seconds,
            transcript_entries=len(self.call.transcript),
            tool_calls=len(self.call.tool_log),
            forwarded_frames=self.bridge.forwarded_frames,
            dropped_frames=self.call.dropped_frames,
        )

    # Provider side

    async def _provider_reader(self) -> None:
        while True:
            try:
                if self.inactivity_timeout:
                    raw = await asyncio.wait_for(self.connection.receive_text(), self.inactivity_timeout)
                else:
                    raw = await self.connection.receive_text()
            except TimeoutError:
                self.logger.warning("provider_inactivity_timeout", timeout=self.inactivity_timeout)
                self.request_close("provider_inactivity")
                return
            except WebSocketDisconnect:
                self.logger.info("provider_disconnected")
                self.request_close("provider_disconnected")
                return
            except KeyError:
                # Binary frame; neither provider streams anything but JSON text
                self.logger.warning("malformed_provider_message_dropped", error="non-text frame")
                continue

            try:
                event = self.adapter.parse_inbound(raw)
            except MalformedMessageError as e:
                self.logger.warning("malformed_provider_message_dropped", error=str(e))
                continue

            self._handle_provider_event(event)
            if isinstance(event, StopEvent):
                return

    def _handle_provider_event(self, event: ProviderEvent) -> None:
        if isinstance(event, MediaEvent):
            self.bridge.provider_to_model(event.payload)

        elif isinstance(event, StartEvent):
            self._on_start(event)

        elif isinstance(event, StopEvent):
            self.logger.info("provider_stream_stopped", reason=event.reason)
            self.request_close("provider_stop")

        elif isinstance(event, DtmfEvent):
            self.logger.info("dtmf_received", digit=event.digit)

        elif isinstance(event, MarkEvent):
            self.logger.debug("mark_received", name=event.name)

        elif isinstance(event, ConnectedEvent):
            self.logger.info("provider_stream_connected")

    def _on_start(self, event: StartEvent) -> None:
        if self.call.state is not CallState.IDLE:
            self.logger.warning("duplicate_start_ignored", stream_id=event.stream_id)
            return

        self.call.stream_id = event.stream_id
        self.call.call_id = event.call_id
        self.call.from_number = event.from_number
        self.call.to_number = event.to_number
        self.call.tenant_id = self.url_tenant_id or event.tenant_id
        self.call.transition(CallState.CONNECTING)
        self.bridge.attach_stream(event.stream_id)

        self.logger = self.logger.bind(stream_id=event.stream_id, call_id=event.call_id)
        self.logger.info(
            "provider_stream_started",
            from_number=event.from_number,
            to_number=event.to_number,
            custom_parameters=sorted(event.custom_parameters),
        )

        self._spawn(self._establish(self.call.tenant_id, event.to_number), "establish")

    async def _provider_writer(self) -> None:
        while True:
            frame = await self.provider_outbox.get()
            try:
                await self.connection.send_json(frame)
            except Exception as e:
                self.logger.warning("provider_send_failed", error=str(e), error_type=type(e).__name__)
                self.request_close("provider_transport_error")
                return

    # Model side

    async def _establish(self, tenant_id: str | None, called_number: str | None) -> None:
        try:
            tenant = await self.tenant_resolver(tenant_id, called_number)
            self.call.tenant = tenant
            self.call.tenant_id = str(tenant.tenant_id)
            self.logger = self.logger.bind(tenant_id=self.call.tenant_id)

            self.call.call_record_id = await self.recorder.open_call(self.call)

            self.model_session = self.model_session_factory(tenant, self.adapter.audio_format)
            await self.model_session.connect()
            await self.model_session.greet()
        except ConfigurationError as e:
            self._establishment_failed("configuration", e)
            return
        except Exception as e:
            self._establishment_failed("transport", e)
            return

        if self.call.state is not CallState.CONNECTING:
            # Provider hung up while the model was connecting
            return

        self.dispatcher = ToolDispatcher(
            self.scheduling_engine_factory(tenant), self.call, self.model_outbox.put
        )
        self.call.transition(CallState.STREAMING)
        self.bridge.open_model()
        self._spawn(self._model_writer(), "model_writer")
        self._spawn(self._model_reader(), "model_reader")
        self.logger.info("call_streaming")

    def _establishment_failed(self, failure_kind: str, error: Exception) -> None:
        self.call.outcome = CallOutcome.FAILED
        self.logger.error(
            "session_establishment_failed",
            failure_kind=failure_kind,
            error=str(error),
            error_type=type(error).__name__,
        )
        self.request_close(f"establishment_failed:{failure_kind}")

    async def _model_writer(self) -> None:
        while True:
            directive = await self.model_outbox.get()
            try:
                await self.model_session.send(directive)
            except ModelSessionError as e:
                self.logger.error("model_send_failed", error=str(e))
                self.request_close("model_transport_error")
                return

    async def _model_reader(self) -> None:
        try:
            async for event in self.model_session.events():
                self._handle_model_event(event)
        except ModelSessionError as e:
            self.logger.error("model_connection_lost", error=str(e))
            self.request_close("model_transport_error")
            return

        self.logger.info("model_connection_closed")
        self.request_close("model_closed")

    def _handle_model_event(self, event: ModelEvent) -> None:
        if isinstance(event, AudioDelta):
            self.bridge.model_to_provider(event.delta)

        elif isinstance(event, AudioDone):
            self.bridge.turn_complete()

        elif isinstance(event, AssistantTranscript):
            self.call.add_transcript(Speaker.ASSISTANT, event.text)

        elif isinstance(event, CallerTranscript):
            self.call.add_transcript(Speaker.CALLER, event.text)

        elif isinstance(event, FunctionCall):
            self.logger.info("function_call_received", call_id=event.call_id, tool_name=event.name)
            task = self._spawn(self.dispatcher.dispatch(event), f"tool:{event.call_id}")
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)

        elif isinstance(event, ModelError):
            if event.fatal:
                self.logger.error(
                    "model_fatal_error", code=event.code, message=event.message, details=event.details
                )
                self.request_close("model_error")
            else:
                self.logger.warning("model_error", code=event.code, message=event.message, details=event.details)

    # Task bookkeeping

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error("relay_task_failed", task=task.get_name(), exc_info=error)
            self.request_close("internal_error")

    async def _drain_tool_tasks(self) -> None:
        """Let in-flight bookings commit before the connections are torn down."""
        pending = [task for task in self._tool_tasks if not task.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=TOOL_DRAIN_TIMEOUT_SECONDS)
        if still_running:
            self.logger.warning("tool_calls_abandoned", count=len(still_running))
