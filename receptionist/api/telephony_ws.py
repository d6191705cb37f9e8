"""Telephony WebSocket endpoints for Twilio and Exotel media streaming.

Both endpoints hand the socket to a ``CallOrchestrator``; the only difference
between them is the provider adapter.
"""

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receptionist.core.config import settings
from receptionist.db.session import get_session_factory
from receptionist.services.calls import CallRecorder
from receptionist.services.realtime.model_session import ModelSessionFactory, create_model_session
from receptionist.services.relay.orchestrator import CallOrchestrator
from receptionist.services.scheduling import SchedulingEngine
from receptionist.services.telephony.providers import ExotelAdapter, ProviderAdapter, TwilioAdapter
from receptionist.services.tenants import TenantConfig, TenantDirectory

router = APIRouter(prefix="/ws/telephony", tags=["telephony-ws"])
logger = structlog.get_logger()


def get_model_session_factory() -> ModelSessionFactory:
    """Dependency returning the model session factory (overridden in tests)."""
    return create_model_session


def build_orchestrator(
    websocket: WebSocket,
    adapter: ProviderAdapter,
    tenant_id: str | None,
    session_factory: async_sessionmaker[AsyncSession],
    model_session_factory: ModelSessionFactory,
) -> CallOrchestrator:
    directory = TenantDirectory(session_factory)

    def scheduling_engine_factory(tenant: TenantConfig) -> SchedulingEngine:
        return SchedulingEngine(session_factory, tenant)

    return CallOrchestrator(
        websocket,
        adapter,
        tenant_id=tenant_id,
        tenant_resolver=directory.resolve,
        recorder=CallRecorder(session_factory),
        model_session_factory=model_session_factory,
        scheduling_engine_factory=scheduling_engine_factory,
        inactivity_timeout=settings.PROVIDER_INACTIVITY_TIMEOUT_SECONDS,
        max_duration=settings.CALL_MAX_DURATION_SECONDS,
    )


async def _relay_call(
    websocket: WebSocket,
    adapter: ProviderAdapter,
    tenant_id: str | None,
    session_factory: async_sessionmaker[AsyncSession],
    model_session_factory: ModelSessionFactory,
) -> None:
    log = logger.bind(endpoint=f"{adapter.name}_media_stream", tenant_id=tenant_id)

    await websocket.accept()
    log.info(f"{adapter.name}_websocket_connected")

    orchestrator = build_orchestrator(
        websocket, adapter, tenant_id, session_factory, model_session_factory
    )
    try:
        await orchestrator.run()
    except WebSocketDisconnect:
        log.info(f"{adapter.name}_websocket_disconnected")
    except Exception as e:
        log.exception(f"{adapter.name}_websocket_error", error=str(e))
    finally:
        log.info(
            f"{adapter.name}_websocket_closed",
            session_id=str(orchestrator.call.session_id),
            stream_id=orchestrator.call.stream_id,
            call_id=orchestrator.call.call_id,
        )


@router.websocket("/twilio")
async def twilio_media_stream(
    websocket: WebSocket,
    tenant_id: str | None = Query(default=None),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    model_session_factory: ModelSessionFactory = Depends(get_model_session_factory),
) -> None:
    """WebSocket endpoint for Twilio Media Streams.

    Twilio sends mu-law audio at 8kHz; the model is asked for the same format.

    Message format from Twilio:
    - {"event": "connected", "protocol": "Call", "version": "1.0.0"}
    - {"event": "start", "start": {"streamSid": "...", "callSid": "...", "customParameters": {...}}}
    - {"event": "media", "media": {"payload": "base64_audio"}}
    - {"event": "stop"}
    """
    await _relay_call(websocket, TwilioAdapter(), tenant_id, session_factory, model_session_factory)


@router.websocket("/exotel")
async def exotel_media_stream(
    websocket: WebSocket,
    tenant_id: str | None = Query(default=None),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    model_session_factory: ModelSessionFactory = Depends(get_model_session_factory),
) -> None:
    """WebSocket endpoint for the Exotel voicebot stream.

    Exotel sends 16-bit linear PCM and expects a ``sequence_number`` on every
    outbound frame plus a ``mark`` at the end of each spoken turn.

    Message format from Exotel:
    - {"event": "start", "start": {"stream_sid": "...", "call_sid": "...", "from": "...", "to": "..."}}
    - {"event": "media", "media": {"chunk": "base64_audio"}}
    - {"event": "dtmf", "dtmf": {"digit": "1"}}
    - {"event": "stop", "stop": {"reason": "..."}}
    """
    await _relay_call(websocket, ExotelAdapter(), tenant_id, session_factory, model_session_factory)
