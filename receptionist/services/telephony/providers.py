"""Telephony provider adapters.

Each adapter translates one provider's websocket wire format into normalized
stream events and back. The relay only ever talks to the ``ProviderAdapter``
interface and never branches on the provider name.
"""

import json
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from receptionist.core.exceptions import MalformedMessageError

# Custom stream parameter names that may carry the tenant id
TENANT_PARAMETER_KEYS = ("tenant_id", "tenantId", "businessId")


@dataclass(frozen=True)
class ConnectedEvent:
    pass


@dataclass(frozen=True)
class StartEvent:
    stream_id: str
    call_id: str
    tenant_id: str | None = None
    from_number: str | None = None
    to_number: str | None = None
    custom_parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MediaEvent:
    payload: str


@dataclass(frozen=True)
class DtmfEvent:
    digit: str


@dataclass(frozen=True)
class MarkEvent:
    name: str


@dataclass(frozen=True)
class StopEvent:
    reason: str | None = None


ProviderEvent = ConnectedEvent | StartEvent | MediaEvent | DtmfEvent | MarkEvent | StopEvent


def _decode(raw: str | bytes) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMessageError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessageError("Message is not a JSON object")
    return data


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise MalformedMessageError(f"'{data.get('event')}' event without '{key}' object")
    return value


def _required_str(section: dict[str, Any], key: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedMessageError(f"Missing '{key}'")
    return value


def _tenant_from(parameters: dict[str, Any]) -> str | None:
    for key in TENANT_PARAMETER_KEYS:
        if parameters.get(key):
            return str(parameters[key])
    return None


class ProviderAdapter(ABC):
    """Wire format of one telephony provider."""

    name: str
    # Audio format requested from the model for both directions
    audio_format: str

    def parse_inbound(self, raw: str | bytes) -> ProviderEvent:
        """Parse one inbound websocket message.

        Raises:
            MalformedMessageError: If the message is not valid for this provider
        """
        data = _decode(raw)
        event = data.get("event")

        if event == "connected":
            return ConnectedEvent()
        if event == "start":
            return self._parse_start(data)
        if event == "media":
            return MediaEvent(payload=self._media_payload(_section(data, "media")))
        if event == "dtmf":
            return DtmfEvent(digit=_required_str(_section(data, "dtmf"), "digit"))
        if event == "mark":
            return MarkEvent(name=_required_str(_section(data, "mark"), "name"))
        if event == "stop":
            stop = data.get("stop")
            reason = stop.get("reason") if isinstance(stop, dict) else None
            return StopEvent(reason=reason)

        raise MalformedMessageError(f"Unknown event type {event!r}")

    @abstractmethod
    def _parse_start(self, data: dict[str, Any]) -> StartEvent:
        pass

    @abstractmethod
    def _media_payload(self, media: dict[str, Any]) -> str:
        pass

    @abstractmethod
    def format_media(self, stream_id: str, payload: str) -> dict[str, Any]:
        """Outbound frame carrying one base64 audio chunk."""

    @abstractmethod
    def format_turn_complete(self, stream_id: str) -> list[dict[str, Any]]:
        """Frames to send when the assistant finishes a spoken turn."""


class TwilioAdapter(ProviderAdapter):
    """Twilio Media Streams: 8 kHz mu-law under ``media.payload``."""

    name = "twilio"
    audio_format = "g711_ulaw"

    def _parse_start(self, data: dict[str, Any]) -> StartEvent:
        start = _section(data, "start")
        parameters = start.get("customParameters") or {}
        if not isinstance(parameters, dict):
            raise MalformedMessageError("'customParameters' is not an object")

        return StartEvent(
            stream_id=start.get("streamSid") or _required_str(data, "streamSid"),
            call_id=_required_str(start, "callSid"),
            tenant_id=_tenant_from(parameters),
            from_number=parameters.get("from") or start.get("from"),
            to_number=parameters.get("to") or start.get("to"),
            custom_parameters=parameters,
        )

    def _media_payload(self, media: dict[str, Any]) -> str:
        return _required_str(media, "payload")

    def format_media(self, stream_id: str, payload: str) -> dict[str, Any]:
        return {"event": "media", "streamSid": stream_id, "media": {"payload": payload}}

    def format_turn_complete(self, stream_id: str) -> list[dict[str, Any]]:
        return []


class ExotelAdapter(ProviderAdapter):
    """Exotel voicebot stream: 16-bit PCM under ``media.chunk``.

    Every outbound frame carries a ``sequence_number`` that increases
    monotonically across media and mark frames of one stream. An adapter
    instance therefore belongs to exactly one call.
    """

    name = "exotel"
    audio_format = "pcm16"

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.sequence_number = 0

    def _next_sequence(self) -> int:
        self.sequence_number += 1
        return self.sequence_number

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _parse_start(self, data: dict[str, Any]) -> StartEvent:
        start = _section(data, "start")
        parameters = start.get("custom_parameters") or {}
        if not isinstance(parameters, dict):
            raise MalformedMessageError("'custom_parameters' is not an object")

        return StartEvent(
            stream_id=start.get("stream_sid") or _required_str(data, "stream_sid"),
            call_id=_required_str(start, "call_sid"),
            tenant_id=_tenant_from(parameters),
            from_number=start.get("from") or parameters.get("from"),
            to_number=start.get("to") or parameters.get("to"),
            custom_parameters=parameters,
        )

    def _media_payload(self, media: dict[str, Any]) -> str:
        return _required_str(media, "chunk")

    def format_media(self, stream_id: str, payload: str) -> dict[str, Any]:
        return {
            "event": "media",
            "sequence_number": self._next_sequence(),
            "stream_sid": stream_id,
            "media": {"chunk": payload, "timestamp": self._now_ms()},
        }

    def format_turn_complete(self, stream_id: str) -> list[dict[str, Any]]:
        return [
            {
                "event": "mark",
                "sequence_number": self._next_sequence(),
                "stream_sid": stream_id,
                "mark": {"name": f"response-{self._now_ms()}"},
            }
        ]


ADAPTERS: dict[str, type[ProviderAdapter]] = {
    TwilioAdapter.name: TwilioAdapter,
    ExotelAdapter.name: ExotelAdapter,
}


def get_adapter(provider: str) -> ProviderAdapter:
    """Fresh adapter instance for one call."""
    try:
        return ADAPTERS[provider]()
    except KeyError:
        raise ValueError(f"Unknown telephony provider {provider!r}") from None
