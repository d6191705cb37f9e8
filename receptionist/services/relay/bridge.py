"""Audio codec bridge.

The model is asked for the provider's native audio format, so the bridge only
reframes base64 payloads between the two wire formats and never transcodes.
"""

import asyncio
from typing import Any

import structlog

from receptionist.services.realtime.model_session import AppendAudio, ModelDirective
from receptionist.services.telephony.providers import ProviderAdapter

logger = structlog.get_logger()


class AudioBridge:
    """Moves audio between the provider outbox and the model outbox of one call."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        model_outbox: "asyncio.Queue[ModelDirective]",
        provider_outbox: "asyncio.Queue[dict[str, Any]]",
    ) -> None:
        self.adapter = adapter
        self.model_outbox = model_outbox
        self.provider_outbox = provider_outbox
        self.stream_id: str | None = None
        self.model_open = False
        self.dropped_frames = 0
        self.forwarded_frames = 0

    def attach_stream(self, stream_id: str) -> None:
        self.stream_id = stream_id

    def open_model(self) -> None:
        self.model_open = True

    def close_model(self) -> None:
        self.model_open = False

    def provider_to_model(self, payload: str) -> bool:
        """Queue caller audio for the model.

        Frames that arrive while the model is not open are dropped and
        counted, never buffered.
        """
        if not self.model_open:
            self.dropped_frames += 1
            return False

        self.model_outbox.put_nowait(AppendAudio(audio=payload))
        self.forwarded_frames += 1
        return True

    def model_to_provider(self, delta: str) -> bool:
        """Queue assistant audio for the provider."""
        if self.stream_id is None:
            logger.warning("audio_delta_without_stream", provider=self.adapter.name)
            return False

        self.provider_outbox.put_nowait(self.adapter.format_media(self.stream_id, delta))
        return True

    def turn_complete(self) -> None:
        """Emit the provider's end-of-turn frames, if it has any."""
        if self.stream_id is None:
            return
        for frame in self.adapter.format_turn_complete(self.stream_id):
            self.provider_outbox.put_nowait(frame)
