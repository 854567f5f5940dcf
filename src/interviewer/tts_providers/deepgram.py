from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Optional

import structlog
import websockets

from src.interviewer.config import get_config
from src.interviewer.errors import ProviderError
from src.interviewer.tts_providers.base import TTSProvider
from src.interviewer.tts_types import AudioChunk

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_WS_URL = "wss://api.deepgram.com/v1/speak"


@dataclass
class DeepgramTTSMetrics:
    """Metrics for TTS performance."""

    total_requests: int = 0
    total_characters: int = 0
    total_audio_ms: float = 0.0
    avg_first_byte_ms: float = 0.0

    def record_synthesis(self, *, characters: int, audio_ms: float, first_byte_ms: float) -> None:
        self.total_requests += 1
        self.total_characters += characters
        self.total_audio_ms += audio_ms
        n = self.total_requests
        self.avg_first_byte_ms = (self.avg_first_byte_ms * (n - 1) + first_byte_ms) / n


class DeepgramTTS(TTSProvider):
    """
    Deepgram Aura streaming TTS over WebSocket.

    Yields raw linear16 chunks at the playback sample rate as they arrive.
    """

    name = "deepgram"

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._metrics = DeepgramTTSMetrics()
        self._is_cancelled = False

    @property
    def metrics(self) -> DeepgramTTSMetrics:
        return self._metrics

    def cancel(self) -> None:
        self._is_cancelled = True
        logger.debug("Deepgram TTS cancelled")

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice: Optional[str] = None,
    ) -> AsyncGenerator[AudioChunk, None]:
        if not text or not text.strip():
            return

        self._is_cancelled = False
        sample_rate = self.config.playback_sample_rate
        model = voice or self.config.deepgram_tts_model
        url = (
            f"{DEEPGRAM_SPEAK_WS_URL}?model={model}"
            f"&encoding=linear16&sample_rate={sample_rate}"
        )
        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}

        start_time = time.time()
        first_byte_time: Optional[float] = None
        total_audio_bytes = 0
        sequence = 0

        try:
            async with websockets.connect(url, additional_headers=headers, open_timeout=10) as ws:
                await ws.send(json.dumps({"type": "Speak", "text": text}))
                await ws.send(json.dumps({"type": "Flush"}))

                async for message in ws:
                    if self._is_cancelled:
                        break

                    if isinstance(message, (bytes, bytearray)):
                        if not message:
                            continue
                        if first_byte_time is None:
                            first_byte_time = time.time()
                        total_audio_bytes += len(message)
                        yield AudioChunk(audio=bytes(message), sample_rate=sample_rate, sequence_hint=sequence)
                        sequence += 1
                        continue

                    try:
                        data = json.loads(message)
                    except json.JSONDecodeError:
                        continue

                    msg_type = data.get("type", "")
                    if msg_type == "Flushed":
                        break
                    if msg_type in ("Error", "Warning"):
                        logger.error("Deepgram TTS error", details=data)
                        if msg_type == "Error":
                            raise ProviderError(
                                f"Deepgram TTS error: {data.get('description') or data.get('err_msg')}",
                                provider=self.name,
                                operation="synthesize",
                            )

                try:
                    await ws.send(json.dumps({"type": "Close"}))
                except websockets.ConnectionClosed:
                    pass

        except asyncio.CancelledError:
            raise
        except ProviderError:
            raise
        except (websockets.WebSocketException, OSError) as e:
            raise ProviderError(
                f"Deepgram TTS connection failed: {e}",
                provider=self.name,
                operation="synthesize",
                cause=e,
            )

        if self._is_cancelled:
            return

        if total_audio_bytes == 0:
            raise ProviderError("Deepgram TTS returned no audio", provider=self.name, operation="synthesize")

        yield AudioChunk(audio=b"", sample_rate=sample_rate, sequence_hint=sequence, is_final=True)

        end_time = time.time()
        self._metrics.record_synthesis(
            characters=len(text),
            audio_ms=total_audio_bytes / (2 * sample_rate) * 1000,
            first_byte_ms=((first_byte_time or end_time) - start_time) * 1000,
        )
