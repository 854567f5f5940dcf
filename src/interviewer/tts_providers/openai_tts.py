from __future__ import annotations

import asyncio
from typing import Any, AsyncGenerator, Optional

import structlog
from openai import AsyncOpenAI, OpenAIError

from src.interviewer.config import get_config
from src.interviewer.errors import ProviderError
from src.interviewer.tts_providers.base import TTSProvider
from src.interviewer.tts_types import AudioChunk

logger = structlog.get_logger(__name__)


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    This provider synthesizes a full WAV and yields it as one chunk.
    """

    name = "openai"

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)
        self._cancelled = False
        self._inflight: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        self._cancelled = True
        if self._inflight and not self._inflight.done():
            self._inflight.cancel()

    async def _generate_wav(self, text: str, voice: str) -> bytes:
        resp = await self._client.audio.speech.create(
            model=self.config.openai_tts_model,
            voice=voice,
            input=text,
            response_format="wav",
        )
        data = getattr(resp, "content", None)
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        return await resp.aread()

    async def synthesize_streaming(
        self,
        text: str,
        *,
        voice: Optional[str] = None,
    ) -> AsyncGenerator[AudioChunk, None]:
        if not text or not text.strip():
            return

        self._cancelled = False
        task = asyncio.create_task(self._generate_wav(text, voice or self.config.openai_tts_voice))
        self._inflight = task

        try:
            wav_bytes = await task
        except asyncio.CancelledError:
            if self._cancelled:
                return
            raise
        except OpenAIError as e:
            logger.warning("OpenAI TTS failed", error=str(e))
            raise ProviderError(
                f"OpenAI TTS failed: {e}",
                provider=self.name,
                operation="synthesize",
                cause=e,
            )
        finally:
            if self._inflight is task:
                self._inflight = None

        if self._cancelled:
            return

        if not wav_bytes:
            raise ProviderError("OpenAI TTS returned no audio", provider=self.name, operation="synthesize")

        # WAV header carries the real sample rate; the scheduler resamples.
        yield AudioChunk(audio=wav_bytes, sample_rate=24000, sequence_hint=0, is_final=True)

    async def close(self) -> None:
        await self._client.close()
