from __future__ import annotations

import asyncio
from typing import Any, AsyncGenerator, Optional

import structlog

from src.interviewer.config import get_config
from src.interviewer.errors import ProviderError
from src.interviewer.tts_providers.base import TTSProvider
from src.interviewer.tts_providers.deepgram import DeepgramTTS
from src.interviewer.tts_providers.openai_tts import OpenAITTS
from src.interviewer.tts_types import AudioChunk

logger = structlog.get_logger(__name__)


def create_tts_provider(config: Optional[Any] = None) -> TTSProvider:
    config = config or get_config()
    tts = (config.tts_provider or "deepgram").strip().lower()
    if tts == "deepgram":
        return DeepgramTTS(config)
    if tts == "openai":
        return OpenAITTS(config)
    raise ValueError(f"Unsupported TTS_PROVIDER: {config.tts_provider}")


class SpeechSynthesizer:
    """
    Per-session speech synthesis gateway.

    - `deepgram`: streamed raw linear16 chunks (default)
    - `openai`: one WAV buffer per utterance

    Both shapes come out as AudioChunks with increasing `sequence_hint`.
    Each wait for the next chunk is bounded by PROVIDER_TIMEOUT_SECONDS, and
    a failure before the first chunk is retried PROVIDER_MAX_RETRIES times.
    """

    def __init__(self, config: Optional[Any] = None, provider: Optional[TTSProvider] = None):
        self.config = config or get_config()
        self._provider = provider

    @property
    def provider(self) -> TTSProvider:
        if self._provider is None:
            self._provider = create_tts_provider(self.config)
        return self._provider

    def cancel_current(self) -> None:
        if self._provider:
            self._provider.cancel()

    async def stop(self) -> None:
        self.cancel_current()
        if self._provider:
            await self._provider.close()
            self._provider = None

    async def synthesize(self, text: str) -> AsyncGenerator[AudioChunk, None]:
        """
        Synthesize `text`.

        Raises:
            ProviderError: If the provider fails, stalls, or produces no audio
        """
        attempts = max(0, self.config.provider_max_retries) + 1
        timeout = self.config.provider_timeout_seconds
        provider = self.provider
        sequence = 0

        for attempt in range(1, attempts + 1):
            produced = False
            gen = provider.synthesize_streaming(text)
            try:
                while True:
                    try:
                        chunk = await asyncio.wait_for(gen.__anext__(), timeout=timeout)
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError as e:
                        raise ProviderError(
                            f"Synthesis timed out after {timeout}s",
                            provider=provider.name,
                            operation="synthesize",
                            cause=e,
                        )
                    if chunk.audio:
                        produced = True
                    chunk.sequence_hint = sequence
                    sequence += 1
                    yield chunk
                return
            except ProviderError as e:
                if produced or attempt >= attempts:
                    raise
                logger.warning(
                    "Synthesis failed, retrying",
                    provider=provider.name,
                    attempt=attempt,
                    error=str(e),
                )
            finally:
                await gen.aclose()
