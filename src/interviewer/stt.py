"""
Transcription gateway.

One utterance in, one transcript out. Stateless per call; every vendor
failure surfaces as ProviderError.

- Deepgram: pre-recorded /v1/listen REST call (nova-2, smart_format)
- OpenAI: Whisper transcription of the utterance wrapped as WAV
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog
from openai import AsyncOpenAI, OpenAIError

from src.interviewer.audio import write_wav_mono_pcm16
from src.interviewer.config import get_config
from src.interviewer.errors import ProviderError

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "https://api.deepgram.com/v1/listen"


def parse_encoding_hint(encoding_hint: str) -> tuple[str, int]:
    """
    Split an encoding hint like "linear16;rate=16000" into (encoding, sample_rate).

    Unknown or missing rates default to 16000.
    """
    encoding, _, rest = (encoding_hint or "linear16").partition(";")
    sample_rate = 16000
    for part in rest.split(";"):
        key, _, value = part.partition("=")
        if key.strip() == "rate":
            try:
                sample_rate = int(value)
            except ValueError:
                pass
    return encoding.strip().lower() or "linear16", sample_rate


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_requests: int = 0
    failures: int = 0
    total_audio_ms: float = 0.0
    avg_latency_ms: float = 0.0

    def record(self, audio_ms: float, latency_ms: float) -> None:
        self.total_requests += 1
        self.total_audio_ms += audio_ms
        n = self.total_requests
        self.avg_latency_ms = (self.avg_latency_ms * (n - 1) + latency_ms) / n


class TranscriptionProvider(ABC):
    name: str = ""

    def __init__(self) -> None:
        self.metrics = STTMetrics()

    @abstractmethod
    async def transcribe(self, audio: bytes, encoding_hint: str = "linear16;rate=16000") -> str:
        """
        Transcribe one utterance.

        Returns:
            The transcript, possibly empty

        Raises:
            ProviderError: On any provider failure
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class DeepgramTranscriber(TranscriptionProvider):
    """Deepgram pre-recorded transcription over HTTPS."""

    name = "deepgram"

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self.config = config or get_config()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.provider_timeout_seconds)
        return self._client

    async def transcribe(self, audio: bytes, encoding_hint: str = "linear16;rate=16000") -> str:
        encoding, sample_rate = parse_encoding_hint(encoding_hint)
        params = {
            "model": self.config.deepgram_stt_model,
            "smart_format": "true",
            "punctuate": "true",
        }
        content_type = "audio/wav"
        if encoding == "linear16":
            params.update({"encoding": "linear16", "sample_rate": str(sample_rate), "channels": "1"})
            content_type = "audio/raw"

        start = time.time()
        try:
            response = await self._get_client().post(
                DEEPGRAM_LISTEN_URL,
                params=params,
                headers={
                    "Authorization": f"Token {self.config.deepgram_api_key}",
                    "Content-Type": content_type,
                },
                content=audio,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            self.metrics.failures += 1
            raise ProviderError(
                f"Deepgram returned status {e.response.status_code}",
                provider=self.name,
                operation="transcribe",
                cause=e,
            )
        except (httpx.HTTPError, ValueError) as e:
            self.metrics.failures += 1
            raise ProviderError(
                f"Deepgram request failed: {e}",
                provider=self.name,
                operation="transcribe",
                cause=e,
            )

        transcript = extract_deepgram_transcript(data)
        latency_ms = (time.time() - start) * 1000
        self.metrics.record(audio_ms=len(audio) / (2 * sample_rate) * 1000, latency_ms=latency_ms)
        logger.info("Transcription received", provider=self.name, chars=len(transcript), latency_ms=round(latency_ms, 1))
        return transcript

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


def extract_deepgram_transcript(data: Any) -> str:
    """Pull the first alternative's transcript out of a Deepgram response."""
    try:
        return (data["results"]["channels"][0]["alternatives"][0].get("transcript") or "").strip()
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""


class OpenAITranscriber(TranscriptionProvider):
    """OpenAI Whisper transcription."""

    name = "openai"

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        super().__init__()
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)

    async def transcribe(self, audio: bytes, encoding_hint: str = "linear16;rate=16000") -> str:
        encoding, sample_rate = parse_encoding_hint(encoding_hint)
        wav = audio if encoding == "wav" else write_wav_mono_pcm16(audio, sample_rate)

        start = time.time()
        try:
            result = await self._client.audio.transcriptions.create(
                model=self.config.openai_stt_model,
                file=("utterance.wav", wav, "audio/wav"),
            )
        except OpenAIError as e:
            self.metrics.failures += 1
            raise ProviderError(
                f"OpenAI transcription failed: {e}",
                provider=self.name,
                operation="transcribe",
                cause=e,
            )

        transcript = (getattr(result, "text", "") or "").strip()
        latency_ms = (time.time() - start) * 1000
        self.metrics.record(audio_ms=len(wav) / (2 * sample_rate) * 1000, latency_ms=latency_ms)
        logger.info("Transcription received", provider=self.name, chars=len(transcript), latency_ms=round(latency_ms, 1))
        return transcript

    async def close(self) -> None:
        await self._client.close()


def create_transcriber(config: Optional[Any] = None) -> TranscriptionProvider:
    """Create the transcription provider selected by STT_PROVIDER."""
    config = config or get_config()
    provider = (config.stt_provider or "deepgram").strip().lower()
    if provider == "deepgram":
        return DeepgramTranscriber(config)
    if provider == "openai":
        return OpenAITranscriber(config)
    raise ValueError(f"Unsupported STT_PROVIDER: {config.stt_provider}")
