"""
Pytest configuration and fixtures.
"""

import asyncio
import os
from typing import AsyncGenerator, List, Optional
from unittest.mock import patch

import numpy as np
import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "OPENAI_API_KEY": "test_openai_key",
        "STT_PROVIDER": "deepgram",
        "TTS_PROVIDER": "deepgram",
        "LLM_PROVIDER": "groq",
        "DIALOGUE_MODE": "scripted",
        "VALIDATE_LLM_ON_STARTUP": "false",
        "PROVIDER_TIMEOUT_SECONDS": "2",
        "PROVIDER_MAX_RETRIES": "1",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.interviewer.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


def _noise(duration_s: float, sample_rate: int, amplitude: float, seed: int) -> bytes:
    rng = np.random.default_rng(seed)
    samples = rng.normal(0.0, amplitude, int(duration_s * sample_rate))
    return (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2").tobytes()


@pytest.fixture
def make_speech():
    """Loud white noise standing in for speech (well above the VAD threshold)."""
    def _make(duration_s: float, sample_rate: int = 16000, seed: int = 1) -> bytes:
        return _noise(duration_s, sample_rate, 0.3, seed)
    return _make


@pytest.fixture
def make_silence():
    """PCM16 digital silence."""
    def _make(duration_s: float, sample_rate: int = 16000) -> bytes:
        return b"\x00\x00" * int(duration_s * sample_rate)
    return _make


class RecordingSender:
    """Collects messages written by a TransportChannel."""

    def __init__(self, fail_after: Optional[int] = None):
        self.messages: List[str] = []
        self.fail_after = fail_after
        self.closed = 0

    async def __call__(self, message: str) -> None:
        if self.fail_after is not None and len(self.messages) >= self.fail_after:
            from src.interviewer.errors import TransportError
            raise TransportError("socket closed")
        self.messages.append(message)

    async def close(self) -> None:
        self.closed += 1

    def decoded(self) -> List[dict]:
        import json
        return [json.loads(m) for m in self.messages]

    def of_type(self, message_type: str) -> List[dict]:
        return [m for m in self.decoded() if m.get("type") == message_type]


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def make_sender():
    def _make(fail_after: Optional[int] = None) -> RecordingSender:
        return RecordingSender(fail_after=fail_after)
    return _make


class FakeTranscriber:
    """Returns queued transcripts in order; an Exception entry is raised."""

    name = "fake"

    def __init__(self, transcripts=None):
        self.transcripts = list(transcripts or [])
        self.calls: List[bytes] = []
        self.closed = False

    async def transcribe(self, audio: bytes, encoding_hint: str = "linear16;rate=16000") -> str:
        self.calls.append(audio)
        result = self.transcripts.pop(0) if self.transcripts else "An answer."
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        self.closed = True


class FakeLLM:
    """Returns queued responses in order; an Exception entry is raised."""

    name = "fake"

    def __init__(self, responses=None, default: str = "Great. Next question."):
        self.responses = list(responses or [])
        self.default = default
        self.calls: List[tuple] = []
        self.closed = False

    async def generate(self, system_prompt, messages, *, json_mode=False, max_tokens=None):
        from src.interviewer.llm import LLMResponse

        self.calls.append((system_prompt, list(messages)))
        result = self.responses.pop(0) if self.responses else self.default
        if isinstance(result, Exception):
            raise result
        return LLMResponse(text=result)

    async def close(self) -> None:
        self.closed = True


class FakeTTSProvider:
    """Yields `chunks` short raw PCM16 buffers per utterance, or raises `error`."""

    name = "fake"

    def __init__(self, chunks: int = 2, chunk_seconds: float = 0.02, sample_rate: int = 24000, error=None):
        self.chunks = chunks
        self.chunk_seconds = chunk_seconds
        self.sample_rate = sample_rate
        self.error = error
        self.texts: List[str] = []
        self.cancelled = 0

    async def synthesize_streaming(self, text: str, *, voice=None) -> AsyncGenerator:
        from src.interviewer.tts_types import AudioChunk

        self.texts.append(text)
        if self.error is not None:
            raise self.error
        pcm = b"\x10\x00" * int(self.chunk_seconds * self.sample_rate)
        for i in range(self.chunks):
            await asyncio.sleep(0)
            yield AudioChunk(audio=pcm, sample_rate=self.sample_rate, sequence_hint=i)
        yield AudioChunk(audio=b"", sample_rate=self.sample_rate, sequence_hint=self.chunks, is_final=True)

    def cancel(self) -> None:
        self.cancelled += 1

    async def close(self) -> None:
        return None


@pytest.fixture
def make_transcriber():
    def _make(transcripts=None) -> FakeTranscriber:
        return FakeTranscriber(transcripts)
    return _make


@pytest.fixture
def make_llm():
    def _make(responses=None, default: str = "Great. Next question.") -> FakeLLM:
        return FakeLLM(responses, default=default)
    return _make


@pytest.fixture
def make_tts():
    def _make(**kwargs) -> FakeTTSProvider:
        return FakeTTSProvider(**kwargs)
    return _make


class InMemoryStoreSpy:
    def __init__(self):
        self.saved = []

    async def save_activity(self, summary) -> None:
        self.saved.append(summary)

    async def get_activity(self, activity_id):
        for s in self.saved:
            if s.id == activity_id:
                return s.to_dict()
        return None


@pytest.fixture
def store_spy():
    return InMemoryStoreSpy()
