"""
Energy-based voice activity endpointing.

Frames are cut into fixed analysis windows. Each window's byte-scaled spectral
energy is compared against a threshold:

- above threshold: speaking starts (or continues), any pending silence timer is cancelled
- below threshold while speaking: a silence timer starts if none is pending
- timer expiry: speaking stops, the buffered audio is flushed as one utterance
- buffer reaching the maximum utterance length: flushed the same way

The timer runs on stream time (samples consumed), so the same audio always
produces the same boundaries. `expire()` lets the capture component fire the
timer when the client stops sending frames altogether.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generator, List, Optional

import structlog

from src.interviewer.audio import BYTES_PER_SAMPLE, spectral_energy
from src.interviewer.errors import EmptyUtteranceError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Utterance:
    """One bounded chunk of candidate speech, consumed once by transcription."""
    audio: bytes
    sample_rate: int
    duration_estimate: float
    voiced_seconds: float

    @property
    def encoding_hint(self) -> str:
        return f"linear16;rate={self.sample_rate}"


@dataclass
class VADState:
    """Endpointer state; reset on every utterance boundary."""
    is_speaking: bool = False
    silence_deadline: Optional[float] = None  # stream time when the silence timer fires
    buffer: bytearray = field(default_factory=bytearray)
    voiced_seconds: float = 0.0

    def reset(self) -> None:
        self.is_speaking = False
        self.silence_deadline = None
        self.buffer = bytearray()
        self.voiced_seconds = 0.0


class FrameWindower:
    """Re-chunks arbitrary PCM16 frames into fixed-size analysis windows."""

    def __init__(self, window_samples: int):
        self.window_bytes = window_samples * BYTES_PER_SAMPLE
        self._pending = bytearray()

    def push(self, frame: bytes) -> Generator[bytes, None, None]:
        self._pending.extend(frame)
        while len(self._pending) >= self.window_bytes:
            window = bytes(self._pending[:self.window_bytes])
            del self._pending[:self.window_bytes]
            yield window

    def reset(self) -> None:
        self._pending = bytearray()


class Endpointer:
    """Turns a continuous capture stream into discrete utterances."""

    def __init__(
        self,
        *,
        sample_rate: int = 16000,
        fft_size: int = 512,
        energy_threshold: float = 40.0,
        silence_delay_seconds: float = 1.5,
        min_speech_seconds: float = 0.5,
        min_utterance_bytes: int = 2000,
        max_utterance_seconds: float = 60.0,
    ):
        self.sample_rate = sample_rate
        self.fft_size = fft_size
        self.energy_threshold = energy_threshold
        self.silence_delay_seconds = silence_delay_seconds
        self.min_speech_seconds = min_speech_seconds
        self.min_utterance_bytes = min_utterance_bytes
        self.max_utterance_bytes = int(max_utterance_seconds * sample_rate) * BYTES_PER_SAMPLE

        self.state = VADState()
        self._windower = FrameWindower(fft_size)
        self._window_seconds = fft_size / float(sample_rate)
        self._stream_time = 0.0
        self.discarded = 0

    @classmethod
    def from_config(cls, config: Any) -> "Endpointer":
        return cls(
            sample_rate=config.capture_sample_rate,
            fft_size=config.vad_fft_size,
            energy_threshold=config.vad_energy_threshold,
            silence_delay_seconds=config.vad_silence_delay_seconds,
            min_speech_seconds=config.vad_min_speech_seconds,
            min_utterance_bytes=config.vad_min_utterance_bytes,
            max_utterance_seconds=config.vad_max_utterance_seconds,
        )

    @property
    def stream_time(self) -> float:
        """Seconds of audio consumed so far."""
        return self._stream_time

    def process(self, frame: bytes) -> List[Utterance]:
        """Feed one capture frame; return any utterances that completed."""
        utterances: List[Utterance] = []
        for window in self._windower.push(frame):
            utterance = self._process_window(window)
            if utterance is not None:
                utterances.append(utterance)
        return utterances

    def _process_window(self, window: bytes) -> Optional[Utterance]:
        energy = spectral_energy(window)
        self._stream_time += self._window_seconds
        state = self.state

        if energy > self.energy_threshold:
            if not state.is_speaking:
                state.is_speaking = True
                logger.debug("Speech started", stream_time=round(self._stream_time, 3), energy=energy)
            state.silence_deadline = None
            state.buffer.extend(window)
            state.voiced_seconds += self._window_seconds
            if len(state.buffer) >= self.max_utterance_bytes:
                logger.info("Utterance hit maximum length, flushing", max_bytes=self.max_utterance_bytes)
                return self._flush_quietly()
            return None

        if not state.is_speaking:
            return None

        state.buffer.extend(window)
        if state.silence_deadline is None:
            state.silence_deadline = self._stream_time + self.silence_delay_seconds
            return None

        if self._stream_time >= state.silence_deadline:
            return self._flush_quietly()
        return None

    def expire(self) -> Optional[Utterance]:
        """Fire the silence timer now (client stopped sending audio)."""
        if not self.state.is_speaking:
            return None
        return self._flush_quietly()

    def flush(self) -> Utterance:
        """
        End the current utterance and return it.

        Raises:
            EmptyUtteranceError: If too little speech was buffered.
        """
        state = self.state
        audio = bytes(state.buffer)
        voiced = state.voiced_seconds
        state.reset()

        if voiced < self.min_speech_seconds or len(audio) < self.min_utterance_bytes:
            raise EmptyUtteranceError(
                f"Utterance too short ({voiced:.2f}s voiced, {len(audio)} bytes)"
            )

        return Utterance(
            audio=audio,
            sample_rate=self.sample_rate,
            duration_estimate=len(audio) / float(BYTES_PER_SAMPLE * self.sample_rate),
            voiced_seconds=voiced,
        )

    def _flush_quietly(self) -> Optional[Utterance]:
        try:
            utterance = self.flush()
        except EmptyUtteranceError as e:
            self.discarded += 1
            logger.debug("Discarding short utterance", reason=str(e))
            return None

        logger.info(
            "Utterance ready",
            duration_s=round(utterance.duration_estimate, 2),
            voiced_s=round(utterance.voiced_seconds, 2),
        )
        return utterance

    def reset(self) -> None:
        self.state.reset()
        self._windower.reset()
