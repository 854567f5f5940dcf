"""
Gapless, ordered playback scheduling.

Each synthesized buffer is placed on a session playback timeline:

    scheduled_start = max(next_start_time, now)
    next_start_time = scheduled_start + duration

so consecutive buffers play back-to-back regardless of how unevenly they
arrive. Each scheduled buffer is a task that hands the audio to the client
shortly before its start time. `interrupt()` cancels every pending source
and resets the timeline to "now".
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

import structlog

from src.interviewer.audio import PLAYBACK_SAMPLE_RATE, decode_to_pcm16, get_audio_duration_seconds
from src.interviewer.transport import create_audio_message
from src.interviewer.tts_types import AudioChunk

logger = structlog.get_logger(__name__)


class PlaybackEventType(str, Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


@dataclass
class PlaybackEvent:
    type: PlaybackEventType
    generation: int


@dataclass
class ScheduledBuffer:
    """One source on the playback timeline."""
    sequence: int
    start_time: float
    duration: float
    generation: int
    task: Optional[asyncio.Task] = None

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


class PlaybackScheduler:
    """
    Per-session playback timeline.

    Args:
        emit: Called with each ready-to-send audio message (e.g. TransportChannel.send)
        sample_rate: Rate of the audio sent to the client
        lead_seconds: How far ahead of its start time a buffer is handed to the client
        clock: Monotonic clock in seconds; defaults to the running loop's time
    """

    def __init__(
        self,
        emit: Callable[[str], Any],
        *,
        sample_rate: int = PLAYBACK_SAMPLE_RATE,
        lead_seconds: float = 0.25,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._emit = emit
        self.sample_rate = sample_rate
        self.lead_seconds = lead_seconds
        self._clock = clock or asyncio.get_running_loop().time

        self.events: asyncio.Queue[PlaybackEvent] = asyncio.Queue()
        self.next_start_time = self._clock()
        self.generation = 0
        self._sequence = 0
        self._buffers: List[ScheduledBuffer] = []
        self._completion_task: Optional[asyncio.Task] = None
        self._closed = False

    @classmethod
    def from_config(cls, emit: Callable[[str], Any], config: Any) -> "PlaybackScheduler":
        return cls(
            emit,
            sample_rate=config.playback_sample_rate,
            lead_seconds=config.playback_lead_seconds,
        )

    @property
    def now(self) -> float:
        return self._clock()

    @property
    def pending(self) -> List[ScheduledBuffer]:
        """Buffers that are scheduled and not yet finished playing."""
        now = self._clock()
        return [b for b in self._buffers if b.end_time > now]

    @property
    def is_playing(self) -> bool:
        return bool(self.pending)

    def schedule(self, chunk: AudioChunk) -> Optional[ScheduledBuffer]:
        """Decode `chunk` and place it on the timeline. Empty chunks are skipped."""
        if self._closed or not chunk.audio:
            return None

        try:
            pcm = decode_to_pcm16(chunk.audio, chunk.sample_rate, self.sample_rate)
        except ValueError as e:
            logger.warning("Skipping undecodable audio chunk", error=str(e), sequence_hint=chunk.sequence_hint)
            return None
        if not pcm:
            return None

        duration = get_audio_duration_seconds(pcm, self.sample_rate)
        now = self._clock()
        start = max(self.next_start_time, now)
        self.next_start_time = start + duration
        self._sequence += 1

        buffer = ScheduledBuffer(
            sequence=self._sequence,
            start_time=start,
            duration=duration,
            generation=self.generation,
        )
        buffer.task = asyncio.create_task(self._play(buffer, pcm))
        self._buffers = [b for b in self._buffers if b.end_time > now]
        self._buffers.append(buffer)

        logger.debug(
            "Buffer scheduled",
            sequence=buffer.sequence,
            start_offset_ms=round((start - now) * 1000, 1),
            duration_ms=round(duration * 1000, 1),
        )
        return buffer

    async def _play(self, buffer: ScheduledBuffer, pcm: bytes) -> None:
        delay = buffer.start_time - self.lead_seconds - self._clock()
        if delay > 0:
            await asyncio.sleep(delay)
        if buffer.generation != self.generation or self._closed:
            return
        self._emit(create_audio_message(pcm, self.sample_rate, buffer.sequence))

    def end_turn(self) -> None:
        """
        Mark the end of the current agent turn.

        A COMPLETED event is posted once the last scheduled buffer has played.
        """
        if self._closed:
            return
        if self._completion_task and not self._completion_task.done():
            self._completion_task.cancel()
        self._completion_task = asyncio.create_task(
            self._await_completion(self.generation, self.next_start_time)
        )

    async def _await_completion(self, generation: int, end_time: float) -> None:
        delay = end_time - self._clock()
        if delay > 0:
            await asyncio.sleep(delay)
        if generation != self.generation or self._closed:
            return
        logger.debug("Playback completed", generation=generation)
        self.events.put_nowait(PlaybackEvent(type=PlaybackEventType.COMPLETED, generation=generation))

    def _cancel_all(self) -> int:
        cancelled = 0
        for buffer in self._buffers:
            if buffer.task and not buffer.task.done():
                buffer.task.cancel()
                cancelled += 1
        self._buffers = []
        if self._completion_task and not self._completion_task.done():
            self._completion_task.cancel()
        self._completion_task = None
        return cancelled

    def interrupt(self) -> int:
        """Stop every scheduled source now. Returns the number of sources cancelled."""
        self.generation += 1
        cancelled = self._cancel_all()
        self.next_start_time = self._clock()
        logger.info("Playback interrupted", generation=self.generation, cancelled=cancelled)
        self.events.put_nowait(PlaybackEvent(type=PlaybackEventType.INTERRUPTED, generation=self.generation))
        return cancelled

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.generation += 1
        self._cancel_all()
