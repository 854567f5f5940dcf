"""
Per-session audio capture.

Owns the inbound frame stream, the endpointer and the capture event queue.
The session controller switches modes as the conversation moves between
phases:

- ENDPOINTING (listening): frames go through VAD, utterances are emitted
- BARGE_IN (speaking): only sustained loud speech is detected and reported
- PAUSED (transcribing/generating): frames are dropped
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from src.interviewer.audio import spectral_energy
from src.interviewer.config import get_config
from src.interviewer.vad import Endpointer, FrameWindower, Utterance

logger = structlog.get_logger(__name__)


class CaptureMode(str, Enum):
    ENDPOINTING = "endpointing"
    BARGE_IN = "barge_in"
    PAUSED = "paused"


class CaptureEventType(str, Enum):
    UTTERANCE = "utterance"
    BARGE_IN = "barge_in"


@dataclass
class CaptureEvent:
    type: CaptureEventType
    utterance: Optional[Utterance] = None
    energy: float = 0.0


class AudioCapture:
    """
    Capture component for one session.

    Frames pushed by the transport are processed synchronously; results are
    posted to `events`. `close()` releases the device exactly once.
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or get_config()
        self.events: asyncio.Queue[CaptureEvent] = asyncio.Queue()
        self.endpointer = Endpointer.from_config(self.config)

        self._clock = clock
        self._mode = CaptureMode.PAUSED
        self._barge_windower = FrameWindower(self.config.vad_fft_size)
        self._barge_window_ms = 1000.0 * self.config.vad_fft_size / self.config.capture_sample_rate
        self._barge_loud_ms = 0.0
        self._barge_reported = False

        self._last_frame_at: Optional[float] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._started = False
        self._closed = False
        self.release_count = 0
        self.frames_received = 0

    @property
    def mode(self) -> CaptureMode:
        return self._mode

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Acquire the capture stream and start the idle watcher."""
        if self._started or self._closed:
            return
        self._started = True
        self._idle_task = asyncio.create_task(self._idle_watch())
        logger.info("Capture started", sample_rate=self.config.capture_sample_rate)

    def set_mode(self, mode: CaptureMode) -> None:
        if mode == self._mode:
            return
        previous = self._mode
        self._mode = mode
        self.endpointer.reset()
        self._barge_windower.reset()
        self._barge_loud_ms = 0.0
        self._barge_reported = False
        logger.debug("Capture mode changed", previous=previous.value, mode=mode.value)

    def push_frame(self, frame: bytes) -> None:
        """Handle one inbound PCM16 frame from the client."""
        if self._closed or not frame:
            return
        self.frames_received += 1
        self._last_frame_at = self._clock()

        if self._mode == CaptureMode.ENDPOINTING:
            for utterance in self.endpointer.process(frame):
                self.events.put_nowait(
                    CaptureEvent(type=CaptureEventType.UTTERANCE, utterance=utterance)
                )
        elif self._mode == CaptureMode.BARGE_IN:
            self._detect_barge_in(frame)

    def _detect_barge_in(self, frame: bytes) -> None:
        if not self.config.barge_in_enabled or self._barge_reported:
            return
        for window in self._barge_windower.push(frame):
            energy = spectral_energy(window)
            if energy > self.config.barge_in_energy_threshold:
                self._barge_loud_ms += self._barge_window_ms
            else:
                self._barge_loud_ms = 0.0

            if self._barge_loud_ms >= self.config.barge_in_min_ms:
                self._barge_reported = True
                logger.info("Barge-in detected", loud_ms=round(self._barge_loud_ms), energy=energy)
                self.events.put_nowait(CaptureEvent(type=CaptureEventType.BARGE_IN, energy=energy))
                return

    async def _idle_watch(self) -> None:
        """Fire the VAD silence timer when the client stops sending frames."""
        poll = self.config.vad_idle_poll_seconds
        delay = self.config.vad_silence_delay_seconds
        while not self._closed:
            await asyncio.sleep(poll)
            if self._mode != CaptureMode.ENDPOINTING or not self.endpointer.state.is_speaking:
                continue
            if self._last_frame_at is None or self._clock() - self._last_frame_at < delay:
                continue
            utterance = self.endpointer.expire()
            if utterance is not None:
                self.events.put_nowait(
                    CaptureEvent(type=CaptureEventType.UTTERANCE, utterance=utterance)
                )

    async def close(self) -> None:
        """Release the capture stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.release_count += 1
        self._mode = CaptureMode.PAUSED
        self.endpointer.reset()

        task = self._idle_task
        self._idle_task = None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info(
            "Capture released",
            frames_received=self.frames_received,
            discarded_utterances=self.endpointer.discarded,
        )
