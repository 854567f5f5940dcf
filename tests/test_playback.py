"""
Tests for gapless playback scheduling and interruption.
"""

import asyncio
import json

import pytest

from src.interviewer.playback import PlaybackEventType, PlaybackScheduler
from src.interviewer.tts_types import AudioChunk


def pcm_chunk(seconds: float, sample_rate: int = 24000, sequence: int = 0) -> AudioChunk:
    return AudioChunk(audio=b"\x10\x00" * int(seconds * sample_rate), sample_rate=sample_rate, sequence_hint=sequence)


class FakeClock:
    def __init__(self, start: float = 10.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestScheduling:
    """Tests for the playback timeline."""

    @pytest.mark.asyncio
    async def test_buffers_play_back_to_back(self):
        clock = FakeClock()
        scheduler = PlaybackScheduler(lambda m: None, clock=clock)

        buffers = [scheduler.schedule(pcm_chunk(0.1, sequence=i)) for i in range(3)]

        assert [b.start_time for b in buffers] == pytest.approx([10.0, 10.1, 10.2])
        assert scheduler.next_start_time == pytest.approx(10.3)
        for earlier, later in zip(buffers, buffers[1:]):
            assert later.start_time >= earlier.end_time - 1e-9
        scheduler.close()

    @pytest.mark.asyncio
    async def test_late_buffer_starts_now(self):
        clock = FakeClock()
        scheduler = PlaybackScheduler(lambda m: None, clock=clock)

        scheduler.schedule(pcm_chunk(0.1))
        clock.now = 20.0
        late = scheduler.schedule(pcm_chunk(0.1))

        assert late.start_time == pytest.approx(20.0)
        assert scheduler.next_start_time == pytest.approx(20.1)
        scheduler.close()

    @pytest.mark.asyncio
    async def test_chunks_are_resampled_to_playback_rate(self):
        clock = FakeClock()
        scheduler = PlaybackScheduler(lambda m: None, clock=clock, sample_rate=24000)

        buffer = scheduler.schedule(pcm_chunk(0.2, sample_rate=16000))

        assert buffer.duration == pytest.approx(0.2, abs=0.001)
        scheduler.close()

    @pytest.mark.asyncio
    async def test_audio_sent_in_order(self):
        sent = []
        scheduler = PlaybackScheduler(sent.append, lead_seconds=0.25)

        for i in range(3):
            scheduler.schedule(pcm_chunk(0.05, sequence=i))
        await asyncio.sleep(0.05)

        messages = [json.loads(m) for m in sent]
        assert [m["sequence"] for m in messages] == [1, 2, 3]
        assert all(m["type"] == "audio" and m["sampleRate"] == 24000 for m in messages)
        scheduler.close()

    @pytest.mark.asyncio
    async def test_empty_and_undecodable_chunks_are_skipped(self):
        clock = FakeClock()
        scheduler = PlaybackScheduler(lambda m: None, clock=clock)

        assert scheduler.schedule(AudioChunk(audio=b"", is_final=True)) is None
        assert scheduler.schedule(AudioChunk(audio=b"RIFF\x00\x00\x00\x00WAVEjunk")) is None
        assert scheduler.next_start_time == pytest.approx(10.0)
        scheduler.close()


class TestCompletion:
    @pytest.mark.asyncio
    async def test_completed_after_last_buffer(self):
        scheduler = PlaybackScheduler(lambda m: None)
        scheduler.schedule(pcm_chunk(0.05))
        scheduler.end_turn()

        event = await asyncio.wait_for(scheduler.events.get(), timeout=1.0)

        assert event.type == PlaybackEventType.COMPLETED
        assert event.generation == 0
        assert not scheduler.is_playing
        scheduler.close()

    @pytest.mark.asyncio
    async def test_end_turn_with_nothing_scheduled_completes_immediately(self):
        scheduler = PlaybackScheduler(lambda m: None)
        scheduler.end_turn()

        event = await asyncio.wait_for(scheduler.events.get(), timeout=1.0)
        assert event.type == PlaybackEventType.COMPLETED
        scheduler.close()


class TestInterrupt:
    """Tests for barge-in interruption."""

    @pytest.mark.asyncio
    async def test_interrupt_stops_everything(self):
        clock = FakeClock()
        sent = []
        scheduler = PlaybackScheduler(sent.append, clock=clock, lead_seconds=0.25)

        for i in range(3):
            scheduler.schedule(pcm_chunk(2.0, sequence=i))
        scheduler.end_turn()
        assert len(scheduler.pending) == 3

        clock.now = 10.5
        cancelled = scheduler.interrupt()
        sent_at_interrupt = len(sent)

        assert cancelled >= 2
        assert scheduler.pending == []
        assert scheduler.next_start_time == pytest.approx(10.5)
        assert scheduler.generation == 1

        event = scheduler.events.get_nowait()
        assert event.type == PlaybackEventType.INTERRUPTED
        assert event.generation == 1

        await asyncio.sleep(0.05)
        assert len(sent) == sent_at_interrupt
        # No COMPLETED for the interrupted turn
        assert scheduler.events.empty()

    @pytest.mark.asyncio
    async def test_schedule_after_interrupt_starts_now(self):
        clock = FakeClock()
        scheduler = PlaybackScheduler(lambda m: None, clock=clock)

        scheduler.schedule(pcm_chunk(5.0))
        clock.now = 11.0
        scheduler.interrupt()
        buffer = scheduler.schedule(pcm_chunk(0.1))

        assert buffer.start_time == pytest.approx(11.0)
        assert buffer.generation == 1
        scheduler.close()

    @pytest.mark.asyncio
    async def test_close_drops_later_chunks(self):
        scheduler = PlaybackScheduler(lambda m: None)
        scheduler.close()
        scheduler.close()

        assert scheduler.schedule(pcm_chunk(0.1)) is None
        scheduler.end_turn()
        await asyncio.sleep(0.01)
        assert scheduler.events.empty()
