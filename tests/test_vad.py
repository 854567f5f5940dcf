"""
Tests for the VAD endpointer.
"""

import pytest

from src.interviewer.errors import EmptyUtteranceError
from src.interviewer.vad import Endpointer, FrameWindower


FRAME_BYTES = 640  # 20ms at 16kHz


def feed(endpointer: Endpointer, audio: bytes, frame_bytes: int = FRAME_BYTES):
    utterances = []
    for i in range(0, len(audio), frame_bytes):
        utterances.extend(endpointer.process(audio[i:i + frame_bytes]))
    return utterances


class TestFrameWindower:
    def test_rechunks_into_fixed_windows(self):
        windower = FrameWindower(4)  # 8 bytes
        assert list(windower.push(b"\x00" * 5)) == []
        windows = list(windower.push(b"\x00" * 12))
        assert len(windows) == 2
        assert all(len(w) == 8 for w in windows)

    def test_reset_drops_partial_window(self):
        windower = FrameWindower(4)
        list(windower.push(b"\x00" * 6))
        windower.reset()
        assert list(windower.push(b"\x00" * 6)) == []


class TestEndpointing:
    """Tests for utterance boundaries."""

    def test_silence_only_never_starts_speech(self, make_silence):
        endpointer = Endpointer()
        assert feed(endpointer, make_silence(3.0)) == []
        assert not endpointer.state.is_speaking
        assert endpointer.discarded == 0

    def test_utterance_emitted_after_silence_delay(self, make_speech, make_silence):
        endpointer = Endpointer()
        assert feed(endpointer, make_speech(1.0)) == []
        assert endpointer.state.is_speaking

        # Not yet: less than 1.5s of trailing silence
        assert feed(endpointer, make_silence(1.4)) == []
        assert endpointer.state.is_speaking

        utterances = feed(endpointer, make_silence(0.3))
        assert len(utterances) == 1
        utterance = utterances[0]
        assert utterance.sample_rate == 16000
        assert utterance.voiced_seconds == pytest.approx(1.0, abs=0.1)
        assert utterance.duration_estimate > 2.0
        assert utterance.encoding_hint == "linear16;rate=16000"
        assert not endpointer.state.is_speaking
        assert endpointer.state.buffer == bytearray()

    def test_short_burst_is_discarded(self, make_speech, make_silence):
        """0.2s of speech then 1.6s of silence produces no utterance."""
        endpointer = Endpointer()
        utterances = feed(endpointer, make_speech(0.2) + make_silence(1.6))

        assert utterances == []
        assert endpointer.discarded == 1
        assert not endpointer.state.is_speaking

    def test_resumed_speech_cancels_silence_timer(self, make_speech, make_silence):
        endpointer = Endpointer()
        audio = make_speech(1.0) + make_silence(1.0) + make_speech(0.3, seed=2) + make_silence(1.0)

        assert feed(endpointer, audio) == []
        assert endpointer.state.is_speaking
        assert endpointer.state.silence_deadline is not None

        utterance = endpointer.expire()
        assert utterance is not None
        assert utterance.voiced_seconds >= 1.2

    def test_one_speech_region_one_utterance(self, make_speech, make_silence):
        endpointer = Endpointer()
        audio = make_speech(1.0) + make_silence(2.0) + make_speech(0.8, seed=5) + make_silence(2.0)

        utterances = feed(endpointer, audio)
        assert len(utterances) == 2

    def test_boundaries_do_not_depend_on_frame_size(self, make_speech, make_silence):
        audio = make_speech(1.0) + make_silence(1.6)

        small = feed(Endpointer(), audio, frame_bytes=320)
        large = feed(Endpointer(), audio, frame_bytes=len(audio))

        assert len(small) == len(large) == 1
        assert small[0].audio == large[0].audio

    def test_same_audio_same_boundaries(self, make_speech, make_silence):
        audio = make_speech(0.7) + make_silence(1.6)
        first = feed(Endpointer(), audio)
        second = feed(Endpointer(), audio)
        assert [u.audio for u in first] == [u.audio for u in second]

    def test_stream_time_counts_whole_windows(self, make_silence):
        endpointer = Endpointer()
        feed(endpointer, make_silence(0.032 * 10))
        assert endpointer.stream_time == pytest.approx(0.32)


class TestFlushAndExpire:
    def test_flush_with_nothing_buffered_raises(self):
        with pytest.raises(EmptyUtteranceError):
            Endpointer().flush()

    def test_expire_when_idle_is_noop(self):
        endpointer = Endpointer()
        assert endpointer.expire() is None
        assert endpointer.discarded == 0

    def test_expire_short_speech_is_discarded(self, make_speech):
        endpointer = Endpointer()
        feed(endpointer, make_speech(0.1))
        assert endpointer.expire() is None
        assert endpointer.discarded == 1

    def test_min_utterance_bytes(self, make_speech):
        endpointer = Endpointer(min_speech_seconds=0.0, min_utterance_bytes=10 ** 6)
        feed(endpointer, make_speech(0.5))
        with pytest.raises(EmptyUtteranceError):
            endpointer.flush()

    def test_reset_clears_state(self, make_speech):
        endpointer = Endpointer()
        feed(endpointer, make_speech(0.5))
        endpointer.reset()
        assert not endpointer.state.is_speaking
        assert endpointer.state.voiced_seconds == 0.0

    def test_constant_noise_is_cut_at_max_length(self, make_speech):
        endpointer = Endpointer(max_utterance_seconds=2.0)

        utterances = feed(endpointer, make_speech(5.0))

        assert len(utterances) == 2
        assert all(u.duration_estimate == pytest.approx(2.0, abs=0.05) for u in utterances)
        # The rest keeps buffering as a new utterance
        assert endpointer.state.is_speaking
        assert len(endpointer.state.buffer) < endpointer.max_utterance_bytes
