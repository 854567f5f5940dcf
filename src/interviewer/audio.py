"""
Audio utilities for the interview pipeline.

- Capture audio arrives as PCM16 little-endian mono at 16kHz.
- Playback audio is sent to the client as PCM16 mono at 24kHz.
- Energy detection mirrors a browser analyser node: windowed FFT, magnitudes
  in dB mapped onto a 0..255 byte scale, averaged across bins.

All sample math goes through numpy.
"""

import io
import wave

import numpy as np

PLAYBACK_SAMPLE_RATE = 24000
BYTES_PER_SAMPLE = 2

# Analyser dB range mapped onto 0..255
ANALYSER_MIN_DB = -100.0
ANALYSER_MAX_DB = -30.0


def pcm16_to_float(pcm_bytes: bytes) -> np.ndarray:
    """Convert PCM16 little-endian bytes to float32 samples in [-1, 1]."""
    if not pcm_bytes:
        return np.zeros(0, dtype=np.float32)
    usable = len(pcm_bytes) - (len(pcm_bytes) % BYTES_PER_SAMPLE)
    samples = np.frombuffer(pcm_bytes[:usable], dtype="<i2")
    return samples.astype(np.float32) / 32768.0


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Convert float samples in [-1, 1] to PCM16 little-endian bytes."""
    if samples.size == 0:
        return b""
    clipped = np.clip(samples * 32768.0, -32768, 32767)
    return clipped.astype("<i2").tobytes()


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Resample mono 16-bit PCM from `source_rate` to `target_rate`.

    Uses linear interpolation; good enough for speech.
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes

    samples = pcm16_to_float(pcm_bytes)
    if samples.size == 0:
        return b""

    target_len = max(1, int(round(samples.size * target_rate / source_rate)))
    src_pos = np.arange(samples.size, dtype=np.float64)
    dst_pos = np.linspace(0, samples.size - 1, target_len)
    return float_to_pcm16(np.interp(dst_pos, src_pos, samples).astype(np.float32))


def is_wav(data: bytes) -> bool:
    """Return True if `data` starts with a RIFF/WAVE header."""
    return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE"


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    - If input is stereo, it is downmixed to mono.
    - If sample width is not 16-bit, raises ValueError.
    """
    if not wav_bytes:
        raise ValueError("Empty WAV")

    try:
        with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
            channels = wf.getnchannels()
            sample_width = wf.getsampwidth()
            sample_rate = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise ValueError(f"Malformed WAV: {e}")

    if sample_width != 2:
        raise ValueError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    if channels == 1:
        return int(sample_rate), frames

    if channels == 2:
        stereo = np.frombuffer(frames, dtype="<i2").reshape(-1, 2).astype(np.int32)
        mono = (stereo.sum(axis=1) // 2).astype("<i2")
        return int(sample_rate), mono.tobytes()

    raise ValueError(f"Unsupported WAV channel count: {channels}")


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def decode_to_pcm16(data: bytes, sample_rate: int, target_rate: int = PLAYBACK_SAMPLE_RATE) -> bytes:
    """
    Decode a synthesized buffer into mono PCM16 at `target_rate`.

    Accepts either a WAV container (its header wins over `sample_rate`) or raw
    PCM16 at `sample_rate`.
    """
    if not data:
        return b""
    if is_wav(data):
        sample_rate, data = read_wav_mono_pcm16(data)
    if len(data) % BYTES_PER_SAMPLE:
        data = data[:-1]
    return resample_pcm16(data, sample_rate, target_rate)


def get_audio_duration_seconds(pcm_bytes: bytes, sample_rate: int) -> float:
    """Duration of mono PCM16 audio in seconds."""
    if not pcm_bytes or sample_rate <= 0:
        return 0.0
    return (len(pcm_bytes) // BYTES_PER_SAMPLE) / float(sample_rate)


def spectral_energy(pcm_window: bytes) -> float:
    """
    Average byte-scaled magnitude spectrum of one analysis window.

    Matches what a browser AnalyserNode reports from getByteFrequencyData:
    Blackman window, |FFT| / N in dB, [-100, -30] dB mapped onto [0, 255],
    averaged over the N/2 frequency bins.
    """
    samples = pcm16_to_float(pcm_window)
    n = samples.size
    if n < 2:
        return 0.0

    windowed = samples * np.blackman(n).astype(np.float32)
    magnitudes = np.abs(np.fft.rfft(windowed))[: n // 2] / n

    with np.errstate(divide="ignore"):
        db = 20.0 * np.log10(magnitudes)

    scaled = (db - ANALYSER_MIN_DB) * (255.0 / (ANALYSER_MAX_DB - ANALYSER_MIN_DB))
    byte_values = np.clip(np.nan_to_num(scaled, neginf=0.0), 0.0, 255.0)
    return float(np.floor(byte_values).mean())
