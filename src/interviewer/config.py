"""
Configuration management for the Voice Interview Orchestrator.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DIALOGUE_MODES = ("scripted", "freeform")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 7860
    log_level: str = "INFO"

    # Deepgram (STT + TTS)
    deepgram_api_key: str = ""
    deepgram_stt_model: str = "nova-2"
    deepgram_tts_model: str = "aura-asteria-en"

    # Provider selection
    # - stt_provider: "deepgram" | "openai"
    # - tts_provider: "deepgram" | "openai"
    # - llm_provider: "groq" | "openai"
    stt_provider: str = "deepgram"
    tts_provider: str = "deepgram"
    llm_provider: str = "groq"

    # Groq (LLM)
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"

    # OpenAI (LLM / Whisper / TTS)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_stt_model: str = "whisper-1"
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"

    # Interviewer
    company_name: str = "Talxify"
    dialogue_mode: str = "scripted"  # "scripted" | "freeform"
    scripted_question_count: int = 6
    generated_question_count: int = 15
    max_questions: int = 6
    terminal_phrase: str = "Okay, that's all the questions I have."
    llm_max_tokens: int = 256
    llm_temperature: float = 0.7

    # Capture / endpointing
    capture_sample_rate: int = 16000
    vad_fft_size: int = 512
    vad_energy_threshold: float = 40.0  # byte-scaled spectrum average, 0..255
    vad_silence_delay_seconds: float = 1.5
    vad_min_speech_seconds: float = 0.5
    vad_min_utterance_bytes: int = 2000
    vad_max_utterance_seconds: float = 60.0  # forced flush under constant noise
    vad_idle_poll_seconds: float = 0.1

    # Barge-in (caller speaks while the agent is speaking)
    barge_in_enabled: bool = True
    barge_in_energy_threshold: float = 60.0
    barge_in_min_ms: int = 300

    # Playback
    playback_sample_rate: int = 24000
    playback_lead_seconds: float = 0.25

    # Provider calls
    provider_timeout_seconds: float = 20.0
    provider_max_retries: int = 1

    # Startup
    validate_llm_on_startup: bool = False

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        stt = (self.stt_provider or "deepgram").strip().lower()
        tts = (self.tts_provider or "deepgram").strip().lower()
        llm = (self.llm_provider or "groq").strip().lower()

        if stt not in ("deepgram", "openai"):
            raise ConfigError(
                f"Invalid STT_PROVIDER '{self.stt_provider}'. Expected 'deepgram' or 'openai'."
            )
        if tts not in ("deepgram", "openai"):
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'deepgram' or 'openai'."
            )
        if llm not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )
        if self.dialogue_mode not in DIALOGUE_MODES:
            raise ConfigError(
                f"Invalid DIALOGUE_MODE '{self.dialogue_mode}'. Expected 'scripted' or 'freeform'."
            )

        if "deepgram" in (stt, tts) and not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        if llm == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if "openai" in (stt, tts, llm) and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if llm == "openai" and not self.openai_model:
            missing.append("OPENAI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.vad_fft_size <= 0 or self.vad_fft_size % 2:
            raise ConfigError("VAD_FFT_SIZE must be a positive even number of samples.")
        if self.scripted_question_count <= 0:
            raise ConfigError("SCRIPTED_QUESTION_COUNT must be positive.")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            stt_provider=self.stt_provider,
            tts_provider=self.tts_provider,
            llm_provider=self.llm_provider,
            llm_model=self.openai_model if self.llm_provider == "openai" else self.groq_model,
            dialogue_mode=self.dialogue_mode,
            scripted_question_count=self.scripted_question_count,
            max_questions=self.max_questions,
            vad_energy_threshold=self.vad_energy_threshold,
            vad_silence_delay_seconds=self.vad_silence_delay_seconds,
            barge_in_enabled=self.barge_in_enabled,
            provider_timeout_seconds=self.provider_timeout_seconds,
            deepgram_key_set=bool(self.deepgram_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_stt_model=os.getenv("DEEPGRAM_STT_MODEL", "nova-2"),
        deepgram_tts_model=os.getenv("DEEPGRAM_TTS_MODEL", "aura-asteria-en"),

        # Providers
        stt_provider=os.getenv("STT_PROVIDER", "deepgram").strip().lower(),
        tts_provider=os.getenv("TTS_PROVIDER", "deepgram").strip().lower(),
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),

        # Groq
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        openai_stt_model=os.getenv("OPENAI_STT_MODEL", "whisper-1"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),

        # Interviewer
        company_name=os.getenv("COMPANY_NAME", "Talxify"),
        dialogue_mode=os.getenv("DIALOGUE_MODE", "scripted").strip().lower(),
        scripted_question_count=_get_int("SCRIPTED_QUESTION_COUNT", 6),
        generated_question_count=_get_int("GENERATED_QUESTION_COUNT", 15),
        max_questions=_get_int("MAX_QUESTIONS", 6),
        terminal_phrase=os.getenv("TERMINAL_PHRASE", "Okay, that's all the questions I have."),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 256),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),

        # Capture / endpointing
        capture_sample_rate=_get_int("CAPTURE_SAMPLE_RATE", 16000),
        vad_fft_size=_get_int("VAD_FFT_SIZE", 512),
        vad_energy_threshold=_get_float("VAD_ENERGY_THRESHOLD", 40.0),
        vad_silence_delay_seconds=_get_float("VAD_SILENCE_DELAY_SECONDS", 1.5),
        vad_min_speech_seconds=_get_float("VAD_MIN_SPEECH_SECONDS", 0.5),
        vad_min_utterance_bytes=_get_int("VAD_MIN_UTTERANCE_BYTES", 2000),
        vad_max_utterance_seconds=_get_float("VAD_MAX_UTTERANCE_SECONDS", 60.0),
        vad_idle_poll_seconds=_get_float("VAD_IDLE_POLL_SECONDS", 0.1),

        # Barge-in
        barge_in_enabled=_get_bool("BARGE_IN_ENABLED", True),
        barge_in_energy_threshold=_get_float("BARGE_IN_ENERGY_THRESHOLD", 60.0),
        barge_in_min_ms=_get_int("BARGE_IN_MIN_MS", 300),

        # Playback
        playback_sample_rate=_get_int("PLAYBACK_SAMPLE_RATE", 24000),
        playback_lead_seconds=_get_float("PLAYBACK_LEAD_SECONDS", 0.25),

        # Provider calls
        provider_timeout_seconds=_get_float("PROVIDER_TIMEOUT_SECONDS", 20.0),
        provider_max_retries=_get_int("PROVIDER_MAX_RETRIES", 1),

        # Startup
        validate_llm_on_startup=_get_bool("VALIDATE_LLM_ON_STARTUP", False),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
