"""
Chat-completion client for the interviewer (Groq or OpenAI).

Provides:
- Startup check that the configured model is served
- One-shot generation from a system prompt and message history
- JSON-mode generation for structured content (question sets)
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from openai import AsyncOpenAI, OpenAIError

from src.interviewer.config import ConfigError, get_config
from src.interviewer.errors import ProviderError

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"


@dataclass
class LLMResponse:
    """Response from LLM."""
    text: str
    total_ms: float = 0.0
    finish_reason: str = ""


class LLMProvider(ABC):
    """Narrow language-generation contract used by the dialogue policies."""

    name: str = ""

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        *,
        json_mode: bool = False,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """
        Generate one complete response.

        Raises:
            ProviderError: On any provider failure
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ChatLLM(LLMProvider):
    """
    OpenAI-compatible chat client.

    Uses the Groq base URL when LLM_PROVIDER=groq, the default OpenAI endpoint otherwise.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.name = (config.llm_provider or "groq").strip().lower()

        if self.name == "openai":
            self.model = config.openai_model
            self._client = client or AsyncOpenAI(api_key=config.openai_api_key)
        else:
            self.model = config.groq_model
            self._client = client or AsyncOpenAI(
                api_key=config.groq_api_key,
                base_url=GROQ_BASE_URL,
            )

    async def validate_model(self) -> bool:
        """
        Check the configured model is served by the provider.

        Raises:
            ConfigError: If the model list can't be fetched or lacks the model
        """
        logger.info("Validating LLM model", provider=self.name, model=self.model)
        try:
            page = await self._client.models.list()
        except OpenAIError as e:
            logger.error("Failed to list models", provider=self.name, error=str(e))
            raise ConfigError(
                f"Could not validate {self.name} model '{self.model}': {e}. "
                "Check your network connection and API key."
            )

        model_ids = [m.id for m in page.data]
        if self.model not in model_ids:
            available = ", ".join(sorted(model_ids)[:10])
            raise ConfigError(
                f"Model '{self.model}' is not available from {self.name}. "
                f"Available models include: {available}"
            )

        logger.info("LLM model validated", provider=self.name, model=self.model)
        return True

    async def generate(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        *,
        json_mode: bool = False,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        start_time = time.time()
        request: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "max_tokens": max_tokens or self.config.llm_max_tokens,
            "temperature": self.config.llm_temperature,
        }
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        try:
            completion = await self._client.chat.completions.create(**request)
        except OpenAIError as e:
            logger.error("LLM generation failed", provider=self.name, error=str(e))
            raise ProviderError(
                f"LLM generation failed: {e}",
                provider=self.name,
                operation="generate",
                cause=e,
            )

        choice = completion.choices[0] if completion.choices else None
        text = ((choice.message.content if choice and choice.message else "") or "").strip()
        total_ms = (time.time() - start_time) * 1000
        logger.debug("LLM response", provider=self.name, chars=len(text), total_ms=round(total_ms, 1))
        return LLMResponse(
            text=text,
            total_ms=total_ms,
            finish_reason=(choice.finish_reason if choice else "") or "",
        )

    async def close(self) -> None:
        await self._client.close()


def create_llm(config: Optional[Any] = None) -> ChatLLM:
    """Create the chat client selected by LLM_PROVIDER."""
    config = config or get_config()
    provider = (config.llm_provider or "groq").strip().lower()
    if provider not in ("groq", "openai"):
        raise ValueError(f"Unsupported LLM_PROVIDER: {config.llm_provider}")
    return ChatLLM(config)


async def initialize_llm(config: Optional[Any] = None) -> ChatLLM:
    """
    Create and validate the LLM client at startup.

    Returns:
        Validated ChatLLM instance
    """
    llm = create_llm(config)
    await llm.validate_model()
    return llm
