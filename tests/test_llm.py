"""
Tests for the chat-completion client.
"""

import dataclasses
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from openai import OpenAIError

from src.interviewer.config import ConfigError, get_config
from src.interviewer.errors import ProviderError
from src.interviewer.llm import ChatLLM, create_llm


def completion(text: str, finish_reason: str = "stop"):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text), finish_reason=finish_reason)]
    )


def fake_client(create: AsyncMock):
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)), close=AsyncMock())


class TestChatLLM:
    @pytest.mark.asyncio
    async def test_generate_builds_request(self):
        create = AsyncMock(return_value=completion("  Tell me about yourself.  "))
        llm = ChatLLM(get_config(), client=fake_client(create))

        response = await llm.generate("You are Mark.", [{"role": "user", "content": "Hi"}])

        assert response.text == "Tell me about yourself."
        assert response.finish_reason == "stop"
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "llama-3.3-70b-versatile"
        assert kwargs["messages"][0] == {"role": "system", "content": "You are Mark."}
        assert kwargs["messages"][1] == {"role": "user", "content": "Hi"}
        assert kwargs["max_tokens"] == 256
        assert "response_format" not in kwargs

    @pytest.mark.asyncio
    async def test_json_mode(self):
        create = AsyncMock(return_value=completion('{"questions": []}'))
        llm = ChatLLM(get_config(), client=fake_client(create))

        await llm.generate("Generate.", [], json_mode=True, max_tokens=4096)

        kwargs = create.await_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["max_tokens"] == 4096

    @pytest.mark.asyncio
    async def test_empty_choices(self):
        llm = ChatLLM(get_config(), client=fake_client(AsyncMock(return_value=SimpleNamespace(choices=[]))))
        response = await llm.generate("x", [])
        assert response.text == ""

    @pytest.mark.asyncio
    async def test_failure_becomes_provider_error(self):
        llm = ChatLLM(get_config(), client=fake_client(AsyncMock(side_effect=OpenAIError("503"))))

        with pytest.raises(ProviderError) as exc_info:
            await llm.generate("x", [])

        assert exc_info.value.provider == "groq"
        assert exc_info.value.operation == "generate"

    def test_openai_provider_uses_openai_model(self):
        config = dataclasses.replace(get_config(), llm_provider="openai")
        llm = ChatLLM(config, client=fake_client(AsyncMock()))
        assert llm.name == "openai"
        assert llm.model == "gpt-4o-mini"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_llm(dataclasses.replace(get_config(), llm_provider="mystery"))


class TestValidateModel:
    def client_with_models(self, *model_ids, error=None):
        models_list = AsyncMock(
            return_value=SimpleNamespace(data=[SimpleNamespace(id=m) for m in model_ids]),
            side_effect=error,
        )
        client = fake_client(AsyncMock())
        client.models = SimpleNamespace(list=models_list)
        return client

    @pytest.mark.asyncio
    async def test_configured_model_available(self):
        llm = ChatLLM(get_config(), client=self.client_with_models("llama-3.3-70b-versatile", "whisper-large-v3"))
        assert await llm.validate_model() is True

    @pytest.mark.asyncio
    async def test_missing_model(self):
        llm = ChatLLM(get_config(), client=self.client_with_models("some-other-model"))

        with pytest.raises(ConfigError) as exc_info:
            await llm.validate_model()

        assert "some-other-model" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_listing_failure(self):
        llm = ChatLLM(get_config(), client=self.client_with_models(error=OpenAIError("401")))

        with pytest.raises(ConfigError):
            await llm.validate_model()
