"""
Tests for scripted question-set generation.
"""

import json

import pytest

from src.interviewer.config import get_config
from src.interviewer.errors import ProviderError
from src.interviewer.questions import QuestionGenerator
from src.interviewer.session import SessionParams


def question_set(n: int) -> str:
    return json.dumps({
        "questions": [{"question": f"Question {i}?", "answer": f"Answer {i}."} for i in range(n)]
    })


class TestQuestionGenerator:
    @pytest.mark.asyncio
    async def test_returns_requested_count(self, make_llm):
        llm = make_llm([question_set(8)])
        generator = QuestionGenerator(llm, get_config())

        questions = await generator.generate(SessionParams(role="Data Engineer"), count=5)

        assert questions == [f"Question {i}?" for i in range(5)]
        prompt, _ = llm.calls[0]
        assert "Data Engineer" in prompt
        assert "exactly 5" in prompt

    @pytest.mark.asyncio
    async def test_default_count_from_config(self, make_llm):
        config = get_config()
        generator = QuestionGenerator(make_llm([question_set(config.generated_question_count)]), config)

        questions = await generator.generate(SessionParams())

        assert len(questions) == config.generated_question_count

    @pytest.mark.asyncio
    async def test_malformed_output_raises(self, make_llm):
        generator = QuestionGenerator(make_llm(["Sure! Here are some questions:"]), get_config())

        with pytest.raises(ProviderError) as exc_info:
            await generator.generate(SessionParams(), count=3)
        assert exc_info.value.operation == "generate_questions"

    @pytest.mark.asyncio
    async def test_too_few_questions_raises(self, make_llm):
        generator = QuestionGenerator(make_llm([question_set(2)]), get_config())

        with pytest.raises(ProviderError, match="2 questions"):
            await generator.generate(SessionParams(), count=3)

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, make_llm):
        generator = QuestionGenerator(
            make_llm([ProviderError("rate limited", provider="groq", operation="generate")]),
            get_config(),
        )

        with pytest.raises(ProviderError, match="rate limited"):
            await generator.generate(SessionParams(), count=3)
