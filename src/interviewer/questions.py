"""
Question-set generation for scripted interviews.

A single up-front LLM call in JSON mode; the response is validated with
pydantic before any question reaches the session.
"""

from typing import Any, List, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from src.interviewer.config import get_config
from src.interviewer.errors import ProviderError
from src.interviewer.llm import LLMProvider
from src.interviewer.prompts import build_question_generation_prompt
from src.interviewer.session import SessionParams

logger = structlog.get_logger(__name__)


class InterviewQuestion(BaseModel):
    """One generated question with a reference answer."""

    question: str = Field(min_length=1, description="A single, well-defined interview question")
    answer: str = Field(default="", description="A detailed, expert-level answer")


class QuestionSet(BaseModel):
    """Structured output of the question generator."""

    questions: List[InterviewQuestion] = Field(default_factory=list)


class QuestionGenerator:
    """Generates the question queue for a scripted session."""

    def __init__(self, llm: LLMProvider, config: Optional[Any] = None):
        self.llm = llm
        self.config = config or get_config()

    async def generate(self, params: SessionParams, count: Optional[int] = None) -> List[str]:
        """
        Generate `count` questions (default GENERATED_QUESTION_COUNT).

        Raises:
            ProviderError: If the provider fails or returns fewer usable questions
                than requested
        """
        count = count or self.config.generated_question_count
        prompt = build_question_generation_prompt(params, count)
        response = await self.llm.generate(
            prompt,
            [{"role": "user", "content": f"Generate the {count} questions now."}],
            json_mode=True,
            max_tokens=4096,
        )

        try:
            question_set = QuestionSet.model_validate_json(response.text)
        except PydanticValidationError as e:
            logger.warning("Question set failed validation", error=str(e)[:200])
            raise ProviderError(
                "Question generator returned malformed output",
                provider=getattr(self.llm, "name", ""),
                operation="generate_questions",
                cause=e,
            )

        questions = [q.question.strip() for q in question_set.questions if q.question.strip()]
        if len(questions) < count:
            raise ProviderError(
                f"Question generator returned {len(questions)} questions, expected {count}",
                provider=getattr(self.llm, "name", ""),
                operation="generate_questions",
            )

        logger.info("Question set generated", count=count, role=params.role, level=params.level)
        return questions[:count]
