"""
Dialogue policy engine.

Decides the agent's next utterance from the session state.

- ScriptedQueuePolicy: walks a pre-generated question queue; the model only
  phrases the injected question. Exactly N questions, then a fixed closing.
- FreeFormPolicy: the model drives the conversation from the full history.
  The interview ends when a response starts with the terminal phrase, or on
  the forced-conclusion turn once the question budget is spent.

A failed or empty generation never fails the session; it becomes a fixed
apology utterance.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from src.interviewer.config import get_config
from src.interviewer.errors import ProviderError
from src.interviewer.llm import LLMProvider
from src.interviewer.prompts import build_freeform_prompt, build_scripted_prompt
from src.interviewer.session import DialogueMode, Session, Speaker, Turn

logger = structlog.get_logger(__name__)

APOLOGY_TEXT = "I'm sorry, I seem to be having trouble responding."
CLOSING_TEXT = (
    "That's all the questions I have for today, {name}. Thank you for your time. "
    "You'll receive a detailed analysis on the results page shortly. Goodbye!"
)


@dataclass(frozen=True)
class AgentUtterance:
    """The policy's decision for one agent turn."""
    text: str
    complete: bool = False
    question: Optional[str] = None
    question_index: Optional[int] = None
    total: Optional[int] = None
    fallback: bool = False


def history_to_messages(history: List[Turn]) -> List[Dict[str, str]]:
    """Convert session turns to chat messages."""
    return [
        {"role": "assistant" if t.speaker == Speaker.AGENT else "user", "content": t.text}
        for t in history
    ]


def _normalize(text: str) -> str:
    return text.replace("’", "'").strip().lower()


def is_terminal_response(text: str, terminal_phrase: str) -> bool:
    """True if `text` opens with the terminal phrase (ignoring case and curly quotes)."""
    return bool(terminal_phrase) and _normalize(text).startswith(_normalize(terminal_phrase))


class DialoguePolicy(ABC):
    def __init__(self, llm: LLMProvider, config: Optional[Any] = None):
        self.llm = llm
        self.config = config or get_config()

    @abstractmethod
    async def next_utterance(self, session: Session) -> AgentUtterance:
        raise NotImplementedError

    @abstractmethod
    def fallback_utterance(self, session: Session) -> AgentUtterance:
        """The utterance used when generation fails or returns nothing."""
        raise NotImplementedError

    async def _generate(self, system_prompt: str, messages: List[Dict[str, str]]) -> str:
        """Run the model; any provider failure yields an empty string."""
        try:
            response = await self.llm.generate(system_prompt, messages)
        except ProviderError as e:
            logger.warning("Generation failed, using apology", error=str(e), provider=e.provider)
            return ""
        return (response.text or "").strip()


class ScriptedQueuePolicy(DialoguePolicy):
    """Asks exactly the queued questions, in order, then closes."""

    def _closing(self, session: Session) -> AgentUtterance:
        logger.info("Question queue exhausted", session_id=session.id, total=len(session.question_queue))
        return AgentUtterance(
            text=CLOSING_TEXT.format(name=session.params.user_name),
            complete=True,
            total=len(session.question_queue),
        )

    async def next_utterance(self, session: Session) -> AgentUtterance:
        queue = session.question_queue
        index = session.current_question_index
        total = len(queue)

        if index >= total:
            return self._closing(session)

        question = queue[index]
        prompt = build_scripted_prompt(
            session.params,
            company_name=self.config.company_name,
            question=question,
            question_number=index + 1,
            total=total,
            is_first=not session.history,
        )
        # The model only needs the last answer to acknowledge it.
        last_answer = [t for t in session.history if t.speaker == Speaker.USER][-1:]
        messages = history_to_messages(last_answer) or [
            {"role": "user", "content": "(The candidate has joined the interview.)"}
        ]

        text = await self._generate(prompt, messages)
        if not text:
            return self.fallback_utterance(session)

        return AgentUtterance(text=text, question=question, question_index=index, total=total)

    def fallback_utterance(self, session: Session) -> AgentUtterance:
        # Still ask the queued question so the script advances.
        index = session.current_question_index
        total = len(session.question_queue)
        if index >= total:
            return self._closing(session)
        question = session.question_queue[index]
        return AgentUtterance(
            text=f"{APOLOGY_TEXT} {question}",
            question=question,
            question_index=index,
            total=total,
            fallback=True,
        )


class FreeFormPolicy(DialoguePolicy):
    """Lets the model lead, bounded by MAX_QUESTIONS."""

    def _budget_spent(self, session: Session) -> bool:
        return session.agent_turn_count() >= self.config.max_questions

    async def next_utterance(self, session: Session) -> AgentUtterance:
        max_questions = self.config.max_questions
        terminal_phrase = self.config.terminal_phrase
        questions_asked = session.agent_turn_count()

        prompt = build_freeform_prompt(
            session.params,
            company_name=self.config.company_name,
            max_questions=max_questions,
            terminal_phrase=terminal_phrase,
            questions_asked=questions_asked,
        )
        messages = history_to_messages(session.history) or [
            {"role": "user", "content": "(The candidate has joined the interview.)"}
        ]

        text = await self._generate(prompt, messages)
        if not text:
            return self.fallback_utterance(session)

        terminal = is_terminal_response(text, terminal_phrase)
        forced = self._budget_spent(session)
        if forced and not terminal:
            logger.info("Forcing interview conclusion", session_id=session.id, questions_asked=questions_asked)

        return AgentUtterance(text=text, complete=terminal or forced)

    def fallback_utterance(self, session: Session) -> AgentUtterance:
        return AgentUtterance(text=APOLOGY_TEXT, complete=self._budget_spent(session), fallback=True)


def create_policy(
    mode: DialogueMode,
    llm: LLMProvider,
    config: Optional[Any] = None,
) -> DialoguePolicy:
    if mode == DialogueMode.SCRIPTED:
        return ScriptedQueuePolicy(llm, config)
    return FreeFormPolicy(llm, config)
