"""
Session data model: phases, turns, start parameters and the session record.

The session record is owned by exactly one SessionController; nothing else
mutates it.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from src.interviewer.errors import ValidationError

DEFAULT_TOPIC = "general"
DEFAULT_ROLE = "Software Engineer"
DEFAULT_LEVEL = "entry-level"
DEFAULT_USER_NAME = "there"


class Phase(str, Enum):
    """Session lifecycle phases."""
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    GENERATING = "generating"
    SPEAKING = "speaking"
    ENDING = "ending"
    CLOSED = "closed"
    ERROR = "error"


class Speaker(str, Enum):
    USER = "user"
    AGENT = "agent"


class DialogueMode(str, Enum):
    SCRIPTED = "scripted"
    FREEFORM = "freeform"


@dataclass(frozen=True)
class Turn:
    """A single entry in the conversation history."""
    speaker: Speaker
    text: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"speaker": self.speaker.value, "text": self.text, "timestamp": self.timestamp}


@dataclass(frozen=True)
class SessionParams:
    """Validated start parameters for one interview."""
    topic: str = DEFAULT_TOPIC
    role: str = DEFAULT_ROLE
    level: str = DEFAULT_LEVEL
    company: Optional[str] = None
    user_name: str = DEFAULT_USER_NAME
    mode: DialogueMode = DialogueMode.SCRIPTED
    personality: Optional[str] = None
    questions: tuple[str, ...] = ()

    def validate(self) -> None:
        """Raise ValidationError if any required field is empty."""
        missing = [
            name for name in ("topic", "role", "level")
            if not (getattr(self, name) or "").strip()
        ]
        if missing:
            raise ValidationError(f"Missing interview parameters: {', '.join(missing)}")

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        *,
        default_mode: str = DialogueMode.SCRIPTED.value,
    ) -> "SessionParams":
        """
        Build params from a client `start` payload.

        Empty strings fall back to the defaults. Non-string values and unknown
        modes raise ValidationError.
        """
        def _text(key: str, default: Optional[str]) -> Optional[str]:
            value = data.get(key)
            if value is None:
                return default
            if not isinstance(value, str):
                raise ValidationError(f"'{key}' must be a string")
            value = value.strip()
            return value or default

        mode_raw = _text("mode", default_mode) or default_mode
        try:
            mode = DialogueMode(mode_raw.lower())
        except ValueError:
            raise ValidationError(f"Unknown interview mode: {mode_raw}")

        raw_questions = data.get("questions") or []
        if not isinstance(raw_questions, (list, tuple)):
            raise ValidationError("'questions' must be a list of strings")
        questions = []
        for item in raw_questions:
            # Generated question sets come as {"question": ..., "answer": ...}
            if isinstance(item, Mapping):
                item = item.get("question")
            if not isinstance(item, str):
                raise ValidationError("'questions' must be a list of strings")
            if item.strip():
                questions.append(item.strip())

        params = cls(
            topic=_text("topic", DEFAULT_TOPIC),
            role=_text("role", DEFAULT_ROLE),
            level=_text("level", DEFAULT_LEVEL),
            company=_text("company", None),
            user_name=_text("userName", DEFAULT_USER_NAME),
            mode=mode,
            personality=_text("personality", None),
            questions=tuple(questions),
        )
        params.validate()
        return params


@dataclass
class Session:
    """
    Per-interview state.

    `history` is append-only and `is_complete` flips at most once; use
    `add_turn()` and `mark_complete()` rather than touching the fields.
    """
    params: SessionParams
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    phase: Phase = Phase.IDLE
    history: list[Turn] = field(default_factory=list)
    question_queue: list[str] = field(default_factory=list)
    current_question_index: int = 0
    is_complete: bool = False
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None

    @property
    def mode(self) -> DialogueMode:
        return self.params.mode

    def add_turn(self, speaker: Speaker, text: str) -> Turn:
        turn = Turn(speaker=speaker, text=text)
        self.history.append(turn)
        return turn

    def mark_complete(self) -> bool:
        """Set is_complete. Returns False if it was already set."""
        if self.is_complete:
            return False
        self.is_complete = True
        return True

    def agent_turn_count(self) -> int:
        return sum(1 for t in self.history if t.speaker == Speaker.AGENT)

    def user_turn_count(self) -> int:
        return sum(1 for t in self.history if t.speaker == Speaker.USER)

    def transcript(self) -> list[dict[str, Any]]:
        return [t.to_dict() for t in self.history]


@dataclass
class SessionSummary:
    """Activity record persisted when a session ends."""
    id: str
    topic: str
    role: str
    level: str
    company: Optional[str]
    user_name: str
    mode: str
    transcript: list[dict[str, Any]]
    completed: bool
    reason: str
    started_at: float
    ended_at: float

    @classmethod
    def from_session(cls, session: Session, reason: str) -> "SessionSummary":
        return cls(
            id=session.id,
            topic=session.params.topic,
            role=session.params.role,
            level=session.params.level,
            company=session.params.company,
            user_name=session.params.user_name,
            mode=session.mode.value,
            transcript=session.transcript(),
            completed=session.is_complete,
            reason=reason,
            started_at=session.started_at,
            ended_at=session.ended_at or time.time(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "interview",
            "details": {
                "topic": self.topic,
                "role": self.role,
                "level": self.level,
                "company": self.company,
                "userName": self.user_name,
                "mode": self.mode,
            },
            "transcript": self.transcript,
            "completed": self.completed,
            "reason": self.reason,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
        }
