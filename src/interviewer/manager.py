"""
Session registry.

Maps session ids to their controllers and wires each new session with its
own providers. Sessions share nothing mutable except the activity store.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

import structlog

from src.interviewer.config import get_config
from src.interviewer.controller import SessionController
from src.interviewer.llm import LLMProvider, create_llm
from src.interviewer.session import Session, SessionParams
from src.interviewer.store import ActivityStore, InMemoryActivityStore
from src.interviewer.stt import TranscriptionProvider, create_transcriber
from src.interviewer.transport import TransportChannel
from src.interviewer.tts import SpeechSynthesizer

logger = structlog.get_logger(__name__)


class SessionManager:
    """Owns the `session_id -> SessionController` map for one server process."""

    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        store: Optional[ActivityStore] = None,
        transcriber_factory: Optional[Callable[[], TranscriptionProvider]] = None,
        llm_factory: Optional[Callable[[], LLMProvider]] = None,
        synthesizer_factory: Optional[Callable[[], SpeechSynthesizer]] = None,
    ):
        self.config = config or get_config()
        self.store = store or InMemoryActivityStore()
        self._transcriber_factory = transcriber_factory or (lambda: create_transcriber(self.config))
        self._llm_factory = llm_factory or (lambda: create_llm(self.config))
        self._synthesizer_factory = synthesizer_factory or (lambda: SpeechSynthesizer(self.config))
        self._sessions: Dict[str, SessionController] = {}
        self.total_sessions = 0

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[SessionController]:
        return self._sessions.get(session_id)

    def create_controller(self, channel: TransportChannel) -> SessionController:
        """Build a controller with fresh per-session providers."""
        return SessionController(
            channel,
            transcriber=self._transcriber_factory(),
            llm=self._llm_factory(),
            synthesizer=self._synthesizer_factory(),
            store=self.store,
            config=self.config,
        )

    async def start_session(self, controller: SessionController, params: SessionParams) -> Session:
        """
        Start `controller` and register it.

        ValidationError propagates before anything is registered.
        """
        session = await controller.start(params)
        self._sessions[session.id] = controller
        self.total_sessions += 1
        logger.info("Session registered", session_id=session.id, active_sessions=len(self._sessions))
        return session

    def remove(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.info("Session removed", session_id=session_id, active_sessions=len(self._sessions))

    async def shutdown(self) -> None:
        """Finish every live session (server shutdown)."""
        for session_id, controller in list(self._sessions.items()):
            await controller.finish("server_shutdown")
            self.remove(session_id)
