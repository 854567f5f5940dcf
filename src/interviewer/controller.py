"""
Session controller: the per-interview state machine.

Phases:

    idle -> connecting -> listening <-> transcribing -> generating -> speaking -> listening ...
                                                                         `-> ending -> closed

plus `error`, reachable from any non-terminal phase. Exactly one of
listening/transcribing/generating/speaking is active at a time; the phase
field is the lock that keeps the per-session pipeline sequential.

The controller owns the session record and all per-session components. It
reacts to typed events from four queues (capture, playback, transport and
its own internal queue) in `run()`. Provider work runs in a single turn task
at a time; synthesis runs in a speech task so barge-in can cancel it.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from src.interviewer.capture import AudioCapture, CaptureEvent, CaptureEventType, CaptureMode
from src.interviewer.config import get_config
from src.interviewer.dialogue import AgentUtterance, DialoguePolicy, create_policy
from src.interviewer.errors import InvalidTransitionError, ProviderError
from src.interviewer.llm import LLMProvider
from src.interviewer.playback import PlaybackEvent, PlaybackEventType, PlaybackScheduler
from src.interviewer.questions import QuestionGenerator
from src.interviewer.session import DialogueMode, Phase, Session, SessionParams, SessionSummary, Speaker
from src.interviewer.store import ActivityStore
from src.interviewer.stt import TranscriptionProvider
from src.interviewer.transport import ChannelEvent, ChannelEventType, SessionStatus, TransportChannel
from src.interviewer.tts import SpeechSynthesizer
from src.interviewer.vad import Utterance

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ALLOWED_TRANSITIONS: Dict[Phase, frozenset] = {
    Phase.IDLE: frozenset({Phase.CONNECTING, Phase.ENDING, Phase.CLOSED, Phase.ERROR}),
    Phase.CONNECTING: frozenset({Phase.LISTENING, Phase.ENDING, Phase.CLOSED, Phase.ERROR}),
    Phase.LISTENING: frozenset({Phase.TRANSCRIBING, Phase.GENERATING, Phase.ENDING, Phase.CLOSED, Phase.ERROR}),
    Phase.TRANSCRIBING: frozenset({Phase.LISTENING, Phase.GENERATING, Phase.ENDING, Phase.CLOSED, Phase.ERROR}),
    Phase.GENERATING: frozenset({Phase.SPEAKING, Phase.ENDING, Phase.CLOSED, Phase.ERROR}),
    Phase.SPEAKING: frozenset({Phase.LISTENING, Phase.ENDING, Phase.CLOSED, Phase.ERROR}),
    Phase.ERROR: frozenset({Phase.ENDING, Phase.CLOSED}),
    Phase.ENDING: frozenset({Phase.CLOSED}),
    Phase.CLOSED: frozenset(),
}

# Once the interview is complete, only these remain reachable.
COMPLETE_TRANSITIONS = frozenset({Phase.ENDING, Phase.CLOSED})

CAPTURE_MODE_BY_PHASE = {
    Phase.LISTENING: CaptureMode.ENDPOINTING,
    Phase.SPEAKING: CaptureMode.BARGE_IN,
}

USER_ERROR_MESSAGE = "Something went wrong and the interview had to stop."


class InternalEventType(str, Enum):
    SYNTHESIS_FAILED = "synthesis_failed"
    TASK_FAILED = "task_failed"
    FINISHED = "finished"


@dataclass
class InternalEvent:
    type: InternalEventType
    error: Optional[BaseException] = None


class SessionController:
    """
    Runs one interview over one transport channel.

    Providers are injected so tests (and alternative deployments) can swap
    them; the SessionManager wires the real ones.
    """

    def __init__(
        self,
        channel: TransportChannel,
        *,
        transcriber: TranscriptionProvider,
        llm: LLMProvider,
        synthesizer: SpeechSynthesizer,
        store: Optional[ActivityStore] = None,
        question_generator: Optional[QuestionGenerator] = None,
        capture: Optional[AudioCapture] = None,
        scheduler: Optional[PlaybackScheduler] = None,
        config: Optional[Any] = None,
    ):
        self.config = config or get_config()
        self.channel = channel
        self.transcriber = transcriber
        self.llm = llm
        self.synthesizer = synthesizer
        self.store = store
        self.question_generator = question_generator or QuestionGenerator(llm, self.config)
        self.capture = capture or AudioCapture(self.config)
        self.scheduler = scheduler or PlaybackScheduler.from_config(channel.send, self.config)

        self.session: Optional[Session] = None
        self.policy: Optional[DialoguePolicy] = None
        self.finish_reason: Optional[str] = None

        self._internal: asyncio.Queue[InternalEvent] = asyncio.Queue()
        self._turn_task: Optional[asyncio.Task] = None
        self._speech_task: Optional[asyncio.Task] = None
        self._finished = False
        # Set when the policy returned the final utterance; is_complete follows once it has played.
        self._final_turn = False
        self._closed = asyncio.Event()
        self._log = logger

    # ------------------------------------------------------------------
    # Phase handling
    # ------------------------------------------------------------------

    @property
    def phase(self) -> Phase:
        return self.session.phase if self.session else Phase.IDLE

    @property
    def is_finished(self) -> bool:
        return self._finished

    def _transition(self, target: Phase) -> None:
        session = self.session
        if session is None:
            raise InvalidTransitionError(Phase.IDLE.value, target.value)

        current = session.phase
        if target == current:
            return
        if session.is_complete and target not in COMPLETE_TRANSITIONS:
            raise InvalidTransitionError(current.value, target.value)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)

        session.phase = target
        self.capture.set_mode(CAPTURE_MODE_BY_PHASE.get(target, CaptureMode.PAUSED))
        self._log.debug("Phase changed", previous=current.value, phase=target.value)

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _call_provider(
        self,
        factory: Callable[[], Awaitable[T]],
        *,
        operation: str,
        retries: int,
    ) -> T:
        """Run a provider call with a timeout, retrying on ProviderError."""
        timeout = self.config.provider_timeout_seconds
        attempts = max(0, retries) + 1
        error: Optional[ProviderError] = None

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(factory(), timeout=timeout)
            except asyncio.TimeoutError as e:
                error = ProviderError(f"{operation} timed out after {timeout}s", operation=operation, cause=e)
            except ProviderError as e:
                error = e
            if attempt < attempts:
                self._log.warning("Provider call failed, retrying", operation=operation, attempt=attempt, error=str(error))

        assert error is not None
        raise error

    def _spawn_turn(self, coro: Awaitable[None]) -> None:
        self._turn_task = asyncio.create_task(self._guard(coro))

    async def _guard(self, coro: Awaitable[None]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error("Session task failed", error_type=type(e).__name__, error=str(e))
            self._internal.put_nowait(InternalEvent(type=InternalEventType.TASK_FAILED, error=e))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start(self, params: SessionParams) -> Session:
        """
        Start the interview.

        Raises:
            ValidationError: If topic, role or level is empty; nothing is acquired.
            ProviderError: If the question set could not be generated.
        """
        params.validate()

        session = Session(params=params)
        self.session = session
        self.policy = create_policy(params.mode, self.llm, self.config)
        self._log = logger.bind(session_id=session.id)

        self._transition(Phase.CONNECTING)
        self.channel.send_status(SessionStatus.CONNECTED)
        await self.capture.start()
        self._log.info(
            "Session started",
            mode=params.mode.value,
            topic=params.topic,
            role=params.role,
            level=params.level,
            company=params.company,
        )

        if params.mode == DialogueMode.SCRIPTED:
            questions = list(params.questions)
            if not questions:
                self.channel.send_status(SessionStatus.GENERATING_QUESTIONS)
                questions = await self._call_provider(
                    lambda: self.question_generator.generate(params),
                    operation="generate_questions",
                    retries=self.config.provider_max_retries,
                )
            session.question_queue = questions[: self.config.scripted_question_count]
            self.channel.send_status(SessionStatus.QUESTIONS_READY)
            self._log.info("Question queue ready", total=len(session.question_queue))

        self._transition(Phase.LISTENING)
        self._begin_agent_turn()
        return session

    def _begin_agent_turn(self) -> None:
        self._transition(Phase.GENERATING)
        self._spawn_turn(self._generate_agent_turn())

    async def _generate_agent_turn(self) -> None:
        session = self.session
        assert session is not None and self.policy is not None
        policy = self.policy
        try:
            utterance = await self._call_provider(
                lambda: policy.next_utterance(session),
                operation="generate",
                retries=0,
            )
        except ProviderError as e:
            self._log.warning("Generation timed out, using apology", error=str(e))
            utterance = policy.fallback_utterance(session)
        await self.on_agent_utterance(utterance)

    def on_utterance_ready(self, utterance: Utterance) -> bool:
        """Accept a finished utterance. Only valid while listening."""
        if self.phase != Phase.LISTENING or self._finished:
            self._log.debug("Ignoring utterance outside listening", phase=self.phase.value)
            return False
        self._transition(Phase.TRANSCRIBING)
        self._spawn_turn(self._transcribe(utterance))
        return True

    async def _transcribe(self, utterance: Utterance) -> None:
        try:
            text = await self._call_provider(
                lambda: self.transcriber.transcribe(utterance.audio, utterance.encoding_hint),
                operation="transcribe",
                retries=self.config.provider_max_retries,
            )
        except ProviderError as e:
            self._log.warning("Transcription failed, treating as empty", error=str(e))
            text = ""
        await self.on_transcript(text)

    async def on_transcript(self, text: str) -> None:
        session = self.session
        if session is None or self.phase != Phase.TRANSCRIBING:
            return

        text = (text or "").strip()
        if not text:
            self._log.debug("Empty transcript, back to listening")
            self._transition(Phase.LISTENING)
            return

        session.add_turn(Speaker.USER, text)
        self.channel.send_transcript(Speaker.USER.value, text)
        self._transition(Phase.GENERATING)
        await self._generate_agent_turn()

    async def on_agent_utterance(self, utterance: AgentUtterance) -> None:
        session = self.session
        if session is None or self.phase != Phase.GENERATING:
            return

        session.add_turn(Speaker.AGENT, utterance.text)
        self.channel.send_transcript(Speaker.AGENT.value, utterance.text)

        if utterance.question_index is not None and utterance.question:
            session.current_question_index = utterance.question_index + 1
            self.channel.send_question(utterance.question, utterance.question_index + 1, utterance.total or 0)

        if utterance.complete:
            self._final_turn = True
            self._log.info("Final agent turn", turns=len(session.history), fallback=utterance.fallback)

        self._transition(Phase.SPEAKING)
        self._speech_task = asyncio.create_task(self._guard(self._speak(utterance.text)))

    async def _speak(self, text: str) -> None:
        try:
            async for chunk in self.synthesizer.synthesize(text):
                self.scheduler.schedule(chunk)
        except ProviderError as e:
            self._log.error("Synthesis failed", error=str(e), provider=e.provider)
            self._internal.put_nowait(InternalEvent(type=InternalEventType.SYNTHESIS_FAILED, error=e))
            return
        self.scheduler.end_turn()

    async def interrupt(self, reason: str = "barge_in") -> None:
        """Stop the agent mid-utterance and hand the floor back to the candidate."""
        session = self.session
        if session is None or self.phase != Phase.SPEAKING:
            return

        self._log.info("Interrupting agent", reason=reason)
        task = self._speech_task
        self._speech_task = None
        self.synthesizer.cancel_current()
        if task and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._finished or self.phase != Phase.SPEAKING:
            return
        self.scheduler.interrupt()
        self.channel.send_status(SessionStatus.INTERRUPTED)

        if self._final_turn:
            await self._complete()
            return
        # The interrupted question counts as asked.
        self._transition(Phase.LISTENING)

    async def _on_playback_completed(self, event: PlaybackEvent) -> None:
        session = self.session
        if session is None or self.phase != Phase.SPEAKING:
            return
        if event.generation != self.scheduler.generation:
            return
        if self._final_turn:
            await self._complete()
            return
        self._transition(Phase.LISTENING)

    async def _complete(self) -> None:
        """The final utterance has played: mark the interview complete and end it."""
        session = self.session
        assert session is not None
        self._transition(Phase.ENDING)
        if session.mark_complete():
            self._log.info("Interview complete", turns=len(session.history))
        await self.finish("completed")

    async def _fail(self, error: Optional[BaseException]) -> None:
        self._log.error("Session failed", error_type=type(error).__name__ if error else None)
        session = self.session
        if session is not None and session.phase not in (Phase.ENDING, Phase.CLOSED, Phase.ERROR):
            if not session.is_complete:
                self._transition(Phase.ERROR)
        self.channel.send_status(SessionStatus.ERROR)
        self.channel.send_error(USER_ERROR_MESSAGE)
        await self.finish("error")

    async def finish(self, reason: str = "finished") -> None:
        """
        End the session. Idempotent; only the first call does anything.

        Cancels in-flight work, stops playback, releases capture once,
        persists the activity, sends exactly one `finished` and closes the channel.
        """
        if self._finished:
            return
        self._finished = True
        self.finish_reason = reason
        session = self.session
        current = asyncio.current_task()

        self.synthesizer.cancel_current()
        self.scheduler.close()
        tasks = [t for t in (self._turn_task, self._speech_task) if t and t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if session is not None and session.phase != Phase.ENDING:
            self._transition(Phase.ENDING)
        await self.capture.close()

        if session is not None:
            session.ended_at = time.time()
            if self.store is not None and session.history:
                try:
                    await self.store.save_activity(SessionSummary.from_session(session, reason))
                except Exception as e:
                    self._log.error("Failed to save activity", error=str(e))

        self.channel.send_finished(reason)
        await self.channel.close()
        await self._close_providers()

        if session is not None:
            self._transition(Phase.CLOSED)
            self._log.info(
                "Session finished",
                reason=reason,
                turns=len(session.history),
                completed=session.is_complete,
            )
        # Wake run() if finish() came from outside the event loop.
        self._internal.put_nowait(InternalEvent(type=InternalEventType.FINISHED))
        self._closed.set()

    async def _close_providers(self) -> None:
        for name, closer in (
            ("synthesizer", self.synthesizer.stop),
            ("transcriber", self.transcriber.close),
            ("llm", self.llm.close),
        ):
            try:
                await closer()
            except Exception as e:
                self._log.debug("Provider close failed", component=name, error=str(e))

    async def wait_closed(self) -> None:
        await self._closed.wait()

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    async def _dispatch(self, source: str, event: Any) -> None:
        if source == "capture":
            assert isinstance(event, CaptureEvent)
            if event.type == CaptureEventType.UTTERANCE and event.utterance is not None:
                self.on_utterance_ready(event.utterance)
            elif event.type == CaptureEventType.BARGE_IN:
                await self.interrupt(reason="barge_in")

        elif source == "playback":
            assert isinstance(event, PlaybackEvent)
            if event.type == PlaybackEventType.COMPLETED:
                await self._on_playback_completed(event)

        elif source == "channel":
            assert isinstance(event, ChannelEvent)
            if event.type == ChannelEventType.INTERRUPT:
                await self.interrupt(reason="client")
            elif event.type == ChannelEventType.STOP:
                await self.finish(event.reason or "client_stop")
            elif event.type == ChannelEventType.CLOSED:
                await self.finish(event.reason or "client_disconnected")

        elif source == "internal":
            assert isinstance(event, InternalEvent)
            if event.type == InternalEventType.SYNTHESIS_FAILED:
                if self.phase == Phase.SPEAKING:
                    self._transition(Phase.ENDING)
                self.channel.send_status(SessionStatus.ERROR)
                await self.finish("synthesis_failed")
            elif event.type == InternalEventType.TASK_FAILED:
                await self._fail(event.error)

    async def run(self) -> None:
        """Process session events until the session finishes."""
        queues: Dict[str, asyncio.Queue] = {
            "capture": self.capture.events,
            "playback": self.scheduler.events,
            "channel": self.channel.events,
            "internal": self._internal,
        }
        getters: Dict[str, asyncio.Task] = {}

        try:
            while not self._finished:
                for name, queue in queues.items():
                    if name not in getters:
                        getters[name] = asyncio.create_task(queue.get())

                done, _ = await asyncio.wait(getters.values(), return_when=asyncio.FIRST_COMPLETED)
                for name in [n for n, t in getters.items() if t in done]:
                    event = getters.pop(name).result()
                    if self._finished:
                        break
                    await self._dispatch(name, event)
        except asyncio.CancelledError:
            await self.finish("cancelled")
            raise
        except Exception as e:
            self._log.error("Session loop failed", error_type=type(e).__name__, error=str(e))
            await self._fail(e)
        finally:
            for task in getters.values():
                task.cancel()
