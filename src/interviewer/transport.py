"""
Client WebSocket protocol and transport channel.

Binary frames carry capture audio (client -> server only). Text frames carry
JSON control messages.

Client -> server:
- start: session parameters (topic, role, level, company, userName, mode, ...)
- interrupt: stop agent playback now
- stop: end the interview

Server -> client (envelope `{"type": ..., ...payload}`):
- status: connected | generating_questions | questions_ready | interrupted | error
- transcript: {speaker, text}
- question: {text, index, total}
- audio: base64 PCM16 mono with sampleRate and sequence
- finished: {reason}; always the last message on the channel
- error: {message}
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import msgspec
import structlog

from src.interviewer.errors import TransportError

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class ServerMessageType(str, Enum):
    STATUS = "status"
    TRANSCRIPT = "transcript"
    QUESTION = "question"
    AUDIO = "audio"
    FINISHED = "finished"
    ERROR = "error"


class ClientMessageType(str, Enum):
    START = "start"
    INTERRUPT = "interrupt"
    STOP = "stop"


class SessionStatus(str, Enum):
    CONNECTED = "connected"
    GENERATING_QUESTIONS = "generating_questions"
    QUESTIONS_READY = "questions_ready"
    INTERRUPTED = "interrupted"
    ERROR = "error"


def _encode(message: Dict[str, Any]) -> str:
    return encoder.encode(message).decode("utf-8")


def create_status_message(status: SessionStatus) -> str:
    return _encode({"type": ServerMessageType.STATUS.value, "status": status.value})


def create_transcript_message(speaker: str, text: str) -> str:
    return _encode({"type": ServerMessageType.TRANSCRIPT.value, "speaker": speaker, "text": text})


def create_question_message(text: str, index: int, total: int) -> str:
    return _encode({
        "type": ServerMessageType.QUESTION.value,
        "text": text,
        "index": index,
        "total": total,
    })


def create_audio_message(pcm_bytes: bytes, sample_rate: int, sequence: int) -> str:
    """
    Create an audio message.

    Args:
        pcm_bytes: Mono PCM16 little-endian audio
        sample_rate: Sample rate of `pcm_bytes`
        sequence: Playback order of this buffer within the session

    Returns:
        JSON string to send to the client
    """
    return _encode({
        "type": ServerMessageType.AUDIO.value,
        "data": base64.b64encode(pcm_bytes).decode("utf-8"),
        "sampleRate": sample_rate,
        "sequence": sequence,
    })


def create_finished_message(reason: str) -> str:
    return _encode({"type": ServerMessageType.FINISHED.value, "reason": reason})


def create_error_message(message: str) -> str:
    return _encode({"type": ServerMessageType.ERROR.value, "message": message})


def parse_client_message(raw_message: str | bytes) -> tuple[ClientMessageType, Dict[str, Any]]:
    """
    Parse a client control message.

    Returns:
        Tuple of (message_type, payload dict)

    Raises:
        ValueError: If the message is not valid JSON or has an unknown type
    """
    try:
        message = decoder.decode(
            raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
        )
    except msgspec.DecodeError as e:
        logger.warning("Failed to parse client message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Client message must be a JSON object")

    type_str = message.get("type", "")
    try:
        message_type = ClientMessageType(type_str)
    except ValueError:
        logger.warning("Unknown client message type", message_type=type_str)
        raise ValueError(f"Unknown message type: {type_str}")

    return message_type, message


class ChannelEventType(str, Enum):
    INTERRUPT = "interrupt"
    STOP = "stop"
    CLOSED = "closed"


@dataclass
class ChannelEvent:
    type: ChannelEventType
    reason: str = ""


class TransportChannel:
    """
    Ordered duplex channel to one client.

    All outbound messages go through a single queue drained by one writer
    task, so messages reach the client in the order they were sent. Once
    `finished` has been queued, or the channel has closed, further sends are
    dropped.
    """

    def __init__(
        self,
        send_text: Callable[[str], Awaitable[None]],
        *,
        close_transport: Optional[Callable[[], Awaitable[None]]] = None,
        drain_timeout: float = 2.0,
    ):
        self._send_text = send_text
        self._close_transport = close_transport
        self._drain_timeout = drain_timeout

        self.events: asyncio.Queue[ChannelEvent] = asyncio.Queue()
        self._outbound: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task] = None
        self._finished_sent = False
        self._closed = False
        self._disconnected = False
        self.messages_sent = 0

    @property
    def is_open(self) -> bool:
        return not self._closed and not self._finished_sent

    @property
    def finished_sent(self) -> bool:
        return self._finished_sent

    def start(self) -> None:
        if self._writer_task is None and not self._closed:
            self._writer_task = asyncio.create_task(self._writer())

    def send(self, message: str) -> bool:
        """Queue a message. Returns False (no-op) after completion or close."""
        if not self.is_open:
            logger.debug("Dropping message on completed channel")
            return False
        self._outbound.put_nowait(message)
        return True

    def send_status(self, status: SessionStatus) -> bool:
        return self.send(create_status_message(status))

    def send_transcript(self, speaker: str, text: str) -> bool:
        return self.send(create_transcript_message(speaker, text))

    def send_question(self, text: str, index: int, total: int) -> bool:
        return self.send(create_question_message(text, index, total))

    def send_error(self, message: str) -> bool:
        return self.send(create_error_message(message))

    def send_finished(self, reason: str) -> bool:
        """Queue the final `finished` message. Only the first call has any effect."""
        if self._finished_sent or self._closed:
            return False
        self._finished_sent = True
        self._outbound.put_nowait(create_finished_message(reason))
        return True

    def handle_client_text(self, raw_message: str) -> Optional[Dict[str, Any]]:
        """
        Route a client control message.

        `interrupt` and `stop` are posted to `events`. A `start` payload is
        returned to the caller, which owns session creation.
        """
        try:
            message_type, message = parse_client_message(raw_message)
        except ValueError:
            return None

        if message_type == ClientMessageType.START:
            return message
        if message_type == ClientMessageType.INTERRUPT:
            self.events.put_nowait(ChannelEvent(type=ChannelEventType.INTERRUPT))
        elif message_type == ClientMessageType.STOP:
            self.events.put_nowait(ChannelEvent(type=ChannelEventType.STOP, reason="client_stop"))
        return None

    def notify_disconnected(self, reason: str = "client_disconnected") -> None:
        """The client went away; no further writes are possible."""
        if self._disconnected:
            return
        self._disconnected = True
        self._closed = True
        self._outbound.put_nowait(None)
        self.events.put_nowait(ChannelEvent(type=ChannelEventType.CLOSED, reason=reason))
        logger.info("Transport disconnected", reason=reason)

    async def _writer(self) -> None:
        while True:
            message = await self._outbound.get()
            if message is None or self._disconnected:
                return
            try:
                await self._send_text(message)
                self.messages_sent += 1
            except TransportError as e:
                logger.info("Transport closed by client", error=str(e))
                self.notify_disconnected()
                return
            except Exception as e:
                logger.warning("Transport send failed", error_type=type(e).__name__, error=str(e))
                self.notify_disconnected(reason="send_failed")
                return

    async def close(self) -> None:
        """Drain queued messages and close. Never raises."""
        already_closed = self._closed
        self._closed = True
        self._outbound.put_nowait(None)

        task = self._writer_task
        if task is not None and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(task, timeout=self._drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Transport drain timed out")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Transport writer failed during close", error=str(e))

        if already_closed or self._disconnected or self._close_transport is None:
            return
        try:
            await self._close_transport()
        except Exception as e:
            logger.debug("Transport close failed", error=str(e))
