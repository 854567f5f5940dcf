"""
Tests for the client protocol and transport channel.
"""

import asyncio
import base64
import json

import pytest

from src.interviewer.transport import (
    ChannelEventType,
    ClientMessageType,
    SessionStatus,
    TransportChannel,
    create_audio_message,
    create_finished_message,
    create_question_message,
    create_status_message,
    create_transcript_message,
    parse_client_message,
)


class TestMessageCreation:
    """Tests for server -> client messages."""

    def test_status(self):
        message = json.loads(create_status_message(SessionStatus.QUESTIONS_READY))
        assert message == {"type": "status", "status": "questions_ready"}

    def test_transcript(self):
        message = json.loads(create_transcript_message("user", "Hello there"))
        assert message == {"type": "transcript", "speaker": "user", "text": "Hello there"}

    def test_question(self):
        message = json.loads(create_question_message("Why Python?", 2, 6))
        assert message == {"type": "question", "text": "Why Python?", "index": 2, "total": 6}

    def test_audio(self):
        pcm = b"\x01\x02\x03\x04"
        message = json.loads(create_audio_message(pcm, 24000, 7))

        assert message["type"] == "audio"
        assert message["sampleRate"] == 24000
        assert message["sequence"] == 7
        assert base64.b64decode(message["data"]) == pcm

    def test_finished(self):
        assert json.loads(create_finished_message("completed")) == {"type": "finished", "reason": "completed"}


class TestMessageParsing:
    """Tests for client -> server messages."""

    def test_parse_start(self):
        message_type, payload = parse_client_message(json.dumps({"type": "start", "topic": "Python"}))
        assert message_type == ClientMessageType.START
        assert payload["topic"] == "Python"

    def test_parse_bytes(self):
        message_type, _ = parse_client_message(b'{"type": "interrupt"}')
        assert message_type == ClientMessageType.INTERRUPT

    def test_invalid_json(self):
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_client_message("not json")

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown message type"):
            parse_client_message(json.dumps({"type": "dance"}))

    def test_non_object(self):
        with pytest.raises(ValueError):
            parse_client_message("[1, 2]")


class TestTransportChannel:
    """Tests for ordering and completion semantics."""

    @pytest.mark.asyncio
    async def test_messages_delivered_in_order(self, sender):
        channel = TransportChannel(sender, close_transport=sender.close)
        channel.start()

        channel.send_status(SessionStatus.CONNECTED)
        channel.send_transcript("agent", "Hi")
        channel.send_question("Q1", 1, 3)
        channel.send_finished("completed")
        await channel.close()

        types = [m["type"] for m in sender.decoded()]
        assert types == ["status", "transcript", "question", "finished"]
        assert sender.closed == 1

    @pytest.mark.asyncio
    async def test_finished_exactly_once_and_last(self, sender):
        channel = TransportChannel(sender)
        channel.start()

        assert channel.send_finished("completed") is True
        assert channel.send_finished("error") is False
        assert channel.finished_sent
        assert not channel.is_open
        assert channel.send_status(SessionStatus.CONNECTED) is False
        assert channel.send("anything") is False
        await channel.close()

        finished = sender.of_type("finished")
        assert len(finished) == 1
        assert finished[0]["reason"] == "completed"
        assert sender.decoded()[-1]["type"] == "finished"

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_quiet(self, sender):
        channel = TransportChannel(sender, close_transport=sender.close)
        channel.start()

        await channel.close()
        await channel.close()

        assert sender.closed == 1
        assert not channel.is_open

    @pytest.mark.asyncio
    async def test_close_swallows_transport_close_errors(self, sender):
        async def broken_close():
            raise RuntimeError("already closed")

        channel = TransportChannel(sender, close_transport=broken_close)
        channel.start()
        await channel.close()

    @pytest.mark.asyncio
    async def test_send_failure_posts_closed_event(self, make_sender):
        sender = make_sender(fail_after=1)
        channel = TransportChannel(sender, close_transport=sender.close)
        channel.start()

        channel.send_status(SessionStatus.CONNECTED)
        channel.send_transcript("agent", "Hello")

        event = await asyncio.wait_for(channel.events.get(), timeout=1.0)
        assert event.type == ChannelEventType.CLOSED
        assert event.reason == "client_disconnected"
        assert not channel.is_open

        # Disconnected transports are not closed again
        await channel.close()
        assert sender.closed == 0
        assert len(sender.messages) == 1

    @pytest.mark.asyncio
    async def test_unexpected_send_error(self):
        async def exploding_send(message: str) -> None:
            raise OSError("broken pipe")

        channel = TransportChannel(exploding_send)
        channel.start()
        channel.send_status(SessionStatus.CONNECTED)

        event = await asyncio.wait_for(channel.events.get(), timeout=1.0)
        assert event.type == ChannelEventType.CLOSED
        assert event.reason == "send_failed"

    @pytest.mark.asyncio
    async def test_notify_disconnected_once(self, sender):
        channel = TransportChannel(sender)
        channel.start()

        channel.notify_disconnected()
        channel.notify_disconnected()

        assert channel.events.qsize() == 1
        assert channel.send_finished("completed") is False
        await channel.close()


class TestClientControl:
    """Tests for routing inbound control messages."""

    @pytest.mark.asyncio
    async def test_start_returns_payload(self, sender):
        channel = TransportChannel(sender)
        payload = channel.handle_client_text(json.dumps({"type": "start", "role": "Backend"}))

        assert payload["role"] == "Backend"
        assert channel.events.empty()

    @pytest.mark.asyncio
    async def test_interrupt_and_stop_become_events(self, sender):
        channel = TransportChannel(sender)

        assert channel.handle_client_text(json.dumps({"type": "interrupt"})) is None
        assert channel.handle_client_text(json.dumps({"type": "stop"})) is None

        first = channel.events.get_nowait()
        second = channel.events.get_nowait()
        assert first.type == ChannelEventType.INTERRUPT
        assert second.type == ChannelEventType.STOP
        assert second.reason == "client_stop"

    @pytest.mark.asyncio
    async def test_garbage_is_ignored(self, sender):
        channel = TransportChannel(sender)
        assert channel.handle_client_text("{{{") is None
        assert channel.events.empty()
