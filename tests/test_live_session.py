"""
Tests for live session setup, streaming, cleanup and the fallback path.
"""
import asyncio
import base64
import json
from unittest.mock import AsyncMock

import numpy as np
import pytest
from websockets.exceptions import ConnectionClosedError

from genai_gateway.audio import OUTPUT_SAMPLE_RATE
from genai_gateway.config import DEFAULT_LIVE_URL, GatewayConfig
from genai_gateway.live_session import (
    FallbackConversation,
    InvalidTransition,
    LiveSession,
    LiveSessionError,
    PlaybackQueue,
    SessionState,
    StreamingSessionBroker,
)


class FakeWebSocket:
    """Scripted socket: `replies` feed recv(), `incoming` feed async iteration."""

    def __init__(self, replies=None, incoming=None, hang=False):
        self.replies = list(replies or [])
        self.incoming = list(incoming or [])
        self.hang = hang
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def recv(self):
        if self.hang or not self.replies:
            await asyncio.Event().wait()
        return self.replies.pop(0)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for item in self.incoming:
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self):
        self.closed = True


class FakeSink:
    def __init__(self):
        self.now = 0.0
        self.scheduled = []
        self.cancelled = []
        self.closed = False

    def current_time(self):
        return self.now

    def schedule(self, samples, start_time):
        handle = len(self.scheduled)
        self.scheduled.append((handle, len(samples), start_time))
        return handle

    def cancel(self, handle):
        self.cancelled.append(handle)

    def close(self):
        self.closed = True


class FakeSource:
    def __init__(self, frames=()):
        self.frames = list(frames)
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame

    async def close(self):
        self.closed = True


SETUP_COMPLETE = json.dumps({"setupComplete": {}})


def audio_message(frames=2400, rate=OUTPUT_SAMPLE_RATE):
    pcm = np.zeros(frames, dtype="<i2").tobytes()
    return json.dumps(
        {
            "serverContent": {
                "modelTurn": {
                    "parts": [
                        {
                            "inlineData": {
                                "mimeType": f"audio/pcm;rate={rate}",
                                "data": base64.b64encode(pcm).decode(),
                            }
                        }
                    ]
                }
            }
        }
    )


def make_broker(websocket=None, connect_error=None, relay=None, **kwargs):
    opened = []

    async def connector(url):
        opened.append(url)
        if connect_error is not None:
            raise connect_error
        return websocket

    async def key_provider():
        return {"apiKey": "live-secret", "keyName": "GOOGLE_GENAI_TOKEN_3"}

    broker = StreamingSessionBroker(
        key_provider, relay=relay, connector=connector, **kwargs
    )
    return broker, opened


class TestPlaybackQueue:
    def test_chunks_are_scheduled_back_to_back(self):
        sink = FakeSink()
        queue = PlaybackQueue(sink)

        first = queue.enqueue(np.zeros((2400, 1), dtype=np.float32))
        second = queue.enqueue(np.zeros((4800, 1), dtype=np.float32))

        assert first.start_time == 0.0
        assert second.start_time == pytest.approx(0.1)
        assert queue.next_start_time == pytest.approx(0.3)

    def test_late_chunk_starts_now(self):
        sink = FakeSink()
        queue = PlaybackQueue(sink)
        queue.enqueue(np.zeros(2400, dtype=np.float32))
        sink.now = 5.0

        chunk = queue.enqueue(np.zeros(2400, dtype=np.float32))

        assert chunk.start_time == 5.0

    def test_interrupt_flushes_unplayed_and_resets_play_head(self):
        sink = FakeSink()
        queue = PlaybackQueue(sink)
        for _ in range(3):
            queue.enqueue(np.zeros(2400, dtype=np.float32))
        sink.now = 0.15

        assert len(queue.pending()) == 2
        assert queue.interrupt() == 2
        assert sink.cancelled == [1, 2]
        assert queue.next_start_time == 0.0
        assert queue.pending() == []

    def test_chunk_rate_overrides_queue_rate(self):
        sink = FakeSink()
        queue = PlaybackQueue(sink)

        first = queue.enqueue(np.zeros(2400, dtype=np.float32), sample_rate=16000)
        second = queue.enqueue(np.zeros(2400, dtype=np.float32))

        assert first.duration == pytest.approx(0.15)
        assert second.start_time == pytest.approx(0.15)
        assert queue.next_start_time == pytest.approx(0.25)


class TestBrokerConnect:
    @pytest.mark.asyncio
    async def test_successful_setup_activates_session(self):
        websocket = FakeWebSocket(replies=[SETUP_COMPLETE])
        broker, opened = make_broker(
            websocket, model="gemini-live-x", voice="Zephyr", system_instruction="Be a tutor."
        )

        session = await broker.open(FakeSink())

        assert isinstance(session, LiveSession)
        assert session.state is SessionState.ACTIVE
        assert session.key_name == "GOOGLE_GENAI_TOKEN_3"
        assert opened[0].endswith("?key=live-secret")
        setup = websocket.sent[0]["setup"]
        assert setup["model"] == "models/gemini-live-x"
        assert setup["generationConfig"]["responseModalities"] == ["AUDIO"]
        voice = setup["generationConfig"]["speechConfig"]["voiceConfig"]["prebuiltVoiceConfig"]
        assert voice["voiceName"] == "Zephyr"
        assert setup["systemInstruction"] == {"parts": [{"text": "Be a tutor."}]}

    def test_defaults_without_config(self):
        broker, _ = make_broker()

        assert broker.live_url == DEFAULT_LIVE_URL
        assert broker.connect_timeout == 12.0

    @pytest.mark.asyncio
    async def test_live_endpoint_and_timeout_come_from_config(self):
        config = GatewayConfig.from_env(
            {"GENAI_LIVE_URL": "wss://mirror.example/ws", "GENAI_LIVE_CONNECT_TIMEOUT": "3"}
        )
        websocket = FakeWebSocket(replies=[SETUP_COMPLETE])
        broker, opened = make_broker(websocket, config=config)

        session = await broker.open(FakeSink())

        assert broker.connect_timeout == 3.0
        assert opened == ["wss://mirror.example/ws?key=live-secret"]
        assert session.state is SessionState.ACTIVE

    def test_explicit_arguments_win_over_config(self):
        config = GatewayConfig(live_url="wss://mirror.example/ws", live_connect_timeout=3.0)

        broker, _ = make_broker(
            config=config, live_url="wss://other.example/ws", connect_timeout=5.0
        )

        assert broker.live_url == "wss://other.example/ws"
        assert broker.connect_timeout == 5.0

    def test_from_relay_passes_config(self):
        relay = AsyncMock()
        config = GatewayConfig(live_url="wss://mirror.example/ws")

        broker = StreamingSessionBroker.from_relay(relay, config=config)

        assert broker.live_url == "wss://mirror.example/ws"
        assert broker.key_provider is relay.get_live_key

    @pytest.mark.asyncio
    async def test_plain_string_key_provider(self):
        websocket = FakeWebSocket(replies=[SETUP_COMPLETE])

        async def key_provider():
            return "plain-key"

        async def connector(url):
            assert "key=plain-key" in url
            return websocket

        broker = StreamingSessionBroker(key_provider, connector=connector)
        session = await broker.open(FakeSink())

        assert session.state is SessionState.ACTIVE
        assert session.key_name is None

    @pytest.mark.asyncio
    async def test_connect_timeout_degrades_and_releases(self):
        websocket = FakeWebSocket(hang=True)
        relay = AsyncMock()
        reasons = []
        broker, _ = make_broker(
            websocket, relay=relay, connect_timeout=0.05, on_degraded=reasons.append
        )
        sink, source = FakeSink(), FakeSource()

        result = await broker.open(sink, source=source)

        assert isinstance(result, FallbackConversation)
        assert result.state is SessionState.DEGRADED_FALLBACK
        assert "did not connect" in result.reason
        assert reasons == [result.reason]
        assert websocket.closed
        assert sink.closed
        assert source.closed

    @pytest.mark.asyncio
    async def test_connection_error_degrades(self):
        reasons = []
        broker, _ = make_broker(
            connect_error=OSError("blocked"), relay=AsyncMock(), on_degraded=reasons.append
        )
        sink = FakeSink()

        result = await broker.open(sink)

        assert isinstance(result, FallbackConversation)
        assert "blocked" in reasons[0]
        assert sink.closed

    @pytest.mark.asyncio
    async def test_unexpected_setup_reply_degrades(self):
        websocket = FakeWebSocket(replies=[json.dumps({"error": "bad model"})])
        broker, _ = make_broker(websocket, relay=AsyncMock())

        result = await broker.open(FakeSink())

        assert isinstance(result, FallbackConversation)
        assert websocket.closed

    @pytest.mark.asyncio
    async def test_degradation_without_relay_raises(self):
        reasons = []
        broker, _ = make_broker(connect_error=OSError("blocked"), on_degraded=reasons.append)

        with pytest.raises(LiveSessionError):
            await broker.open(FakeSink())

        assert len(reasons) == 1

    @pytest.mark.asyncio
    async def test_async_degradation_callback(self):
        callback = AsyncMock()
        broker, _ = make_broker(
            connect_error=OSError("blocked"), relay=AsyncMock(), on_degraded=callback
        )

        await broker.open(FakeSink())

        callback.assert_awaited_once()


class TestActiveSession:
    async def _open(self, websocket, **kwargs):
        broker, _ = make_broker(websocket)
        return await broker.open(**kwargs)

    @pytest.mark.asyncio
    async def test_send_audio_frames(self):
        websocket = FakeWebSocket(replies=[SETUP_COMPLETE])
        session = await self._open(websocket, sink=FakeSink())

        await session.send_audio(b"\x01\x00\x02\x00")
        await session.send_audio(np.array([0.5, -0.5], dtype=np.float32))

        first, second = websocket.sent[1]["realtimeInput"], websocket.sent[2]["realtimeInput"]
        assert first["audio"]["mimeType"] == "audio/pcm;rate=16000"
        assert base64.b64decode(first["audio"]["data"]) == b"\x01\x00\x02\x00"
        decoded = np.frombuffer(base64.b64decode(second["audio"]["data"]), dtype="<i2")
        assert decoded.tolist() == [16384, -16384]

    @pytest.mark.asyncio
    async def test_messages_drive_transcript_and_playback(self):
        sink = FakeSink()
        transcripts = []
        websocket = FakeWebSocket(replies=[SETUP_COMPLETE])
        session = await self._open(websocket, sink=sink, on_transcription=transcripts.append)

        await session.handle_message(
            json.dumps({"serverContent": {"outputTranscription": {"text": "Hello "}}})
        )
        await session.handle_message(
            json.dumps({"serverContent": {"outputTranscription": {"text": "there"}}})
        )
        await session.handle_message(audio_message())
        await session.handle_message(audio_message())

        assert transcripts == ["Hello ", "there"]
        assert session.transcript == "Hello there"
        assert [start for _, _, start in sink.scheduled] == [0.0, pytest.approx(0.1)]

        await session.handle_message(json.dumps({"serverContent": {"interrupted": True}}))

        assert sink.cancelled == [0, 1]
        assert session.playback.next_start_time == 0.0

    @pytest.mark.asyncio
    async def test_play_head_follows_upstream_audio_rate(self):
        sink = FakeSink()
        websocket = FakeWebSocket(replies=[SETUP_COMPLETE])
        session = await self._open(websocket, sink=sink)

        await session.handle_message(audio_message(frames=2400, rate=16000))
        await session.handle_message(audio_message(frames=2400))

        assert [start for _, _, start in sink.scheduled] == [0.0, pytest.approx(0.15)]
        assert session.playback.next_start_time == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_run_until_upstream_closes(self):
        sink, source = FakeSink(), FakeSource()
        websocket = FakeWebSocket(replies=[SETUP_COMPLETE], incoming=[audio_message()])
        session = await self._open(websocket, sink=sink, source=source)

        await session.run()

        assert session.state is SessionState.CLOSED
        assert session.close_reason == "closed by upstream"
        assert websocket.closed and sink.closed and source.closed
        assert len(sink.scheduled) == 1

    @pytest.mark.asyncio
    async def test_transport_error_closes_session(self):
        sink = FakeSink()
        websocket = FakeWebSocket(
            replies=[SETUP_COMPLETE],
            incoming=[audio_message(), ConnectionClosedError(None, None)],
        )
        session = await self._open(websocket, sink=sink)

        await session.run()

        assert session.state is SessionState.CLOSED
        assert session.close_reason.startswith("connection lost")
        assert websocket.closed and sink.closed
        assert sink.cancelled == [0]

    @pytest.mark.asyncio
    async def test_handler_error_still_releases_resources(self):
        sink, source = FakeSink(), FakeSource()
        websocket = FakeWebSocket(replies=[SETUP_COMPLETE], incoming=["not json"])
        session = await self._open(websocket, sink=sink, source=source)

        with pytest.raises(json.JSONDecodeError):
            await session.run()

        assert session.state is SessionState.CLOSED
        assert websocket.closed and sink.closed and source.closed

    @pytest.mark.asyncio
    async def test_client_close_during_run(self):
        websocket = FakeWebSocket(
            replies=[SETUP_COMPLETE],
            incoming=[
                json.dumps({"serverContent": {"outputTranscription": {"text": "bye"}}}),
                audio_message(),
            ],
        )
        session = None

        async def stop(_text):
            await session.close("user hung up")

        session = await self._open(websocket, sink=FakeSink(), on_transcription=stop)
        await session.run()

        assert session.state is SessionState.CLOSED
        assert session.close_reason == "user hung up"
        assert websocket.closed

    @pytest.mark.asyncio
    async def test_illegal_transitions(self):
        session = await self._open(FakeWebSocket(replies=[SETUP_COMPLETE]), sink=FakeSink())

        with pytest.raises(InvalidTransition):
            session.activate()

        await session.close()
        await session.close()

        with pytest.raises(LiveSessionError):
            await session.send_audio(b"\x00\x00")
        with pytest.raises(LiveSessionError):
            await session.run()


class TestFallbackConversation:
    @pytest.mark.asyncio
    async def test_turn_sends_wav_and_speaks_reply(self):
        relay = AsyncMock()
        relay.respond_to_audio.return_value = "Nice try!"
        relay.generate_speech.return_value = b"\x00\x01"
        conversation = FallbackConversation(
            relay=relay, reason="timeout", model="gemini-x", system_instruction="Tutor"
        )

        turn = await conversation.send_turn(b"\x00\x00" * 160)

        parts = relay.respond_to_audio.await_args.args[0]
        inline = parts[0]["inlineData"]
        assert inline["mimeType"] == "audio/wav"
        assert base64.b64decode(inline["data"])[:4] == b"RIFF"
        assert relay.respond_to_audio.await_args.kwargs == {
            "model": "gemini-x",
            "system_instruction": "Tutor",
        }
        relay.generate_speech.assert_awaited_once_with("Nice try!", voice="Kore")
        assert (turn.text, turn.audio) == ("Nice try!", b"\x00\x01")
        assert conversation.history == [turn]

    @pytest.mark.asyncio
    async def test_silent_mode_skips_speech(self):
        relay = AsyncMock()
        relay.generate_text.return_value = "Answer"
        conversation = FallbackConversation(relay=relay, reason="blocked", speak=False)

        turn = await conversation.send_text("Question")

        assert turn.text == "Answer"
        assert turn.audio is None
        relay.generate_speech.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_reply_is_not_spoken(self):
        relay = AsyncMock()
        relay.respond_to_audio.return_value = ""
        conversation = FallbackConversation(relay=relay, reason="blocked")

        turn = await conversation.send_turn(b"\x00\x00")

        assert turn.audio is None
        relay.generate_speech.assert_not_awaited()
