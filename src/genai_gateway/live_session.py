"""
Real-time voice sessions.

The stateless relay cannot proxy a persistent bidirectional socket, so a
live session leases one credential through the relay and connects to the
upstream Live endpoint directly. When that connection cannot be made in
time (network blocks, expired key, no socket support) the broker reports
the degradation and hands back a FallbackConversation that does discrete
record-then-respond turns through the relay instead.

Session states:

    CONNECTING -> ACTIVE -> CLOSED
    CONNECTING -> DEGRADED_FALLBACK
    CONNECTING -> CLOSED            (closed before setup finished)
"""

import asyncio
import inspect
import json
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import urlencode

import numpy as np
import websockets
from websockets.exceptions import ConnectionClosed

from .audio import (
    INPUT_SAMPLE_RATE,
    OUTPUT_SAMPLE_RATE,
    decode_base64,
    encode_base64,
    float32_to_pcm16,
    parse_sample_rate,
    pcm16_to_float32,
    pcm_mime_type,
    pcm_to_wav,
)
from .config import (
    DEFAULT_LIVE_MODEL,
    DEFAULT_LIVE_URL,
    DEFAULT_TEXT_MODEL,
    GatewayConfig,
)

lib_logger = logging.getLogger("genai_gateway")

KeyProvider = Callable[[], Awaitable[Union[str, Dict[str, str]]]]
Connector = Callable[[str], Awaitable[Any]]


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"
    DEGRADED_FALLBACK = "degraded_fallback"


_TRANSITIONS = {
    SessionState.CONNECTING: {
        SessionState.ACTIVE,
        SessionState.CLOSED,
        SessionState.DEGRADED_FALLBACK,
    },
    SessionState.ACTIVE: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
    SessionState.DEGRADED_FALLBACK: set(),
}


class LiveSessionError(Exception):
    """A live session could not be established or used."""


class InvalidTransition(LiveSessionError):
    pass


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class ScheduledChunk:
    handle: Any
    start_time: float
    duration: float

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


class PlaybackQueue:
    """
    Gapless scheduling of model audio on an output sink.

    The sink is any object with `current_time()`, `schedule(samples,
    start_time) -> handle`, `cancel(handle)` and `close()`. Chunks are laid
    end to end from a play-head; an interruption cancels everything not yet
    finished and resets the play-head so stale audio never overlaps new
    audio.
    """

    def __init__(self, sink, sample_rate: int = OUTPUT_SAMPLE_RATE):
        self.sink = sink
        self.sample_rate = sample_rate
        self.next_start_time = 0.0
        self._scheduled: List[ScheduledChunk] = []

    def _prune(self, now: float) -> None:
        self._scheduled = [c for c in self._scheduled if c.end_time > now]

    def enqueue(
        self, samples: np.ndarray, sample_rate: Optional[int] = None
    ) -> ScheduledChunk:
        """Schedule one chunk; `sample_rate` overrides the queue rate for its duration."""
        now = self.sink.current_time()
        self._prune(now)
        start = max(self.next_start_time, now)
        duration = len(samples) / (sample_rate or self.sample_rate)
        handle = self.sink.schedule(samples, start)
        chunk = ScheduledChunk(handle=handle, start_time=start, duration=duration)
        self._scheduled.append(chunk)
        self.next_start_time = start + duration
        return chunk

    def interrupt(self) -> int:
        """Cancel all unfinished chunks. Returns how many were dropped."""
        dropped = len(self._scheduled)
        for chunk in self._scheduled:
            self.sink.cancel(chunk.handle)
        self._scheduled.clear()
        self.next_start_time = 0.0
        return dropped

    def pending(self) -> List[ScheduledChunk]:
        self._prune(self.sink.current_time())
        return list(self._scheduled)


class LiveSession:
    """
    One connected Live session.

    Owns the socket, the optional microphone source and the output sink;
    all three are released by close(), which every exit path reaches.
    """

    def __init__(
        self,
        sink,
        source=None,
        on_transcription: Optional[Callable[[str], Any]] = None,
        input_sample_rate: int = INPUT_SAMPLE_RATE,
        output_sample_rate: int = OUTPUT_SAMPLE_RATE,
    ):
        self.state = SessionState.CONNECTING
        self.websocket = None
        self.key_name: Optional[str] = None
        self.sink = sink
        self.source = source
        self.on_transcription = on_transcription
        self.input_sample_rate = input_sample_rate
        self.output_sample_rate = output_sample_rate
        self.playback = PlaybackQueue(sink, output_sample_rate)
        self.transcript = ""
        self.close_reason: Optional[str] = None
        self._resources = AsyncExitStack()
        self._resources.push_async_callback(self._release_devices)

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot move from {self.state.value} to {new_state.value}")
        lib_logger.debug(f"Live session {self.state.value} -> {new_state.value}")
        self.state = new_state

    def attach(self, websocket, key_name: Optional[str] = None) -> None:
        self.websocket = websocket
        self.key_name = key_name
        self._resources.push_async_callback(websocket.close)

    def activate(self) -> None:
        self._transition(SessionState.ACTIVE)

    async def _release_devices(self) -> None:
        self.playback.interrupt()
        if self.source is not None and hasattr(self.source, "close"):
            await _maybe_await(self.source.close())
        if hasattr(self.sink, "close"):
            await _maybe_await(self.sink.close())

    async def release(self) -> None:
        """Tear down the socket and audio devices without a state change."""
        await self._resources.aclose()

    async def close(self, reason: str = "closed by client") -> None:
        if self.state in (SessionState.CLOSED, SessionState.DEGRADED_FALLBACK):
            return
        self._transition(SessionState.CLOSED)
        self.close_reason = reason
        lib_logger.info(f"Live session closed: {reason}")
        await self.release()

    async def send_audio(self, frame: Union[bytes, np.ndarray]) -> None:
        """Send one microphone frame (PCM16 bytes or float samples)."""
        if self.state is not SessionState.ACTIVE:
            raise LiveSessionError(f"Session is {self.state.value}, not active")
        if isinstance(frame, np.ndarray):
            frame = float32_to_pcm16(frame)
        message = {
            "realtimeInput": {
                "audio": {
                    "data": encode_base64(frame),
                    "mimeType": pcm_mime_type(self.input_sample_rate),
                }
            }
        }
        await self.websocket.send(json.dumps(message))

    async def send_text(self, text: str) -> None:
        if self.state is not SessionState.ACTIVE:
            raise LiveSessionError(f"Session is {self.state.value}, not active")
        await self.websocket.send(json.dumps({"realtimeInput": {"text": text}}))

    async def handle_message(self, raw: Union[str, bytes]) -> None:
        message = json.loads(raw)
        if "goAway" in message:
            lib_logger.warning(f"Upstream will end the live session soon: {message['goAway']}")

        content = message.get("serverContent")
        if not content:
            return

        if content.get("interrupted"):
            dropped = self.playback.interrupt()
            lib_logger.debug(f"Turn interrupted; dropped {dropped} queued audio chunk(s)")

        transcription = (content.get("outputTranscription") or {}).get("text")
        if transcription:
            self.transcript += transcription
            if self.on_transcription is not None:
                await _maybe_await(self.on_transcription(transcription))

        for part in (content.get("modelTurn") or {}).get("parts") or []:
            inline = part.get("inlineData")
            if not inline or not inline.get("data"):
                continue
            rate = parse_sample_rate(inline.get("mimeType"), self.output_sample_rate)
            samples = pcm16_to_float32(decode_base64(inline["data"]))
            if rate != self.playback.sample_rate:
                lib_logger.debug(
                    f"Upstream audio at {rate} Hz, playback configured for {self.playback.sample_rate} Hz"
                )
            self.playback.enqueue(samples, rate)

    async def _pump_input(self) -> None:
        async for frame in self.source:
            if self.state is not SessionState.ACTIVE:
                break
            await self.send_audio(frame)

    async def run(self) -> None:
        """
        Stream microphone input up and model output down until either side
        closes. Always ends CLOSED with every resource released.
        """
        if self.state is not SessionState.ACTIVE:
            raise LiveSessionError(f"Session is {self.state.value}, not active")

        input_task = None
        if self.source is not None:
            input_task = asyncio.create_task(self._pump_input())

        reason = "closed by upstream"
        try:
            async for raw in self.websocket:
                await self.handle_message(raw)
                if self.state is not SessionState.ACTIVE:
                    reason = self.close_reason or "closed by client"
                    break
        except ConnectionClosed as e:
            reason = f"connection lost: {e}"
            lib_logger.warning(f"Live session transport error: {e}")
        except Exception as e:
            reason = f"error: {e}"
            lib_logger.error(f"Live session failed: {e}")
            raise
        finally:
            if input_task is not None:
                input_task.cancel()
                try:
                    await input_task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    lib_logger.warning(f"Microphone input stopped with error: {e}")
            await self.close(reason)


@dataclass
class FallbackTurn:
    text: str
    audio: Optional[bytes] = None


@dataclass
class FallbackConversation:
    """
    Discrete request/response voice turns through the relay, used when a
    live session cannot be established.
    """

    relay: Any
    reason: str
    model: str = DEFAULT_TEXT_MODEL
    system_instruction: Optional[str] = None
    voice: str = "Kore"
    speak: bool = True
    history: List[FallbackTurn] = field(default_factory=list)
    state: SessionState = SessionState.DEGRADED_FALLBACK

    async def _finish(self, text: str) -> FallbackTurn:
        audio = None
        if self.speak and text:
            audio = await self.relay.generate_speech(text, voice=self.voice)
        turn = FallbackTurn(text=text, audio=audio)
        self.history.append(turn)
        return turn

    async def send_turn(self, pcm: bytes, sample_rate: int = INPUT_SAMPLE_RATE) -> FallbackTurn:
        """Send one recorded utterance; returns the reply text and speech."""
        parts = [
            {
                "inlineData": {
                    "mimeType": "audio/wav",
                    "data": encode_base64(pcm_to_wav(pcm, sample_rate)),
                }
            },
            {"text": "Listen to this recording and reply to the speaker."},
        ]
        text = await self.relay.respond_to_audio(
            parts, model=self.model, system_instruction=self.system_instruction
        )
        return await self._finish(text)

    async def send_text(self, text: str) -> FallbackTurn:
        reply = await self.relay.generate_text(
            text, model=self.model, system_instruction=self.system_instruction
        )
        return await self._finish(reply)


async def _default_connector(url: str):
    return await websockets.connect(url, max_size=None)


class StreamingSessionBroker:
    """
    Establishes live sessions, degrading to relay round-trips on failure.

    Args:
        key_provider: Async callable returning an API key, or
            {"apiKey", "keyName"} as returned by RelayClient.get_live_key.
        relay: RelayClient used for the fallback path. Without one, a failed
            connection raises LiveSessionError after the degradation signal.
        live_url: Upstream Live endpoint; override to route through a mirror.
        connect_timeout: Budget for key lease + socket open + setup.
        on_degraded: Called with the reason when falling back.
        connector: Async callable opening a socket for a URL.
        config: GatewayConfig supplying `live_url` and `live_connect_timeout`
            when those are not passed explicitly.
    """

    def __init__(
        self,
        key_provider: KeyProvider,
        relay=None,
        live_url: Optional[str] = None,
        model: str = DEFAULT_LIVE_MODEL,
        voice: str = "Zephyr",
        system_instruction: Optional[str] = None,
        connect_timeout: Optional[float] = None,
        on_degraded: Optional[Callable[[str], Any]] = None,
        connector: Optional[Connector] = None,
        fallback_model: str = DEFAULT_TEXT_MODEL,
        config: Optional[GatewayConfig] = None,
    ):
        if live_url is None:
            live_url = config.live_url if config is not None else DEFAULT_LIVE_URL
        if connect_timeout is None:
            connect_timeout = config.live_connect_timeout if config is not None else 12.0

        self.key_provider = key_provider
        self.relay = relay
        self.live_url = live_url
        self.model = model
        self.voice = voice
        self.system_instruction = system_instruction
        self.connect_timeout = connect_timeout
        self.on_degraded = on_degraded
        self.connector = connector or _default_connector
        self.fallback_model = fallback_model

    @classmethod
    def from_relay(cls, relay, **kwargs) -> "StreamingSessionBroker":
        return cls(key_provider=relay.get_live_key, relay=relay, **kwargs)

    def setup_message(self) -> Dict[str, Any]:
        setup: Dict[str, Any] = {
            "model": self.model if self.model.startswith("models/") else f"models/{self.model}",
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self.voice}}
                },
            },
            "outputAudioTranscription": {},
        }
        if self.system_instruction:
            setup["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}
        return {"setup": setup}

    def session_url(self, api_key: str) -> str:
        separator = "&" if "?" in self.live_url else "?"
        return f"{self.live_url}{separator}{urlencode({'key': api_key})}"

    async def _connect(self, session: LiveSession) -> None:
        leased = await self.key_provider()
        if isinstance(leased, dict):
            api_key, key_name = leased.get("apiKey"), leased.get("keyName")
        else:
            api_key, key_name = leased, None
        if not api_key:
            raise LiveSessionError("Relay returned no key for the live session")

        websocket = await self.connector(self.session_url(api_key))
        session.attach(websocket, key_name)
        await websocket.send(json.dumps(self.setup_message()))

        reply = json.loads(await websocket.recv())
        if "setupComplete" not in reply:
            raise LiveSessionError(f"Unexpected setup reply: {str(reply)[:200]}")

    async def open(
        self,
        sink,
        source=None,
        on_transcription: Optional[Callable[[str], Any]] = None,
    ) -> Union[LiveSession, FallbackConversation]:
        """
        Connect a live session. Returns an ACTIVE LiveSession, or a
        FallbackConversation when the connection could not be set up.
        """
        session = LiveSession(sink, source=source, on_transcription=on_transcription)
        try:
            await asyncio.wait_for(self._connect(session), timeout=self.connect_timeout)
        except asyncio.CancelledError:
            await session.release()
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                reason = f"live session did not connect within {self.connect_timeout:.0f}s"
            else:
                reason = f"live session failed to connect: {e}"
            return await self._degrade(session, reason, e)

        session.activate()
        lib_logger.info(f"Live session active (credential {session.key_name or 'unnamed'})")
        return session

    async def _degrade(
        self, session: LiveSession, reason: str, error: Exception
    ) -> FallbackConversation:
        session._transition(SessionState.DEGRADED_FALLBACK)
        session.close_reason = reason
        await session.release()
        lib_logger.warning(f"Falling back to relay round-trips: {reason}")

        if self.on_degraded is not None:
            await _maybe_await(self.on_degraded(reason))

        if self.relay is None:
            raise LiveSessionError(reason) from error

        return FallbackConversation(
            relay=self.relay,
            reason=reason,
            model=self.fallback_model,
            system_instruction=self.system_instruction,
        )
