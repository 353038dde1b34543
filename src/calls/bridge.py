"""Bidirectional relay between a Twilio Media Stream and the voice-AI agent.

Each call gets one ``MediaStreamBridge``. It resolves the call session, opens
the voice-AI leg and then runs two pumps (Twilio -> voice AI and voice AI ->
Twilio) plus a termination waiter. Whichever finishes first tears the other
two down and both sockets are closed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from fastapi import WebSocketDisconnect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from calls.errors import BridgeFailureError, ConfigurationError, ProviderError, SessionNotFoundError
from calls.metrics import RelayMetrics
from calls.registry import SessionRegistry
from calls.schemas import CallSession, TelephonyCredentials, TranscriptEntry, TranscriptRole
from integrations.twilio_streaming import (
    clear_message,
    inbound_media_payload,
    media_message,
    parse_twilio_ws_message,
    stream_start_details,
)
from integrations.voice_ai import (
    DEFAULT_CONVAI_URL,
    BridgeDescriptor,
    audio_chunk_message,
    build_bridge_descriptor,
    initiation_message,
    parse_voice_ai_message,
    pong_message,
)

LOGGER = logging.getLogger(__name__)

POLICY_VIOLATION = 1008

_TELEPHONY_GONE = (WebSocketDisconnect, RuntimeError, OSError)


class TelephonyLeg(Protocol):
    async def receive_text(self) -> str: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class VoiceAiLeg(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


VoiceAiConnector = Callable[[BridgeDescriptor], Awaitable[VoiceAiLeg]]


class BridgeState(str, Enum):
    PENDING = "pending"
    BRIDGING = "bridging"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class BridgeOptions:
    voice_ai_endpoint: str = DEFAULT_CONVAI_URL
    idle_timeout_seconds: float = 300.0
    max_reconnects: int = 3
    reconnect_backoff_seconds: float = 1.0
    buffer_limit: int = 500
    fallback_message: str = "We're sorry, our assistant is not available right now. Goodbye."
    say_voice: str = "Polly.Joanna"
    say_language: str = "en-US"


class ActiveBridges:
    """Index of live bridges by session id."""

    def __init__(self) -> None:
        self._bridges: dict[str, MediaStreamBridge] = {}

    def __len__(self) -> int:
        return len(self._bridges)

    def get(self, session_id: str) -> MediaStreamBridge | None:
        return self._bridges.get(session_id)

    def register(self, session_id: str, bridge: MediaStreamBridge) -> None:
        previous = self._bridges.get(session_id)
        if previous is not None and previous is not bridge:
            LOGGER.warning("Replacing live bridge for session %s", session_id)
            previous.request_close()
        self._bridges[session_id] = bridge

    def unregister(self, session_id: str, bridge: MediaStreamBridge) -> None:
        if self._bridges.get(session_id) is bridge:
            del self._bridges[session_id]

    def terminate(self, session_id: str) -> bool:
        bridge = self._bridges.get(session_id)
        if bridge is None:
            return False
        bridge.request_close()
        return True


class MediaStreamBridge:
    def __init__(
        self,
        telephony: TelephonyLeg,
        *,
        registry: SessionRegistry,
        connector: VoiceAiConnector,
        telephony_factory: Callable[[TelephonyCredentials], Any],
        options: BridgeOptions | None = None,
        session_id: str | None = None,
        bridges: ActiveBridges | None = None,
        metrics: RelayMetrics | None = None,
    ) -> None:
        self._telephony = telephony
        self._registry = registry
        self._connector = connector
        self._telephony_factory = telephony_factory
        self._options = options or BridgeOptions()
        self._session_id = session_id
        self._bridges = bridges
        self._metrics = metrics or RelayMetrics()

        self.state = BridgeState.PENDING
        self._stop = asyncio.Event()
        self._stream_sid: str | None = None
        self._stream_call_sid: str | None = None
        self._voice: VoiceAiLeg | None = None
        self._voice_ready = False
        self._pending_audio: deque[str] = deque(maxlen=max(1, self._options.buffer_limit))

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def stream_sid(self) -> str | None:
        return self._stream_sid

    def request_close(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        try:
            session = await self._resolve_session()
            if session is None:
                await self._close_telephony(POLICY_VIOLATION, "Unknown call session")
                return
            self._session_id = session.session_id
            if self._bridges is not None:
                self._bridges.register(session.session_id, self)
            try:
                # A termination that landed before registration found no bridge to close.
                if await self._lookup(session.session_id) is None:
                    await self._close_telephony(POLICY_VIOLATION, "Call already ended")
                    return
                await self._bridge(session)
            finally:
                if self._bridges is not None:
                    self._bridges.unregister(session.session_id, self)
        finally:
            self.state = BridgeState.CLOSED
            LOGGER.info("Bridge closed for session %s", self._session_id)

    # Session resolution

    async def _resolve_session(self) -> CallSession | None:
        if self._session_id:
            return await self._lookup(self._session_id)

        # Without a query parameter the session id arrives as a custom
        # parameter of the Twilio ``start`` event.
        while True:
            try:
                text = await asyncio.wait_for(
                    self._telephony.receive_text(),
                    timeout=self._options.idle_timeout_seconds,
                )
            except asyncio.TimeoutError:
                LOGGER.warning("No start event received before idle timeout")
                return None
            except _TELEPHONY_GONE:
                return None
            try:
                message = parse_twilio_ws_message(text)
            except ValueError:
                continue
            event = message.get("event")
            if event == "start":
                self._on_start(message)
                _, params = stream_start_details(message)
                session_id = params.get("sessionId")
                if not session_id:
                    LOGGER.warning("Media stream started without a sessionId")
                    return None
                return await self._lookup(session_id)
            if event == "stop":
                return None

    async def _lookup(self, session_id: str) -> CallSession | None:
        try:
            session = await self._registry.get(session_id)
        except SessionNotFoundError:
            LOGGER.warning("Rejecting media stream for unknown session %s", session_id)
            return None
        if session.status.is_terminal:
            LOGGER.warning("Rejecting media stream for %s session %s", session.status.value, session_id)
            return None
        return session

    def _on_start(self, message: dict[str, Any]) -> None:
        stream_sid, _ = stream_start_details(message)
        if stream_sid:
            self._stream_sid = stream_sid
        call_sid = (message.get("start") or {}).get("callSid")
        if call_sid:
            self._stream_call_sid = str(call_sid)
        LOGGER.info("Twilio stream %s started for session %s", self._stream_sid, self._session_id)

    # Voice AI leg

    async def _open_voice_leg(self, descriptor: BridgeDescriptor, session: CallSession) -> VoiceAiLeg:
        voice = await self._connector(descriptor)
        try:
            await voice.send(initiation_message(session))
        except ConnectionClosed as exc:
            with contextlib.suppress(Exception):
                await voice.close()
            raise BridgeFailureError("Voice AI closed before the conversation started") from exc
        return voice

    async def _reconnect(
        self,
        descriptor: BridgeDescriptor,
        session: CallSession,
        watch: set[asyncio.Task],
    ) -> VoiceAiLeg | None:
        for attempt in range(1, self._options.max_reconnects + 1):
            self._metrics.record_reconnect()
            delay = self._options.reconnect_backoff_seconds * attempt
            LOGGER.warning(
                "Voice AI dropped for session %s, reconnecting (%d/%d) in %.1fs",
                session.session_id,
                attempt,
                self._options.max_reconnects,
                delay,
            )
            done, _ = await asyncio.wait(watch, timeout=delay, return_when=asyncio.FIRST_COMPLETED)
            if done:
                return None
            try:
                return await self._open_voice_leg(descriptor, session)
            except BridgeFailureError as exc:
                LOGGER.warning("Reconnect attempt %d failed: %s", attempt, exc.detail)
        return None

    # Main loop

    async def _bridge(self, session: CallSession) -> None:
        try:
            descriptor = build_bridge_descriptor(
                session,
                session.credentials.voice_ai,
                endpoint=self._options.voice_ai_endpoint,
            )
            voice = await self._open_voice_leg(descriptor, session)
        except (BridgeFailureError, ConfigurationError) as exc:
            LOGGER.error("Voice AI leg unavailable for session %s: %s", session.session_id, exc.detail)
            self._metrics.record_error()
            self.state = BridgeState.CLOSING
            await self._fallback(session)
            await self._close_telephony(1000, "Voice AI unavailable")
            return

        self._voice = voice
        self.state = BridgeState.BRIDGING
        LOGGER.info("Bridging session %s to voice AI agent %s", session.session_id, descriptor.agent_id)

        telephony_task = asyncio.create_task(self._pump_telephony(), name="telephony_pump")
        stop_task = asyncio.create_task(self._stop.wait(), name="termination_waiter")
        voice_task: asyncio.Task | None = None
        needs_fallback = False
        try:
            while True:
                voice_task = asyncio.create_task(self._pump_voice(voice), name="voice_ai_pump")
                done, _ = await asyncio.wait(
                    {telephony_task, voice_task, stop_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if voice_task not in done or telephony_task in done or stop_task in done:
                    break
                try:
                    dropped = voice_task.result()
                except Exception as exc:
                    LOGGER.error("Voice AI pump failed for session %s", session.session_id, exc_info=exc)
                    self._metrics.record_error()
                    needs_fallback = True
                    break
                if not dropped:
                    break

                self._voice_ready = False
                self._voice = None
                with contextlib.suppress(Exception):
                    await voice.close()
                replacement = await self._reconnect(descriptor, session, {telephony_task, stop_task})
                if replacement is None:
                    if not (telephony_task.done() or stop_task.done()):
                        LOGGER.error("Voice AI could not be re-established for session %s", session.session_id)
                        self._metrics.record_error()
                        needs_fallback = True
                    break
                voice = replacement
                self._voice = voice
        finally:
            self.state = BridgeState.CLOSING
            pending = [t for t in (telephony_task, voice_task, stop_task) if t is not None and not t.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in (telephony_task, voice_task):
                if task is not None and not task.cancelled() and task.exception() is not None:
                    LOGGER.debug("Pump %s ended with %r", task.get_name(), task.exception())

        if needs_fallback:
            await self._fallback(session)
        self._voice = None
        with contextlib.suppress(Exception):
            await voice.close()
        await self._close_telephony(1000, "Call ended")

    async def _pump_telephony(self) -> None:
        while True:
            try:
                text = await asyncio.wait_for(
                    self._telephony.receive_text(),
                    timeout=self._options.idle_timeout_seconds,
                )
            except asyncio.TimeoutError:
                LOGGER.info("Telephony leg idle for session %s", self._session_id)
                return
            except _TELEPHONY_GONE:
                LOGGER.info("Telephony leg disconnected for session %s", self._session_id)
                return
            try:
                message = parse_twilio_ws_message(text)
            except ValueError:
                LOGGER.debug("Ignoring malformed Twilio message")
                continue

            event = message.get("event")
            if event == "start":
                self._on_start(message)
            elif event == "media":
                payload = inbound_media_payload(message)
                if payload:
                    await self._forward_audio(payload)
            elif event == "stop":
                LOGGER.info("Twilio stream stopped for session %s", self._session_id)
                return

    async def _forward_audio(self, payload: str) -> None:
        voice = self._voice
        if voice is not None and self._voice_ready:
            try:
                await voice.send(audio_chunk_message(payload))
                return
            except ConnectionClosed:
                self._voice_ready = False
        self._pending_audio.append(payload)

    async def _flush_pending(self, voice: VoiceAiLeg) -> None:
        while self._pending_audio:
            payload = self._pending_audio.popleft()
            try:
                await voice.send(audio_chunk_message(payload))
            except ConnectionClosed:
                self._pending_audio.appendleft(payload)
                raise

    async def _mark_ready(self, voice: VoiceAiLeg) -> None:
        if not self._voice_ready:
            self._voice_ready = True
            await self._flush_pending(voice)

    async def _pump_voice(self, voice: VoiceAiLeg) -> bool:
        """Relay voice-AI events; return True when the leg dropped abnormally."""

        while True:
            try:
                raw = await asyncio.wait_for(voice.recv(), timeout=self._options.idle_timeout_seconds)
                try:
                    message = parse_voice_ai_message(raw)
                except ValueError:
                    LOGGER.debug("Ignoring malformed voice AI message")
                    continue
                await self._handle_voice_event(voice, message)
            except asyncio.TimeoutError:
                LOGGER.info("Voice AI leg idle for session %s", self._session_id)
                return False
            except ConnectionClosedOK:
                LOGGER.info("Voice AI closed the conversation for session %s", self._session_id)
                return False
            except ConnectionClosed as exc:
                LOGGER.warning("Voice AI connection lost for session %s: %s", self._session_id, exc)
                return True

    async def _handle_voice_event(self, voice: VoiceAiLeg, message: dict[str, Any]) -> None:
        event_type = message.get("type")
        if event_type == "conversation_initiation_metadata":
            await self._mark_ready(voice)
        elif event_type == "audio":
            await self._mark_ready(voice)
            audio = (message.get("audio_event") or {}).get("audio_base_64")
            if audio and self._stream_sid:
                await self._send_telephony(media_message(self._stream_sid, audio))
        elif event_type == "user_transcript":
            text = (message.get("user_transcription_event") or {}).get("user_transcript")
            await self._record("user", text)
        elif event_type == "agent_response":
            text = (message.get("agent_response_event") or {}).get("agent_response")
            await self._record("agent", text)
        elif event_type == "ping":
            event_id = (message.get("ping_event") or {}).get("event_id")
            await voice.send(pong_message(event_id))
        elif event_type == "interruption":
            if self._stream_sid:
                await self._send_telephony(clear_message(self._stream_sid))

    async def _record(self, role: TranscriptRole, text: Any) -> None:
        if not isinstance(text, str) or not text.strip():
            return
        try:
            await self._registry.append_transcript(
                self._session_id or "",
                TranscriptEntry(role=role, text=text.strip()),
            )
        except SessionNotFoundError:
            LOGGER.warning("Dropping transcript entry for evicted session %s", self._session_id)

    async def _send_telephony(self, data: str) -> None:
        try:
            await self._telephony.send_text(data)
        except _TELEPHONY_GONE:
            LOGGER.info("Telephony leg gone while sending for session %s", self._session_id)
            self._stop.set()

    # Teardown

    async def _fallback(self, session: CallSession) -> None:
        """Have Twilio speak an apology and hang up instead of leaving dead air."""

        call_sid = session.call_sid or self._stream_call_sid
        if not call_sid:
            LOGGER.error("Cannot play fallback for session %s without a call SID", session.session_id)
            return
        try:
            telephony = self._telephony_factory(session.credentials.telephony)
            await telephony.speak_and_hangup(
                call_sid,
                self._options.fallback_message,
                voice=self._options.say_voice,
                language=self._options.say_language,
            )
        except ProviderError as exc:
            LOGGER.error("Fallback message failed for call %s: %s", call_sid, exc.detail)
            return
        LOGGER.info("Played fallback message on call %s", call_sid)

    async def _close_telephony(self, code: int, reason: str) -> None:
        with contextlib.suppress(Exception):
            await self._telephony.close(code=code, reason=reason)
