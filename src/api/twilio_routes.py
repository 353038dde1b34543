"""Twilio Voice integration.

This module provides:
- Voice webhook (TwiML) that greets the callee and opens a Media Stream.
- Status callback webhook.
- Media Stream WebSocket that bridges the call to the voice-AI agent.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from urllib.parse import urlencode
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, HTTPException, Request, Response, WebSocket

from api.dependencies import (
    get_bridge_options,
    get_bridges,
    get_metrics,
    get_registry,
    get_status_handler,
    get_telephony_factory,
    get_voice_ai_connector,
)
from calls.bridge import ActiveBridges, BridgeOptions, MediaStreamBridge, VoiceAiConnector
from calls.errors import SessionNotFoundError
from calls.metrics import RelayMetrics
from calls.registry import SessionRegistry
from calls.schemas import TelephonyCredentials
from calls.status import StatusCallbackHandler
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])

SESSION_PARAM = "sessionId"


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _say(text: str, *, voice: str, language: str) -> str:
    return f"<Say voice=\"{escape(voice)}\" language=\"{escape(language)}\">{escape(text)}</Say>"


def _twiml_connect_stream(
    *,
    stream_url: str,
    session_id: str,
    greeting: str | None,
    voice: str,
    language: str,
) -> str:
    # Twilio drops query strings on some Stream URLs, so the session id also
    # travels as a custom parameter delivered in the ``start`` event.
    stream = escape(stream_url, {"\"": "&quot;"})
    sid = escape(session_id, {"\"": "&quot;"})
    say = _say(greeting, voice=voice, language=language) if greeting else ""
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        f"{say}"
        "<Connect>"
        f"<Stream url=\"{stream}\">"
        f"<Parameter name=\"{SESSION_PARAM}\" value=\"{sid}\" />"
        "</Stream>"
        "</Connect>"
        "</Response>"
    )


def _twiml_apology(*, text: str, voice: str, language: str) -> str:
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        f"{_say(text, voice=voice, language=language)}"
        "<Hangup/>"
        "</Response>"
    )


def _stream_url(request: Request, session_id: str) -> str:
    settings = get_settings()
    # WebSocket endpoint must be publicly reachable (wss:// recommended).
    if settings.public_base_url:
        base = settings.public_base_url.rstrip("/")
    else:
        # Fallback to request host. This may not work behind proxies; prefer PUBLIC_BASE_URL.
        base = str(request.base_url).rstrip("/")
    return _to_ws_url(f"{base}/api/twilio/media-stream") + "?" + urlencode({SESSION_PARAM: session_id})


@router.post("/voice")
async def twilio_voice_webhook(
    request: Request,
    registry: SessionRegistry = Depends(get_registry),
) -> Response:
    settings = get_settings()
    session_id = (request.query_params.get(SESSION_PARAM) or "").strip()
    if not session_id:
        raise HTTPException(status_code=400, detail="Missing sessionId")

    if not await registry.exists(session_id):
        LOGGER.warning("Voice webhook for unknown session %s", session_id)
        return _twiml_response(
            _twiml_apology(
                text=settings.bridge_fallback_message,
                voice=settings.twilio_say_voice,
                language=settings.twilio_say_language,
            )
        )

    return _twiml_response(
        _twiml_connect_stream(
            stream_url=_stream_url(request, session_id),
            session_id=session_id,
            greeting=(settings.twilio_greeting or "").strip() or None,
            voice=settings.twilio_say_voice,
            language=settings.twilio_say_language,
        )
    )


def _parse_duration(raw: object) -> int | None:
    try:
        return int(str(raw))
    except (TypeError, ValueError):
        return None


@router.post("/status")
async def twilio_status_callback(
    request: Request,
    handler: StatusCallbackHandler = Depends(get_status_handler),
) -> dict[str, object]:
    form = await request.form()
    call_sid = str(form.get("CallSid") or "").strip()
    call_status = str(form.get("CallStatus") or "").strip()
    duration = _parse_duration(form.get("CallDuration"))

    if not call_sid:
        LOGGER.warning("Status callback without CallSid acknowledged")
        return {"received": True, "applied": False}

    ack = await handler.handle_status_callback(call_sid, call_status, duration)
    return {"received": True, "applied": ack.applied}


@router.websocket("/media-stream")
async def twilio_media_stream(
    websocket: WebSocket,
    registry: SessionRegistry = Depends(get_registry),
    bridges: ActiveBridges = Depends(get_bridges),
    metrics: RelayMetrics = Depends(get_metrics),
    connector: VoiceAiConnector = Depends(get_voice_ai_connector),
    telephony_factory: Callable[[TelephonyCredentials], object] = Depends(get_telephony_factory),
    options: BridgeOptions = Depends(get_bridge_options),
) -> None:
    session_id = (websocket.query_params.get(SESSION_PARAM) or "").strip() or None
    if session_id is not None:
        try:
            session = await registry.get(session_id)
        except SessionNotFoundError:
            LOGGER.warning("Rejecting media stream upgrade for unknown session %s", session_id)
            await websocket.close(code=1008)
            return
        if session.status.is_terminal:
            LOGGER.warning(
                "Rejecting media stream upgrade for %s session %s", session.status.value, session_id
            )
            await websocket.close(code=1008)
            return

    await websocket.accept()
    bridge = MediaStreamBridge(
        websocket,
        registry=registry,
        connector=connector,
        telephony_factory=telephony_factory,
        options=options,
        session_id=session_id,
        bridges=bridges,
        metrics=metrics,
    )
    await bridge.run()
