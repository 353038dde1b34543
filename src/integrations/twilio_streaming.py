"""Wire helpers for Twilio Media Streams WebSocket messages."""

from __future__ import annotations

import json
from typing import Any


def parse_twilio_ws_message(text: str) -> dict[str, Any]:
    message = json.loads(text)
    if not isinstance(message, dict):
        raise ValueError("Twilio stream message must be a JSON object")
    return message


def stream_start_details(message: dict[str, Any]) -> tuple[str | None, dict[str, str]]:
    """Return the stream SID and custom ``<Parameter>`` values of a ``start`` event."""

    start = message.get("start") or {}
    stream_sid = start.get("streamSid") or message.get("streamSid")
    params = start.get("customParameters") or {}
    return (str(stream_sid) if stream_sid else None), {str(k): str(v) for k, v in params.items()}


def inbound_media_payload(message: dict[str, Any]) -> str | None:
    """Base64 audio of a ``media`` event from the caller, or None."""

    media = message.get("media") or {}
    if media.get("track") and media.get("track") != "inbound":
        return None
    payload = media.get("payload")
    if isinstance(payload, str) and payload:
        return payload
    return None


def media_message(stream_sid: str, payload_b64: str) -> str:
    return json.dumps({"event": "media", "streamSid": stream_sid, "media": {"payload": payload_b64}})


def clear_message(stream_sid: str) -> str:
    return json.dumps({"event": "clear", "streamSid": stream_sid})
