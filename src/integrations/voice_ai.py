"""ElevenLabs Conversational AI leg: endpoint descriptor, wire messages and connect."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import WebSocketException

from calls.errors import BridgeFailureError, ConfigurationError
from calls.schemas import CallSession, VoiceAiCredentials

LOGGER = logging.getLogger(__name__)

DEFAULT_CONVAI_URL = "wss://api.elevenlabs.io/v1/convai/conversation"
API_KEY_HEADER = "xi-api-key"


@dataclass(frozen=True)
class BridgeDescriptor:
    """Everything needed to open the voice-AI leg for one call.

    The API key travels only in ``auth_header``; it is never part of the URL.
    """

    endpoint: str
    agent_id: str
    auth_header: dict[str, str] = field(default_factory=dict, repr=False)


def encode_call_context(session: CallSession) -> str:
    payload = {
        "call_sid": session.call_sid,
        "context": session.context.context,
        "persona": session.context.persona,
        "script": session.context.script,
        "session_id": session.session_id,
    }
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_call_context(blob: str) -> dict[str, str]:
    try:
        raw = base64.urlsafe_b64decode(blob.encode("ascii"))
        decoded = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValueError("Malformed call context") from exc
    if not isinstance(decoded, dict):
        raise ValueError("Malformed call context")
    return decoded


def build_bridge_descriptor(
    session: CallSession,
    credentials: VoiceAiCredentials,
    *,
    endpoint: str = DEFAULT_CONVAI_URL,
) -> BridgeDescriptor:
    agent_id = (credentials.agent_id or "").strip()
    api_key = (credentials.api_key or "").strip()
    missing = [
        name
        for name, value in (("Voice AI Agent ID", agent_id), ("Voice AI API Key", api_key))
        if not value
    ]
    if missing:
        raise ConfigurationError(missing=missing)

    query = urlencode({"agent_id": agent_id, "call_context": encode_call_context(session)})
    separator = "&" if "?" in endpoint else "?"
    return BridgeDescriptor(
        endpoint=f"{endpoint}{separator}{query}",
        agent_id=agent_id,
        auth_header={API_KEY_HEADER: api_key},
    )


def initiation_message(session: CallSession) -> str:
    ctx = session.context
    return json.dumps(
        {
            "type": "conversation_initiation_client_data",
            "dynamic_variables": {
                "session_id": session.session_id,
                "call_sid": session.call_sid,
                "script": ctx.script,
                "persona": ctx.persona,
                "context": ctx.context,
            },
            "conversation_config_override": {
                "agent": {
                    "prompt": {
                        "prompt": f"{ctx.script}\n\nPersona: {ctx.persona}\n\nContext: {ctx.context}",
                    },
                },
            },
        }
    )


def audio_chunk_message(payload_b64: str) -> str:
    return json.dumps({"user_audio_chunk": payload_b64})


def pong_message(event_id: Any) -> str:
    return json.dumps({"type": "pong", "event_id": event_id})


def parse_voice_ai_message(text: str | bytes) -> dict[str, Any]:
    message = json.loads(text)
    if not isinstance(message, dict):
        raise ValueError("Voice AI message must be a JSON object")
    return message


async def fetch_signed_url(
    descriptor: BridgeDescriptor,
    *,
    signed_url_endpoint: str,
    timeout: float = 10.0,
) -> str:
    """Exchange the API key for a short-lived signed conversation URL."""

    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.get(
            signed_url_endpoint,
            params={"agent_id": descriptor.agent_id},
            headers=descriptor.auth_header,
        )
        resp.raise_for_status()
        data = resp.json()
    signed_url = data.get("signed_url") if isinstance(data, dict) else None
    if not signed_url:
        raise BridgeFailureError("Voice AI did not return a signed URL")
    return str(signed_url)


async def connect_voice_ai(
    descriptor: BridgeDescriptor,
    *,
    open_timeout: float = 10.0,
    signed_url_endpoint: str | None = None,
):
    """Open the voice-AI WebSocket; any transport failure becomes ``BridgeFailureError``."""

    try:
        if signed_url_endpoint:
            url = await fetch_signed_url(
                descriptor,
                signed_url_endpoint=signed_url_endpoint,
                timeout=open_timeout,
            )
            headers: dict[str, str] = {}
        else:
            url = descriptor.endpoint
            headers = dict(descriptor.auth_header)
        return await websockets.connect(
            url,
            additional_headers=headers,
            open_timeout=open_timeout,
            ping_interval=20,
            ping_timeout=20,
        )
    except (WebSocketException, OSError, TimeoutError, httpx.HTTPError, ValueError) as exc:
        LOGGER.warning("Voice AI connection failed for agent %s: %s", descriptor.agent_id, exc)
        raise BridgeFailureError(f"Voice AI connection failed: {exc}") from exc
