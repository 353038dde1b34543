"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules. Every component is
a process-wide singleton built lazily from settings; tests replace them through
``app.dependency_overrides``.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import lru_cache, partial

from fastapi import Depends

from calls.bridge import ActiveBridges, BridgeOptions, VoiceAiConnector
from calls.initiator import CallInitiator
from calls.metrics import RelayMetrics
from calls.query import TranscriptQuery
from calls.registry import SessionRegistry
from calls.schemas import TelephonyCredentials
from calls.status import StatusCallbackHandler
from calls.termination import CallTerminator
from config.settings import get_settings
from integrations.twilio_client import TwilioTelephony
from integrations.voice_ai import connect_voice_ai


@lru_cache(maxsize=1)
def get_registry() -> SessionRegistry:
    return SessionRegistry(ttl_seconds=get_settings().session_ttl_seconds)


@lru_cache(maxsize=1)
def get_bridges() -> ActiveBridges:
    return ActiveBridges()


@lru_cache(maxsize=1)
def get_metrics() -> RelayMetrics:
    return RelayMetrics()


def get_telephony_factory() -> Callable[[TelephonyCredentials], TwilioTelephony]:
    return TwilioTelephony.from_credentials


def get_voice_ai_connector() -> VoiceAiConnector:
    settings = get_settings()
    return partial(
        connect_voice_ai,
        open_timeout=settings.voice_ai_connect_timeout_seconds,
        signed_url_endpoint=(
            settings.voice_ai_signed_url_endpoint if settings.voice_ai_use_signed_url else None
        ),
    )


def get_bridge_options() -> BridgeOptions:
    settings = get_settings()
    return BridgeOptions(
        voice_ai_endpoint=settings.voice_ai_ws_url,
        idle_timeout_seconds=settings.bridge_idle_timeout_seconds,
        max_reconnects=settings.voice_ai_max_reconnects,
        reconnect_backoff_seconds=settings.voice_ai_reconnect_backoff_seconds,
        fallback_message=settings.bridge_fallback_message,
        say_voice=settings.twilio_say_voice,
        say_language=settings.twilio_say_language,
    )


def get_initiator(
    registry: SessionRegistry = Depends(get_registry),
    telephony_factory: Callable[[TelephonyCredentials], TwilioTelephony] = Depends(get_telephony_factory),
    metrics: RelayMetrics = Depends(get_metrics),
) -> CallInitiator:
    return CallInitiator(
        registry,
        telephony_factory=telephony_factory,
        metrics=metrics,
        ring_timeout=get_settings().call_ring_timeout_seconds,
        end_timeout=get_settings().termination_timeout_seconds,
    )


def get_status_handler(
    registry: SessionRegistry = Depends(get_registry),
    bridges: ActiveBridges = Depends(get_bridges),
    metrics: RelayMetrics = Depends(get_metrics),
) -> StatusCallbackHandler:
    return StatusCallbackHandler(registry, bridges=bridges, metrics=metrics)


def get_terminator(
    registry: SessionRegistry = Depends(get_registry),
    telephony_factory: Callable[[TelephonyCredentials], TwilioTelephony] = Depends(get_telephony_factory),
    bridges: ActiveBridges = Depends(get_bridges),
    metrics: RelayMetrics = Depends(get_metrics),
) -> CallTerminator:
    return CallTerminator(
        registry,
        telephony_factory=telephony_factory,
        bridges=bridges,
        metrics=metrics,
        timeout_seconds=get_settings().termination_timeout_seconds,
    )


def get_transcript_query(registry: SessionRegistry = Depends(get_registry)) -> TranscriptQuery:
    return TranscriptQuery(registry)
