"""API-facing Pydantic models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from calls.schemas import CallStatus


class TelephonyCredentialsIn(BaseModel):
    account_sid: str | None = None
    auth_token: str | None = None


class VoiceAiCredentialsIn(BaseModel):
    agent_id: str | None = None
    api_key: str | None = None


class CredentialsIn(BaseModel):
    """Per-request provider credentials; any field left out falls back to configuration."""

    telephony: TelephonyCredentialsIn = Field(default_factory=TelephonyCredentialsIn)
    voice_ai: VoiceAiCredentialsIn = Field(default_factory=VoiceAiCredentialsIn)


class InitiateCallRequest(BaseModel):
    target_number: str = Field(description="E.164 phone number to dial, e.g. +19705677890")
    caller_number: str | None = Field(
        default=None,
        description="E.164 caller ID. Defaults to TWILIO_FROM_NUMBER.",
    )
    script: str | None = None
    persona: str | None = None
    context: str | None = None
    credentials: CredentialsIn | None = None


class InitiateCallResponse(BaseModel):
    session_id: str
    call_sid: str
    status: CallStatus


class TranscriptEntryOut(BaseModel):
    role: str
    text: str
    timestamp: datetime


class TranscriptResponse(BaseModel):
    session_id: str
    call_sid: str
    status: CallStatus
    duration_seconds: int | None = None
    transcript: list[TranscriptEntryOut]


class TerminateCallResponse(BaseModel):
    session_id: str
    call_sid: str
    status: CallStatus
    already_ended: bool


class HealthResponse(BaseModel):
    status: str = "ok"
    sessions: int
    active_bridges: int


class MetricsResponse(BaseModel):
    calls_total: int
    errors_total: int
    active_calls: int
    reconnects_total: int
