"""Call session data model shared by the registry, bridge and API layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

TranscriptRole = Literal["agent", "user"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallStatus(str, Enum):
    INITIATING = "initiating"
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position on the way to a terminal status; transitions only move up."""

        if self.is_terminal:
            return 3
        return _PROGRESS_RANK[self]


TERMINAL_STATUSES = frozenset(
    {
        CallStatus.COMPLETED,
        CallStatus.FAILED,
        CallStatus.NO_ANSWER,
        CallStatus.BUSY,
        CallStatus.CANCELED,
    }
)

_PROGRESS_RANK = {
    CallStatus.INITIATING: 0,
    CallStatus.RINGING: 1,
    CallStatus.IN_PROGRESS: 2,
}


@dataclass(frozen=True)
class CallContext:
    """Conversation instructions handed to the voice AI for one call."""

    script: str = ""
    persona: str = ""
    context: str = ""


@dataclass(frozen=True)
class TranscriptEntry:
    role: TranscriptRole
    text: str
    timestamp: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "text": self.text, "timestamp": self.timestamp.isoformat()}


@dataclass(frozen=True)
class TelephonyCredentials:
    account_sid: str | None = None
    auth_token: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class VoiceAiCredentials:
    agent_id: str | None = None
    api_key: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class ProviderCredentials:
    telephony: TelephonyCredentials = field(default_factory=TelephonyCredentials)
    voice_ai: VoiceAiCredentials = field(default_factory=VoiceAiCredentials)

    def missing(self) -> list[str]:
        """Names of the credentials that are absent or blank."""

        required = {
            "Twilio Account SID": self.telephony.account_sid,
            "Twilio Auth Token": self.telephony.auth_token,
            "Voice AI Agent ID": self.voice_ai.agent_id,
            "Voice AI API Key": self.voice_ai.api_key,
        }
        return [name for name, value in required.items() if not (value or "").strip()]


@dataclass
class CallSession:
    session_id: str
    target_number: str
    caller_number: str
    context: CallContext
    call_sid: str = ""
    status: CallStatus = CallStatus.INITIATING
    transcript: list[TranscriptEntry] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    duration_seconds: int | None = None
    credentials: ProviderCredentials = field(default_factory=ProviderCredentials, repr=False)
