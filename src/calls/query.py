"""Read-only transcript and status lookups."""

from __future__ import annotations

from dataclasses import dataclass

from calls.registry import SessionRegistry
from calls.schemas import CallStatus, TranscriptEntry


@dataclass(frozen=True)
class TranscriptView:
    session_id: str
    call_sid: str
    status: CallStatus
    transcript: tuple[TranscriptEntry, ...]
    duration_seconds: int | None = None


class TranscriptQuery:
    """Read-only view of a call's transcript and status."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry

    async def get_transcript(self, identifier: str) -> TranscriptView:
        session = await self._registry.resolve(identifier)
        return TranscriptView(
            session_id=session.session_id,
            call_sid=session.call_sid,
            status=session.status,
            transcript=tuple(session.transcript),
            duration_seconds=session.duration_seconds,
        )
