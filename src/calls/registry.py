"""In-memory registry of call sessions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from calls.errors import CallSidAlreadyBoundError, SessionExistsError, SessionNotFoundError
from calls.schemas import (
    CallContext,
    CallSession,
    CallStatus,
    ProviderCredentials,
    TranscriptEntry,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

# Fields only the registry's guarded operations may change.
_GUARDED_FIELDS = (
    "session_id",
    "call_sid",
    "status",
    "target_number",
    "caller_number",
    "context",
    "created_at",
)


@dataclass(frozen=True)
class StatusTransition:
    applied: bool
    previous: CallStatus
    current: CallStatus


def _snapshot(session: CallSession) -> CallSession:
    return replace(session, transcript=list(session.transcript))


class SessionRegistry:
    """Single source of truth for call sessions.

    Sessions live only in process memory and are evicted a fixed TTL after
    creation. Every public method takes the registry lock, so handlers running
    on independent requests never need to coordinate among themselves. Callers
    always receive copies; mutation happens only through the methods below.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._lock = asyncio.Lock()
        self._sessions: dict[str, CallSession] = {}
        self._by_call_sid: dict[str, str] = {}
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def _require(self, session_id: str) -> CallSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Unknown call session: {session_id}")
        return session

    async def create(
        self,
        session_id: str,
        *,
        target_number: str,
        caller_number: str,
        context: CallContext,
        credentials: ProviderCredentials | None = None,
    ) -> CallSession:
        async with self._lock:
            if session_id in self._sessions:
                raise SessionExistsError(f"Call session {session_id} already exists")
            now = self._clock()
            session = CallSession(
                session_id=session_id,
                target_number=target_number,
                caller_number=caller_number,
                context=context,
                created_at=now,
                updated_at=now,
                credentials=credentials or ProviderCredentials(),
            )
            self._sessions[session_id] = session
            return _snapshot(session)

    async def exists(self, session_id: str) -> bool:
        async with self._lock:
            return session_id in self._sessions

    async def get(self, session_id: str) -> CallSession:
        async with self._lock:
            return _snapshot(self._require(session_id))

    async def get_by_call_sid(self, call_sid: str) -> CallSession:
        async with self._lock:
            session_id = self._by_call_sid.get(call_sid)
            if session_id is None:
                raise SessionNotFoundError(f"No call session for call SID {call_sid}")
            return _snapshot(self._require(session_id))

    async def resolve(self, identifier: str) -> CallSession:
        """Look up a session by session id, falling back to the call SID."""

        async with self._lock:
            session = self._sessions.get(identifier)
            if session is None:
                session_id = self._by_call_sid.get(identifier)
                if session_id is not None:
                    session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(f"Unknown call: {identifier}")
            return _snapshot(session)

    async def update(
        self,
        session_id: str,
        mutator: Callable[[CallSession], None],
    ) -> CallSession:
        """Apply ``mutator`` to a draft copy and store it.

        Identity, call SID, status and transcript have dedicated operations; a
        mutator that changes any of them is rejected and nothing is stored.
        """

        async with self._lock:
            session = self._require(session_id)
            draft = _snapshot(session)
            mutator(draft)
            changed = [name for name in _GUARDED_FIELDS if getattr(draft, name) != getattr(session, name)]
            if changed or draft.transcript != session.transcript:
                raise ValueError(f"update() may not modify {changed or ['transcript']}")
            draft.updated_at = self._clock()
            self._sessions[session_id] = draft
            return _snapshot(draft)

    async def append_transcript(self, session_id: str, entry: TranscriptEntry) -> int:
        async with self._lock:
            session = self._require(session_id)
            session.transcript.append(entry)
            session.updated_at = self._clock()
            return len(session.transcript)

    async def bind_call_sid(self, session_id: str, call_sid: str) -> CallSession:
        if not call_sid:
            raise ValueError("call_sid may not be empty")
        async with self._lock:
            session = self._require(session_id)
            if session.call_sid == call_sid:
                return _snapshot(session)
            if session.call_sid:
                raise CallSidAlreadyBoundError(
                    f"Session {session_id} is already bound to {session.call_sid}"
                )
            owner = self._by_call_sid.get(call_sid)
            if owner is not None and owner != session_id:
                raise CallSidAlreadyBoundError(f"Call SID {call_sid} belongs to session {owner}")
            session.call_sid = call_sid
            session.updated_at = self._clock()
            self._by_call_sid[call_sid] = session_id
            return _snapshot(session)

    async def transition_status(
        self,
        session_id: str,
        status: CallStatus,
        *,
        duration_seconds: int | None = None,
    ) -> StatusTransition:
        """Move a session forward; terminal sessions and regressions are ignored."""

        async with self._lock:
            session = self._require(session_id)
            previous = session.status
            if previous.is_terminal or status.rank <= previous.rank:
                return StatusTransition(applied=False, previous=previous, current=previous)
            session.status = status
            if duration_seconds is not None:
                session.duration_seconds = duration_seconds
            session.updated_at = self._clock()
            return StatusTransition(applied=True, previous=previous, current=status)

    async def evict_expired(self) -> list[str]:
        async with self._lock:
            cutoff = self._clock() - self._ttl
            expired = [sid for sid, session in self._sessions.items() if session.created_at <= cutoff]
            for session_id in expired:
                session = self._sessions.pop(session_id)
                if session.call_sid:
                    self._by_call_sid.pop(session.call_sid, None)
        if expired:
            LOGGER.info("Evicted %d expired call session(s)", len(expired))
        return expired

    async def run_eviction(self, interval_seconds: float) -> None:
        """Sweep expired sessions until cancelled."""

        while True:
            await asyncio.sleep(interval_seconds)
            await self.evict_expired()
