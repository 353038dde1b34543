"""Outbound call placement."""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlencode

from calls.errors import ConfigurationError, ProviderError, SessionExistsError, ValidationError
from calls.metrics import RelayMetrics
from calls.registry import SessionRegistry
from calls.schemas import CallContext, CallStatus, ProviderCredentials, TelephonyCredentials
from integrations.twilio_client import CALL_NOT_IN_PROGRESS

LOGGER = logging.getLogger(__name__)

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")

_MAX_ID_ATTEMPTS = 5


@dataclass(frozen=True)
class InitiatedCall:
    session_id: str
    call_sid: str
    status: CallStatus


def new_session_id() -> str:
    return secrets.token_hex(8)


def _require_e164(value: str, field_name: str) -> str:
    number = (value or "").strip()
    if not E164_PATTERN.match(number):
        raise ValidationError(f"{field_name} must be an E.164 phone number, got {value!r}")
    return number


class CallInitiator:
    """Validates a call request, registers a session and asks Twilio to dial."""

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        telephony_factory: Callable[[TelephonyCredentials], object],
        metrics: RelayMetrics | None = None,
        ring_timeout: int = 30,
        end_timeout: float = 5.0,
        id_factory: Callable[[], str] = new_session_id,
    ) -> None:
        self._registry = registry
        self._telephony_factory = telephony_factory
        self._metrics = metrics or RelayMetrics()
        self._ring_timeout = ring_timeout
        self._end_timeout = end_timeout
        self._id_factory = id_factory

    async def _create_session(
        self,
        *,
        target_number: str,
        caller_number: str,
        context: CallContext,
        credentials: ProviderCredentials,
    ):
        for _ in range(_MAX_ID_ATTEMPTS):
            try:
                return await self._registry.create(
                    self._id_factory(),
                    target_number=target_number,
                    caller_number=caller_number,
                    context=context,
                    credentials=credentials,
                )
            except SessionExistsError:
                LOGGER.warning("Session id collision, generating a new one")
        raise SessionExistsError("Could not allocate a unique session id")

    async def initiate_call(
        self,
        *,
        target_number: str,
        caller_number: str,
        context: CallContext,
        credentials: ProviderCredentials,
        base_url: str,
    ) -> InitiatedCall:
        target = _require_e164(target_number, "target_number")
        caller = _require_e164(caller_number, "caller_number")

        missing = credentials.missing()
        if missing:
            raise ConfigurationError(missing=missing)

        session = await self._create_session(
            target_number=target,
            caller_number=caller,
            context=context,
            credentials=credentials,
        )
        session_id = session.session_id
        base = base_url.rstrip("/")

        try:
            telephony = self._telephony_factory(credentials.telephony)
            placed = await telephony.place_call(
                to=target,
                from_=caller,
                url=f"{base}/api/twilio/voice?{urlencode({'sessionId': session_id})}",
                status_callback=f"{base}/api/twilio/status",
                timeout=self._ring_timeout,
            )
        except ProviderError as exc:
            LOGGER.error(
                "Call placement failed for session %s (code=%s): %s",
                session_id,
                exc.code,
                exc.detail,
            )
            await self._registry.transition_status(session_id, CallStatus.FAILED)
            self._metrics.record_error()
            raise

        await self._registry.bind_call_sid(session_id, placed.sid)
        transition = await self._registry.transition_status(session_id, CallStatus.RINGING)
        if not transition.applied and transition.current.is_terminal:
            # Terminated while dialing: the session ended before the SID was known.
            await self._hang_up(telephony, placed.sid, session_id)
            return InitiatedCall(session_id=session_id, call_sid=placed.sid, status=transition.current)

        self._metrics.call_started()
        LOGGER.info("Placed call %s for session %s", placed.sid, session_id)
        return InitiatedCall(session_id=session_id, call_sid=placed.sid, status=transition.current)

    async def _hang_up(self, telephony, call_sid: str, session_id: str) -> None:
        LOGGER.warning("Session %s ended while dialing, hanging up call %s", session_id, call_sid)
        try:
            await asyncio.wait_for(
                telephony.end_call(call_sid, status="completed"),
                timeout=self._end_timeout,
            )
        except asyncio.TimeoutError:
            LOGGER.error("Hang-up of call %s timed out after %.1fs", call_sid, self._end_timeout)
            self._metrics.record_error()
        except ProviderError as exc:
            if str(exc.code) == str(CALL_NOT_IN_PROGRESS):
                LOGGER.info("Call %s was no longer in progress", call_sid)
                return
            LOGGER.error("Hang-up of call %s failed (code=%s): %s", call_sid, exc.code, exc.detail)
            self._metrics.record_error()
