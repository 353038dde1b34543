"""Client-requested call termination."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from calls.errors import ProviderError, TerminationTimedOutError
from calls.metrics import RelayMetrics
from calls.registry import SessionRegistry
from calls.schemas import CallStatus, TelephonyCredentials
from integrations.twilio_client import CALL_NOT_IN_PROGRESS

if TYPE_CHECKING:  # pragma: no cover
    from calls.bridge import ActiveBridges

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TerminationResult:
    session_id: str
    call_sid: str
    status: CallStatus
    already_ended: bool


class CallTerminator:
    def __init__(
        self,
        registry: SessionRegistry,
        *,
        telephony_factory: Callable[[TelephonyCredentials], object],
        bridges: ActiveBridges | None = None,
        metrics: RelayMetrics | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._registry = registry
        self._telephony_factory = telephony_factory
        self._bridges = bridges
        self._metrics = metrics
        self._timeout = timeout_seconds

    def _close_bridge(self, session_id: str) -> None:
        if self._bridges is not None:
            self._bridges.terminate(session_id)

    async def terminate(self, identifier: str) -> TerminationResult:
        """End a call by session id or call SID.

        Terminating a call that already ended is a successful no-op. Twilio is
        always told "completed"; locally, calls that were never answered are
        recorded as canceled and answered calls as completed.
        """

        session = await self._registry.resolve(identifier)
        session_id = session.session_id

        if session.status.is_terminal:
            self._close_bridge(session_id)
            return TerminationResult(session_id, session.call_sid, session.status, already_ended=True)

        if not session.call_sid:
            transition = await self._registry.transition_status(session_id, CallStatus.CANCELED)
            self._close_bridge(session_id)
            return TerminationResult(
                session_id, "", transition.current, already_ended=not transition.applied
            )

        target = CallStatus.COMPLETED if session.status is CallStatus.IN_PROGRESS else CallStatus.CANCELED
        telephony = self._telephony_factory(session.credentials.telephony)
        already_ended = False
        try:
            await asyncio.wait_for(
                telephony.end_call(session.call_sid, status="completed"),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            LOGGER.error("Termination of call %s timed out after %.1fs", session.call_sid, self._timeout)
            raise TerminationTimedOutError(
                f"Provider did not confirm termination within {self._timeout:g}s"
            ) from exc
        except ProviderError as exc:
            if str(exc.code) != str(CALL_NOT_IN_PROGRESS):
                raise
            LOGGER.info("Call %s was no longer in progress", session.call_sid)
            already_ended = True

        transition = await self._registry.transition_status(session_id, target)
        if transition.applied and self._metrics is not None:
            self._metrics.call_finished()
        self._close_bridge(session_id)
        LOGGER.info("Terminated call %s (session %s) as %s", session.call_sid, session_id, transition.current.value)
        return TerminationResult(
            session_id,
            session.call_sid,
            transition.current,
            already_ended=already_ended or not transition.applied,
        )
