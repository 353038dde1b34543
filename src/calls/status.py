"""Twilio status callback handling."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from calls.errors import SessionNotFoundError
from calls.metrics import RelayMetrics
from calls.registry import SessionRegistry
from calls.schemas import CallStatus

if TYPE_CHECKING:  # pragma: no cover
    from calls.bridge import ActiveBridges

LOGGER = logging.getLogger(__name__)

PROVIDER_STATUS_MAP: dict[str, CallStatus] = {
    "queued": CallStatus.INITIATING,
    "initiated": CallStatus.INITIATING,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "answered": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.BUSY,
    "failed": CallStatus.FAILED,
    "no-answer": CallStatus.NO_ANSWER,
    "canceled": CallStatus.CANCELED,
}


@dataclass(frozen=True)
class StatusAck:
    call_sid: str
    status: CallStatus | None
    applied: bool


def map_provider_status(provider_status: str) -> CallStatus | None:
    return PROVIDER_STATUS_MAP.get((provider_status or "").strip().lower())


class StatusCallbackHandler:
    """Applies provider status callbacks to the registry.

    Webhooks are retried and may arrive out of order, so every outcome is an
    acknowledgement: unknown calls, unknown statuses, duplicates and
    regressions are logged and ignored.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        bridges: ActiveBridges | None = None,
        metrics: RelayMetrics | None = None,
    ) -> None:
        self._registry = registry
        self._bridges = bridges
        self._metrics = metrics

    async def handle_status_callback(
        self,
        call_sid: str,
        provider_status: str,
        duration_seconds: int | None = None,
    ) -> StatusAck:
        status = map_provider_status(provider_status)
        if status is None:
            LOGGER.warning("Ignoring unknown provider status %r for call %s", provider_status, call_sid)
            return StatusAck(call_sid=call_sid, status=None, applied=False)

        try:
            session = await self._registry.get_by_call_sid(call_sid)
            transition = await self._registry.transition_status(
                session.session_id,
                status,
                duration_seconds=duration_seconds if status.is_terminal else None,
            )
        except SessionNotFoundError:
            LOGGER.info("Status %s for unknown call %s acknowledged", provider_status, call_sid)
            return StatusAck(call_sid=call_sid, status=status, applied=False)

        if not transition.applied:
            LOGGER.debug(
                "Ignored %s for session %s (current %s)",
                status.value,
                session.session_id,
                transition.current.value,
            )
            return StatusAck(call_sid=call_sid, status=transition.current, applied=False)

        LOGGER.info(
            "Session %s: %s -> %s",
            session.session_id,
            transition.previous.value,
            transition.current.value,
        )
        if status.is_terminal:
            if self._metrics is not None:
                self._metrics.call_finished()
            if self._bridges is not None:
                self._bridges.terminate(session.session_id)
        return StatusAck(call_sid=call_sid, status=status, applied=True)
