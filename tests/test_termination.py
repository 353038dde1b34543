from __future__ import annotations

import asyncio

import pytest

from calls.errors import ProviderError, SessionNotFoundError, TerminationTimedOutError
from calls.schemas import CallContext, CallStatus
from calls.termination import CallTerminator


class RecordingBridges:
    def __init__(self) -> None:
        self.terminated: list[str] = []

    def terminate(self, session_id: str) -> bool:
        self.terminated.append(session_id)
        return True


def _terminator(services, bridges=None, timeout: float = 0.5) -> CallTerminator:
    return CallTerminator(
        services.registry,
        telephony_factory=services.telephony.factory,
        bridges=bridges,
        metrics=services.metrics,
        timeout_seconds=timeout,
    )


def _seed(services, status: CallStatus, call_sid: str | None = "CA1") -> None:
    async def seed():
        await services.registry.create(
            "s1",
            target_number="+19705677890",
            caller_number="+14422663218",
            context=CallContext(),
        )
        if call_sid:
            await services.registry.bind_call_sid("s1", call_sid)
        if status is not CallStatus.INITIATING:
            await services.registry.transition_status("s1", status)

    asyncio.run(seed())
    services.metrics.call_started()


def test_answered_call_is_completed_and_bridge_closed(services):
    bridges = RecordingBridges()
    _seed(services, CallStatus.IN_PROGRESS)

    result = asyncio.run(_terminator(services, bridges).terminate("CA1"))

    assert result.session_id == "s1"
    assert result.status is CallStatus.COMPLETED
    assert result.already_ended is False
    assert services.telephony.ended == [("CA1", "completed")]
    assert bridges.terminated == ["s1"]
    assert services.metrics.active_calls == 0


def test_ringing_call_is_hung_up_and_recorded_as_canceled(services):
    _seed(services, CallStatus.RINGING)

    result = asyncio.run(_terminator(services).terminate("s1"))

    assert result.status is CallStatus.CANCELED
    assert services.telephony.ended == [("CA1", "completed")]
    assert services.metrics.active_calls == 0


def test_terminating_an_ended_call_is_a_no_op(services):
    bridges = RecordingBridges()
    _seed(services, CallStatus.COMPLETED)

    result = asyncio.run(_terminator(services, bridges).terminate("s1"))

    assert result.already_ended is True
    assert result.status is CallStatus.COMPLETED
    assert services.telephony.ended == []
    assert bridges.terminated == ["s1"]


def test_call_not_in_progress_counts_as_ended(services):
    services.telephony.end_error = ProviderError(
        "Call is not in-progress. Cannot redirect.",
        provider="twilio",
        code=21220,
        provider_status=400,
    )
    _seed(services, CallStatus.IN_PROGRESS)

    result = asyncio.run(_terminator(services).terminate("s1"))

    assert result.already_ended is True
    assert result.status is CallStatus.COMPLETED


def test_other_provider_errors_propagate(services):
    services.telephony.end_error = ProviderError("Authenticate", provider="twilio", code=20003, provider_status=401)
    _seed(services, CallStatus.IN_PROGRESS)

    with pytest.raises(ProviderError):
        asyncio.run(_terminator(services).terminate("s1"))

    assert asyncio.run(services.registry.get("s1")).status is CallStatus.IN_PROGRESS


def test_slow_provider_raises_timeout(services):
    services.telephony.end_delay = 1.0
    _seed(services, CallStatus.IN_PROGRESS)

    with pytest.raises(TerminationTimedOutError) as exc_info:
        asyncio.run(_terminator(services, timeout=0.05).terminate("s1"))

    assert exc_info.value.status_code == 504


def test_call_without_sid_is_canceled_locally(services):
    _seed(services, CallStatus.INITIATING, call_sid=None)

    result = asyncio.run(_terminator(services).terminate("s1"))

    assert result.status is CallStatus.CANCELED
    assert result.call_sid == ""
    assert services.telephony.ended == []


def test_unknown_call_is_not_found(services):
    with pytest.raises(SessionNotFoundError):
        asyncio.run(_terminator(services).terminate("nope"))
