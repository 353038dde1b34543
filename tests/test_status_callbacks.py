from __future__ import annotations

import asyncio
from itertools import permutations

from calls.metrics import RelayMetrics
from calls.registry import SessionRegistry
from calls.schemas import CallContext, CallStatus
from calls.status import StatusCallbackHandler, map_provider_status


class RecordingBridges:
    def __init__(self) -> None:
        self.terminated: list[str] = []

    def terminate(self, session_id: str) -> bool:
        self.terminated.append(session_id)
        return True


async def _ringing_call(registry: SessionRegistry, session_id: str = "s1", call_sid: str = "CA1") -> None:
    await registry.create(
        session_id,
        target_number="+19705677890",
        caller_number="+14422663218",
        context=CallContext(),
    )
    await registry.bind_call_sid(session_id, call_sid)
    await registry.transition_status(session_id, CallStatus.RINGING)


def test_provider_statuses_are_mapped():
    assert map_provider_status("queued") is CallStatus.INITIATING
    assert map_provider_status("in-progress") is CallStatus.IN_PROGRESS
    assert map_provider_status("answered") is CallStatus.IN_PROGRESS
    assert map_provider_status("no-answer") is CallStatus.NO_ANSWER
    assert map_provider_status("Completed") is CallStatus.COMPLETED
    assert map_provider_status("teleported") is None


def test_duplicate_completed_callbacks_are_acknowledged():
    async def scenario():
        registry = SessionRegistry()
        metrics = RelayMetrics(calls_total=1, active_calls=1)
        bridges = RecordingBridges()
        handler = StatusCallbackHandler(registry, bridges=bridges, metrics=metrics)
        await _ringing_call(registry)

        first = await handler.handle_status_callback("CA1", "completed", 61)
        second = await handler.handle_status_callback("CA1", "completed", 61)

        assert first.applied is True
        assert second.applied is False
        session = await registry.get("s1")
        assert session.status is CallStatus.COMPLETED
        assert session.duration_seconds == 61
        assert session.transcript == []
        assert metrics.active_calls == 0
        assert bridges.terminated == ["s1"]

    asyncio.run(scenario())


def test_out_of_order_callbacks_converge_on_final_status():
    async def scenario(order):
        registry = SessionRegistry()
        handler = StatusCallbackHandler(registry)
        await _ringing_call(registry)
        for status in order:
            await handler.handle_status_callback("CA1", status)
        return (await registry.get("s1")).status

    for order in permutations(["ringing", "in-progress", "completed", "completed"]):
        assert asyncio.run(scenario(order)) is CallStatus.COMPLETED


def test_unknown_call_and_status_are_acknowledged():
    async def scenario():
        registry = SessionRegistry()
        handler = StatusCallbackHandler(registry)
        await _ringing_call(registry)

        unknown_call = await handler.handle_status_callback("CA-nope", "completed")
        unknown_status = await handler.handle_status_callback("CA1", "teleported")

        assert unknown_call.applied is False
        assert unknown_status.applied is False
        assert unknown_status.status is None
        assert (await registry.get("s1")).status is CallStatus.RINGING

    asyncio.run(scenario())


def test_non_terminal_transition_keeps_bridge_alive():
    async def scenario():
        registry = SessionRegistry()
        bridges = RecordingBridges()
        handler = StatusCallbackHandler(registry, bridges=bridges)
        await _ringing_call(registry)

        ack = await handler.handle_status_callback("CA1", "in-progress")
        assert ack.applied is True
        assert ack.status is CallStatus.IN_PROGRESS
        assert bridges.terminated == []

    asyncio.run(scenario())
