from __future__ import annotations

import asyncio
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


TEST_ENV = {
    "PUBLIC_BASE_URL": "https://relay.example.com",
    "TWILIO_ACCOUNT_SID": "AC00000000000000000000000000000000",
    "TWILIO_AUTH_TOKEN": "test-token",
    "TWILIO_FROM_NUMBER": "+14422663218",
    "VOICE_AI_AGENT_ID": "agent_test",
    "VOICE_AI_API_KEY": "xi-test-key",
    "TERMINATION_TIMEOUT_SECONDS": "0.2",
    "VOICE_AI_RECONNECT_BACKOFF_SECONDS": "0",
}


class FakeTelephony:
    """Stands in for ``TwilioTelephony``; records every provider request."""

    def __init__(self, *, sid: str = "CA123") -> None:
        self.sid = sid
        self.place_error: Exception | None = None
        self.end_error: Exception | None = None
        self.place_delay = 0.0
        self.end_delay = 0.0
        self.placed: list[dict] = []
        self.ended: list[tuple[str, str]] = []
        self.spoken: list[tuple[str, str]] = []
        self.credentials: list = []

    def factory(self, credentials):
        self.credentials.append(credentials)
        return self

    async def place_call(self, **kwargs):
        from integrations.twilio_client import PlacedCall

        self.placed.append(kwargs)
        if self.place_delay:
            await asyncio.sleep(self.place_delay)
        if self.place_error is not None:
            raise self.place_error
        return PlacedCall(sid=self.sid, status="queued")

    async def end_call(self, call_sid: str, *, status: str = "completed") -> None:
        if self.end_delay:
            await asyncio.sleep(self.end_delay)
        if self.end_error is not None:
            raise self.end_error
        self.ended.append((call_sid, status))

    async def speak_and_hangup(self, call_sid: str, text: str, *, voice: str, language: str) -> None:
        self.spoken.append((call_sid, text))


@dataclass
class Services:
    registry: object
    bridges: object
    metrics: object
    telephony: FakeTelephony
    connector: object = None
    connected: list = field(default_factory=list)


@pytest.fixture(scope="session")
def app():
    os.environ.update(TEST_ENV)

    import importlib

    # Ensure clean import with the test settings.
    for module_name in [
        "config.settings",
        "api.dependencies",
        "api.routes",
        "api.twilio_routes",
        "main",
    ]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def services() -> Services:
    from calls.bridge import ActiveBridges
    from calls.errors import BridgeFailureError
    from calls.metrics import RelayMetrics
    from calls.registry import SessionRegistry

    svc = Services(
        registry=SessionRegistry(),
        bridges=ActiveBridges(),
        metrics=RelayMetrics(),
        telephony=FakeTelephony(),
    )

    async def unavailable(descriptor):
        svc.connected.append(descriptor)
        raise BridgeFailureError("voice AI rejected credentials")

    svc.connector = unavailable
    return svc


@pytest.fixture()
def client(app, services: Services):
    # Override provider dependencies so tests never reach Twilio or the voice AI.
    import api.dependencies as deps

    app.dependency_overrides[deps.get_registry] = lambda: services.registry
    app.dependency_overrides[deps.get_bridges] = lambda: services.bridges
    app.dependency_overrides[deps.get_metrics] = lambda: services.metrics
    app.dependency_overrides[deps.get_telephony_factory] = lambda: services.telephony.factory
    app.dependency_overrides[deps.get_voice_ai_connector] = lambda: services.connector

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
