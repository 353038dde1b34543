from __future__ import annotations

from calls.errors import ProviderError

CALL_REQUEST = {
    "target_number": "+19705677890",
    "caller_number": "+14422663218",
    "script": "Introduce the new plan.",
    "persona": "Friendly",
    "context": "Existing customer",
}


def test_happy_path_from_initiation_to_completed_transcript(client, services):
    resp = client.post("/api/calls", json=CALL_REQUEST)
    assert resp.status_code == 200
    body = resp.json()
    assert body["call_sid"] == "CA123"
    assert body["status"] in {"ringing", "initiating"}
    session_id = body["session_id"]

    ack = client.post("/api/twilio/status", data={"CallSid": "CA123", "CallStatus": "completed", "CallDuration": "17"})
    assert ack.status_code == 200

    transcript = client.get(f"/api/calls/{session_id}/transcript")
    assert transcript.status_code == 200
    assert transcript.json()["status"] == "completed"
    assert transcript.json()["duration_seconds"] == 17
    assert transcript.json()["transcript"] == []

    by_call_sid = client.get("/api/calls/CA123/transcript")
    assert by_call_sid.json()["session_id"] == session_id


def test_defaults_fill_caller_number_and_credentials(client, services):
    resp = client.post("/api/calls", json={"target_number": "+19705677890"})

    assert resp.status_code == 200
    placed = services.telephony.placed[0]
    assert placed["from_"] == "+14422663218"
    assert placed["url"].startswith("https://relay.example.com/api/twilio/voice?sessionId=")
    assert services.telephony.credentials[0].account_sid == "AC00000000000000000000000000000000"


def test_request_credentials_override_configuration(client, services):
    payload = {**CALL_REQUEST, "credentials": {"telephony": {"account_sid": "AC-from-request"}}}

    resp = client.post("/api/calls", json=payload)

    assert resp.status_code == 200
    used = services.telephony.credentials[0]
    assert used.account_sid == "AC-from-request"
    assert used.auth_token == "test-token"


def test_missing_configuration_returns_500_and_creates_no_session(client, services, monkeypatch):
    from config.settings import get_settings

    monkeypatch.setattr(get_settings(), "voice_ai_api_key", None)

    resp = client.post("/api/calls", json=CALL_REQUEST)

    assert resp.status_code == 500
    assert resp.json()["error"] == "ConfigurationError"
    assert "Voice AI API Key" in resp.json()["detail"]
    assert len(services.registry) == 0
    assert services.telephony.placed == []


def test_invalid_number_returns_400(client, services):
    resp = client.post("/api/calls", json={**CALL_REQUEST, "target_number": "555-1234"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "ValidationError"
    assert len(services.registry) == 0


def test_provider_rejection_is_mapped_with_code(client, services):
    services.telephony.place_error = ProviderError(
        "Too many requests",
        provider="twilio",
        code=20429,
        provider_status=429,
    )

    resp = client.post("/api/calls", json=CALL_REQUEST)

    assert resp.status_code == 429
    assert resp.json() == {"detail": "Too many requests", "error": "ProviderError", "code": 20429}
    assert client.get("/api/relay/metrics").json()["errors_total"] == 1


def test_duplicate_webhook_is_acknowledged_without_side_effects(client, services):
    session_id = client.post("/api/calls", json=CALL_REQUEST).json()["session_id"]
    form = {"CallSid": "CA123", "CallStatus": "completed"}

    first = client.post("/api/twilio/status", data=form)
    second = client.post("/api/twilio/status", data=form)

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["applied"] is True
    assert second.json()["applied"] is False
    body = client.get(f"/api/calls/{session_id}/transcript").json()
    assert body["status"] == "completed"
    assert body["transcript"] == []
    assert client.get("/api/relay/metrics").json()["active_calls"] == 0


def test_status_callback_for_unknown_call_is_acknowledged(client):
    resp = client.post("/api/twilio/status", data={"CallSid": "CA-unknown", "CallStatus": "ringing"})
    assert resp.status_code == 200

    empty = client.post("/api/twilio/status", data={})
    assert empty.status_code == 200


def test_unknown_transcript_returns_404(client):
    resp = client.get("/api/calls/never-created/transcript")
    assert resp.status_code == 404
    assert resp.json()["error"] == "SessionNotFoundError"


def test_terminate_then_terminate_again(client, services):
    session_id = client.post("/api/calls", json=CALL_REQUEST).json()["session_id"]
    client.post("/api/twilio/status", data={"CallSid": "CA123", "CallStatus": "in-progress"})

    first = client.post(f"/api/calls/{session_id}/terminate")
    second = client.post(f"/api/calls/{session_id}/terminate")

    assert first.status_code == 200
    assert first.json()["status"] == "completed"
    assert first.json()["already_ended"] is False
    assert second.status_code == 200
    assert second.json()["already_ended"] is True
    assert services.telephony.ended == [("CA123", "completed")]


def test_terminate_timeout_returns_504(client, services):
    services.telephony.end_delay = 2.0
    session_id = client.post("/api/calls", json=CALL_REQUEST).json()["session_id"]

    resp = client.post(f"/api/calls/{session_id}/terminate")

    assert resp.status_code == 504
    assert resp.json()["error"] == "TerminationTimedOutError"


def test_terminate_unknown_call_returns_404(client):
    assert client.post("/api/calls/nope/terminate").status_code == 404


def test_api_key_guards_call_endpoints(client, services, monkeypatch):
    from config.settings import get_settings

    monkeypatch.setattr(get_settings(), "call_api_key", "s3cret")

    denied = client.post("/api/calls", json=CALL_REQUEST)
    allowed = client.post("/api/calls", json=CALL_REQUEST, headers={"X-API-Key": "s3cret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert len(services.telephony.placed) == 1


def test_health_and_metrics(client):
    client.post("/api/calls", json=CALL_REQUEST)

    health = client.get("/api/health")
    metrics = client.get("/api/relay/metrics")

    assert health.status_code == 200
    assert health.json() == {"status": "ok", "sessions": 1, "active_bridges": 0}
    assert metrics.json() == {"calls_total": 1, "errors_total": 0, "active_calls": 1, "reconnects_total": 0}
