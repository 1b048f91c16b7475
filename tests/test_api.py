"""Tests for the FastAPI endpoints."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from agentdesk import twiml
from agentdesk.agent import SessionNotFoundError, TurnResult
from agentdesk.models import CallState, CallStatus
from agentdesk.server import app
from agentdesk.services.store import StaleSessionError
from agentdesk.tools.functions import FunctionResult


@pytest.fixture
def mock_runtime():
    """Create a mock runtime and attach it to app state (mirrors the lifespan)."""
    runtime = MagicMock()
    runtime.telephony_configured = False
    runtime.orchestrator.start_conversation.return_value = TurnResult(
        session_id="chat_abc", reply="Hello! I'm Anna. How can I help you?",
    )
    runtime.orchestrator.handle_inbound_utterance.return_value = TurnResult(
        session_id="chat_abc", reply="Sure, what day works for you?",
    )

    # Attach to app state the same way the lifespan does
    app.state.runtime = runtime
    yield runtime
    # Clean up
    app.state.runtime = None


@pytest.fixture
def client(mock_runtime):
    """FastAPI test client with the mock runtime wired up."""
    return TestClient(app)


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "agentdesk"
        assert data["telephony_configured"] is False

    def test_reports_telephony(self, client, mock_runtime):
        mock_runtime.telephony_configured = True
        assert client.get("/api/health").json()["telephony_configured"] is True


class TestSessionEndpoint:
    def test_start_session_returns_greeting(self, client, mock_runtime):
        response = client.post(
            "/api/sessions",
            json={
                "agent_prompt": "You are Anna.",
                "credentials": {"api_key": "cal_key", "event_type_id": "42"},
            },
        )
        assert response.status_code == 200
        assert response.json() == {
            "session_id": "chat_abc",
            "greeting": "Hello! I'm Anna. How can I help you?",
        }
        config = mock_runtime.orchestrator.start_conversation.call_args.args[0]
        assert config.agent_prompt == "You are Anna."
        assert config.credentials.event_type_id == "42"
        mock_runtime.expire_idle_sessions.assert_called_once()

    def test_default_prompt_without_credentials(self, client, mock_runtime):
        client.post("/api/sessions", json={})
        config = mock_runtime.orchestrator.start_conversation.call_args.args[0]
        assert config.agent_prompt
        assert config.credentials is None

    def test_model_error_returns_500(self, client, mock_runtime):
        mock_runtime.orchestrator.start_conversation.side_effect = RuntimeError("overloaded")
        response = client.post("/api/sessions", json={})
        assert response.status_code == 500
        assert "overloaded" not in response.text


class TestChatEndpoint:
    def test_chat_returns_response(self, client, mock_runtime):
        response = client.post(
            "/api/chat",
            json={"message": "Hello!", "session_id": "chat_abc"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["reply"] == "Sure, what day works for you?"
        assert data["session_id"] == "chat_abc"
        assert data["function_name"] is None
        assert data["end_conversation"] is False
        mock_runtime.orchestrator.handle_inbound_utterance.assert_called_once_with("chat_abc", "Hello!")

    def test_reports_function_outcome(self, client, mock_runtime):
        mock_runtime.orchestrator.handle_inbound_utterance.return_value = TurnResult(
            session_id="chat_abc",
            reply="Goodbye!",
            function_name="end_conversation",
            function_result=FunctionResult(True, "Goodbye!", {"end_conversation": True}),
        )
        data = client.post("/api/chat", json={"message": "bye", "session_id": "chat_abc"}).json()
        assert data["function_name"] == "end_conversation"
        assert data["function_success"] is True
        assert data["end_conversation"] is True

    def test_unknown_session_returns_404(self, client, mock_runtime):
        mock_runtime.orchestrator.handle_inbound_utterance.side_effect = SessionNotFoundError("nope")
        response = client.post("/api/chat", json={"message": "Hi", "session_id": "nope"})
        assert response.status_code == 404

    def test_concurrent_turn_returns_409(self, client, mock_runtime):
        mock_runtime.orchestrator.handle_inbound_utterance.side_effect = StaleSessionError("chat_abc", 1, 2)
        response = client.post("/api/chat", json={"message": "Hi", "session_id": "chat_abc"})
        assert response.status_code == 409

    def test_chat_handles_agent_error(self, client, mock_runtime):
        mock_runtime.orchestrator.handle_inbound_utterance.side_effect = RuntimeError("LLM down")
        response = client.post("/api/chat", json={"message": "Hello!", "session_id": "chat_abc"})
        assert response.status_code == 500
        assert "internal error" in response.json()["detail"].lower()

    def test_chat_rejects_empty_message(self, client):
        response = client.post("/api/chat", json={"message": "", "session_id": "chat_abc"})
        assert response.status_code == 422

    def test_chat_rejects_missing_session_id(self, client):
        response = client.post("/api/chat", json={"message": "Hello!"})
        assert response.status_code == 422

    def test_runtime_not_ready_returns_503(self, client):
        app.state.runtime = None
        response = client.post("/api/chat", json={"message": "Hi", "session_id": "chat_abc"})
        assert response.status_code == 503


class TestVoiceEndpoints:
    def test_place_call_goes_through_the_function(self, client, mock_runtime):
        mock_runtime.dispatcher.dispatch.return_value = FunctionResult(
            True, "Great! I'm calling Jane at +15551234567.", {"call_id": "call_1", "call_sid": "CA1"},
        )
        response = client.post(
            "/api/voice/calls",
            json={"phone_number": "+15551234567", "customer_name": "Jane"},
        )
        assert response.status_code == 200
        assert response.json()["call_id"] == "call_1"
        name, arguments, _ = mock_runtime.dispatcher.dispatch.call_args.args
        assert name == "initiate_voice_call"
        assert arguments["phoneNumber"] == "+15551234567"
        assert arguments["customerName"] == "Jane"

    def test_place_call_reports_unconfigured_telephony(self, client, mock_runtime):
        mock_runtime.dispatcher.dispatch.return_value = FunctionResult(
            False, "Voice calling is not configured, so I can't place a call right now.",
            {"error": "telephony_not_configured"},
        )
        data = client.post("/api/voice/calls", json={"phone_number": "+15551234567"}).json()
        assert data["success"] is False
        assert data["call_id"] is None

    def test_webhook_returns_twiml(self, client, mock_runtime):
        mock_runtime.calls.handle_speech_webhook.return_value = twiml.hangup()
        response = client.post(
            "/api/voice/webhook?callId=call_1",
            data={"SpeechResult": "hello", "CallStatus": "in-progress", "CallSid": "CA1"},
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "<Hangup" in response.text
        mock_runtime.calls.handle_speech_webhook.assert_called_once_with(
            "call_1", "hello", "in-progress", call_sid="CA1",
        )

    def test_webhook_without_runtime_apologizes(self, client):
        app.state.runtime = None
        response = client.post("/api/voice/webhook?callId=call_1", data={})
        assert response.status_code == 200
        assert response.text == twiml.TECHNICAL_DIFFICULTY_TWIML

    def test_status_callback(self, client, mock_runtime):
        response = client.post(
            "/api/voice/status?callId=call_1",
            data={"CallStatus": "completed", "CallSid": "CA1", "CallDuration": "42"},
        )
        assert response.status_code == 204
        mock_runtime.calls.handle_status_webhook.assert_called_once_with(
            "call_1", "completed", call_sid="CA1", duration_seconds=42,
        )

    def test_get_call_masks_phone_number(self, client, mock_runtime):
        now = datetime.now(UTC)
        mock_runtime.calls.get_call_state.return_value = CallState(
            call_id="call_1", session_id="voice_1", phone_number="+15551234567",
            status=CallStatus.RINGING, call_sid="CA1", started_at=now, updated_at=now,
        )
        data = client.get("/api/voice/calls/call_1").json()
        assert data["status"] == "ringing"
        assert data["phone_number"] == "+*******4567"

    def test_get_unknown_call_returns_404(self, client, mock_runtime):
        mock_runtime.calls.get_call_state.return_value = None
        assert client.get("/api/voice/calls/call_x").status_code == 404


class TestRequestId:
    def test_echoes_request_id(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_generates_request_id(self, client):
        response = client.get("/api/health")
        assert response.headers["X-Request-ID"]
