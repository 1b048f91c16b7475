"""Tests for the in-memory session store, call registry and recorders."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from agentdesk.models import CallState, CallStatus, ConversationSession, SessionConfig, Turn, TurnRole
from agentdesk.services.store import (
    InMemoryCallRegistry,
    InMemorySessionStore,
    SafeRecorder,
    StaleSessionError,
)


def _session(session_id: str = "chat_1") -> ConversationSession:
    return ConversationSession.from_config(SessionConfig(agent_prompt="hi"), session_id=session_id)


# ── Sessions ─────────────────────────────────────────────────────────


class TestInMemorySessionStore:
    def test_get_returns_a_copy(self):
        store = InMemorySessionStore()
        store.put(_session())

        copy = store.get("chat_1")
        copy.add_turn(Turn(role=TurnRole.USER, content="hello"))

        assert store.get("chat_1").turns == []

    def test_unknown_session(self):
        assert InMemorySessionStore().get("nope") is None

    def test_put_bumps_version(self):
        store = InMemorySessionStore()
        session = _session()
        store.put(session)
        assert session.version == 1
        store.put(session, expected_version=1)
        assert session.version == 2
        assert store.get("chat_1").version == 2

    def test_stale_put_is_rejected(self):
        store = InMemorySessionStore()
        store.put(_session())
        first, second = store.get("chat_1"), store.get("chat_1")

        store.put(first, expected_version=1)
        with pytest.raises(StaleSessionError) as exc_info:
            store.put(second, expected_version=1)

        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 2

    def test_delete(self):
        store = InMemorySessionStore()
        store.put(_session())
        assert store.delete("chat_1") is True
        assert store.delete("chat_1") is False
        assert len(store) == 0

    def test_expire_drops_idle_sessions(self):
        store = InMemorySessionStore()
        idle = _session("chat_idle")
        idle.updated_at = datetime.now(UTC) - timedelta(hours=2)
        store.put(idle)
        store.put(_session("chat_active"))

        assert store.expire(timedelta(hours=1)) == 1
        assert store.get("chat_idle") is None
        assert store.get("chat_active") is not None


# ── Calls ────────────────────────────────────────────────────────────


class TestInMemoryCallRegistry:
    def test_lookup_by_call_sid(self):
        registry = InMemoryCallRegistry()
        registry.put(CallState(call_id="call_1", session_id="voice_1", phone_number="+15551234567"))
        assert registry.get_by_sid("CA1") is None

        state = registry.get("call_1")
        state.call_sid = "CA1"
        state.status = CallStatus.RINGING
        registry.put(state)

        assert registry.get_by_sid("CA1").status is CallStatus.RINGING

    def test_delete_drops_sid_index(self):
        registry = InMemoryCallRegistry()
        registry.put(CallState(call_id="call_1", session_id="voice_1", phone_number="+1", call_sid="CA1"))
        assert registry.delete("call_1") is True
        assert registry.get_by_sid("CA1") is None
        assert registry.delete("call_1") is False

    def test_attach_sid_leaves_status_alone(self):
        registry = InMemoryCallRegistry()
        registry.put(CallState(call_id="call_1", session_id="voice_1", phone_number="+1"))
        state = registry.get("call_1")
        state.status = CallStatus.FAILED
        registry.put(state)

        attached = registry.attach_sid("call_1", "CA1")

        assert attached.call_sid == "CA1"
        assert attached.status is CallStatus.FAILED
        assert registry.get_by_sid("CA1").status is CallStatus.FAILED
        assert registry.attach_sid("call_missing", "CA2") is None
        assert registry.get_by_sid("CA2") is None


# ── Recorders ────────────────────────────────────────────────────────


class TestSafeRecorder:
    def test_forwards_to_inner(self):
        inner = MagicMock()
        recorder = SafeRecorder(inner)
        turn = Turn(role=TurnRole.USER, content="hi")
        recorder.record_turn("chat_1", turn)
        recorder.record_call_event("call_1", "status", {"status": "ringing"})

        inner.record_turn.assert_called_once_with("chat_1", turn)
        inner.record_call_event.assert_called_once_with("call_1", "status", {"status": "ringing"})

    def test_swallows_inner_failures(self):
        inner = MagicMock()
        inner.record_turn.side_effect = ConnectionError("db down")
        inner.record_call_event.side_effect = ConnectionError("db down")
        recorder = SafeRecorder(inner)

        recorder.record_turn("chat_1", Turn(role=TurnRole.USER, content="hi"))
        recorder.record_call_event("call_1", "status", {})

    def test_defaults_to_null_recorder(self):
        SafeRecorder().record_turn("chat_1", Turn(role=TurnRole.USER, content="hi"))
