"""In-process state for live conversations and calls.

Design
------
* ``SessionStore`` / ``CallRegistry`` are small protocols so a durable
  backend can replace the in-memory maps without touching the orchestrator.
* ``InMemorySessionStore`` hands out **deep copies** and stamps a monotonic
  ``version`` on every save.  A ``put`` carrying a stale ``expected_version``
  is rejected with :class:`StaleSessionError`, so two turns racing on the same
  session cannot silently overwrite each other's context flags.
* ``TurnRecorder`` is the optional persistence hook for analytics.  Recording
  is best-effort: a recorder failure is logged and the conversation goes on.
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from agentdesk.models import CallState, ConversationSession, Turn

logger = logging.getLogger(__name__)


class StaleSessionError(Exception):
    """Raised when a session was modified by someone else since it was read."""

    def __init__(self, session_id: str, expected: int, actual: int):
        self.session_id = session_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Session {session_id} is at version {actual}, expected {expected}"
        )


# ── Sessions ─────────────────────────────────────────────────────────


class SessionStore(Protocol):
    def get(self, session_id: str) -> ConversationSession | None:
        ...

    def put(self, session: ConversationSession, expected_version: int | None = None) -> ConversationSession:
        ...

    def delete(self, session_id: str) -> bool:
        ...

    def expire(self, max_idle: timedelta) -> int:
        ...


class InMemorySessionStore:
    """Thread-safe session map with optimistic concurrency control."""

    def __init__(self) -> None:
        self._sessions: dict[str, ConversationSession] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> ConversationSession | None:
        with self._lock:
            stored = self._sessions.get(session_id)
            return copy.deepcopy(stored) if stored is not None else None

    def put(self, session: ConversationSession, expected_version: int | None = None) -> ConversationSession:
        """Save *session*.

        When *expected_version* is given the save only succeeds if the stored
        copy is still at that version.  On success ``session.version`` is
        bumped in place and the saved copy is returned.
        """
        with self._lock:
            current = self._sessions.get(session.session_id)
            if expected_version is not None:
                actual = current.version if current is not None else 0
                if actual != expected_version:
                    raise StaleSessionError(session.session_id, expected_version, actual)
            session.version = (current.version if current is not None else 0) + 1
            self._sessions[session.session_id] = copy.deepcopy(session)
            return session

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def expire(self, max_idle: timedelta) -> int:
        """Drop sessions idle for longer than *max_idle*.  Returns count removed."""
        cutoff = datetime.now(UTC) - max_idle
        with self._lock:
            stale = [sid for sid, s in self._sessions.items() if s.updated_at < cutoff]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.info("Expired %d idle session(s)", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)


# ── Calls ────────────────────────────────────────────────────────────


class CallRegistry(Protocol):
    def get(self, call_id: str) -> CallState | None:
        ...

    def get_by_sid(self, call_sid: str) -> CallState | None:
        ...

    def put(self, state: CallState) -> None:
        ...

    def attach_sid(self, call_id: str, call_sid: str) -> CallState | None:
        ...

    def delete(self, call_id: str) -> bool:
        ...


class InMemoryCallRegistry:
    """Call states keyed by our call id, with a secondary Twilio CallSid index."""

    def __init__(self) -> None:
        self._calls: dict[str, CallState] = {}
        self._by_sid: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, call_id: str) -> CallState | None:
        with self._lock:
            state = self._calls.get(call_id)
            return copy.deepcopy(state) if state is not None else None

    def get_by_sid(self, call_sid: str) -> CallState | None:
        with self._lock:
            call_id = self._by_sid.get(call_sid)
            state = self._calls.get(call_id) if call_id else None
            return copy.deepcopy(state) if state is not None else None

    def put(self, state: CallState) -> None:
        with self._lock:
            self._calls[state.call_id] = copy.deepcopy(state)
            if state.call_sid:
                self._by_sid[state.call_sid] = state.call_id

    def attach_sid(self, call_id: str, call_sid: str) -> CallState | None:
        """Record the provider's CallSid on the stored state, leaving its status alone."""
        with self._lock:
            state = self._calls.get(call_id)
            if state is None:
                return None
            state.call_sid = call_sid
            state.updated_at = datetime.now(UTC)
            self._by_sid[call_sid] = call_id
            return copy.deepcopy(state)

    def delete(self, call_id: str) -> bool:
        with self._lock:
            state = self._calls.pop(call_id, None)
            if state is not None and state.call_sid:
                self._by_sid.pop(state.call_sid, None)
            return state is not None


# ── Best-effort persistence ──────────────────────────────────────────


class TurnRecorder(Protocol):
    def record_turn(self, session_id: str, turn: Turn) -> None:
        ...

    def record_call_event(self, call_id: str, event: str, data: dict[str, Any]) -> None:
        ...


class NullRecorder:
    """Used when no persistence layer is connected."""

    def record_turn(self, session_id: str, turn: Turn) -> None:
        return None

    def record_call_event(self, call_id: str, event: str, data: dict[str, Any]) -> None:
        return None


class SafeRecorder:
    """Wraps a recorder so that its failures never reach the conversation."""

    def __init__(self, inner: TurnRecorder | None = None) -> None:
        self._inner = inner or NullRecorder()

    def record_turn(self, session_id: str, turn: Turn) -> None:
        try:
            self._inner.record_turn(session_id, turn)
        except Exception as exc:
            logger.warning("Failed to record turn for %s: %s", session_id, exc)

    def record_call_event(self, call_id: str, event: str, data: dict[str, Any]) -> None:
        try:
            self._inner.record_call_event(call_id, event, data)
        except Exception as exc:
            logger.warning("Failed to record %s for call %s: %s", event, call_id, exc)
