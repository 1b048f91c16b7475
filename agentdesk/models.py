"""Domain state shared by the orchestrator, the dispatch table and the call
lifecycle.

These are plain dataclasses (not pydantic models): they live in the session
store and are mutated on every turn, while the pydantic schemas in
``agentdesk.api.schemas`` describe only what crosses the HTTP boundary.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ── Conversation ─────────────────────────────────────────────────────


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    FUNCTION = "function"


class Channel(str, Enum):
    CHAT = "chat"
    VOICE = "voice"


class ConversationStep(str, Enum):
    GREETING = "greeting"
    AVAILABILITY_CHECK = "availability_check"
    BOOKING = "booking"
    ENDING = "ending"


@dataclass
class FunctionCallRecord:
    """A function call the model made, kept so history can be replayed."""

    name: str
    arguments: dict[str, Any]
    call_id: str


@dataclass
class Turn:
    role: TurnRole
    content: str
    timestamp: datetime = field(default_factory=_utcnow)
    function_call: FunctionCallRecord | None = None


@dataclass
class ConversationContext:
    """Informational flags inferred from what the customer has said.

    They are heuristic and never gate which functions are offered.
    """

    has_name: bool = False
    has_email: bool = False
    has_preferred_time: bool = False
    is_booking: bool = False
    current_step: ConversationStep = ConversationStep.GREETING


@dataclass(frozen=True)
class SchedulingCredentials:
    """Per-account Cal.com credentials supplied by the operator."""

    api_key: str
    event_type_id: str

    @property
    def is_complete(self) -> bool:
        return bool(self.api_key and self.event_type_id)


@dataclass
class SessionConfig:
    """Everything needed to start a conversation."""

    agent_prompt: str
    credentials: SchedulingCredentials | None = None
    channel: Channel = Channel.CHAT
    customer_name: str | None = None
    phone_number: str | None = None


@dataclass
class ConversationSession:
    session_id: str
    agent_prompt: str
    channel: Channel = Channel.CHAT
    credentials: SchedulingCredentials | None = None
    customer_name: str | None = None
    phone_number: str | None = None
    call_id: str | None = None
    turns: list[Turn] = field(default_factory=list)
    context: ConversationContext = field(default_factory=ConversationContext)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    # Bumped by the store on every successful save (compare-and-swap).
    version: int = 0

    @classmethod
    def from_config(cls, config: SessionConfig, session_id: str | None = None) -> ConversationSession:
        prefix = "voice" if config.channel is Channel.VOICE else "chat"
        return cls(
            session_id=session_id or f"{prefix}_{uuid.uuid4().hex}",
            agent_prompt=config.agent_prompt,
            channel=config.channel,
            credentials=config.credentials,
            customer_name=config.customer_name,
            phone_number=config.phone_number,
        )

    def add_turn(self, turn: Turn) -> None:
        self.turns.append(turn)
        self.updated_at = turn.timestamp


# ── Telephony ────────────────────────────────────────────────────────


class CallStatus(str, Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    ANSWERED = "answered"
    COMPLETED = "completed"
    BUSY = "busy"
    FAILED = "failed"
    NO_ANSWER = "no-answer"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_CALL_STATUSES


TERMINAL_CALL_STATUSES = frozenset(
    {CallStatus.COMPLETED, CallStatus.BUSY, CallStatus.FAILED, CallStatus.NO_ANSWER}
)


@dataclass
class CallState:
    call_id: str
    session_id: str
    phone_number: str
    status: CallStatus = CallStatus.INITIATED
    call_sid: str | None = None
    greeted: bool = False
    hangup_requested: bool = False
    started_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    ended_at: datetime | None = None
    duration_seconds: int | None = None
