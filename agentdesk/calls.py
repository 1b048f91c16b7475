"""Telephony call lifecycle.

A call moves ``initiated → ringing → answered → completed | busy |
no-answer | failed``.  Only Twilio's status callbacks move it; the speech
webhook reads the status but never changes it.  A terminal status releases
the conversation session, and any later speech webhook for that call gets
a hang-up without the orchestrator being involved.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from urllib.parse import urlencode

from agentdesk import twiml
from agentdesk.agent import ConversationOrchestrator
from agentdesk.models import CallState, CallStatus, Channel, SessionConfig
from agentdesk.services.store import CallRegistry, SafeRecorder, StaleSessionError, TurnRecorder
from agentdesk.services.twilio_client import TelephonyResult, TwilioVoiceClient, mask_phone_number
from agentdesk.tools.functions import CallPlacement, VoiceCallRequest

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/voice/webhook"
STATUS_PATH = "/api/voice/status"

# Twilio reports a few statuses outside our lifecycle vocabulary.
_PROVIDER_STATUS_ALIASES = {
    "queued": CallStatus.INITIATED,
    "in-progress": CallStatus.ANSWERED,
    "canceled": CallStatus.FAILED,
}


def normalize_call_status(raw: str | None) -> CallStatus | None:
    """Map a provider status string onto ``CallStatus``; ``None`` if unknown."""
    if not raw:
        return None
    value = raw.strip().lower().replace("_", "-")
    if value in _PROVIDER_STATUS_ALIASES:
        return _PROVIDER_STATUS_ALIASES[value]
    try:
        return CallStatus(value)
    except ValueError:
        return None


class CallLifecycle:
    """Drives voice conversations from Twilio webhooks."""

    def __init__(
        self,
        orchestrator: ConversationOrchestrator,
        telephony: TwilioVoiceClient,
        registry: CallRegistry,
        public_base_url: str,
        *,
        recorder: TurnRecorder | None = None,
    ):
        self._orchestrator = orchestrator
        self._telephony = telephony
        self._registry = registry
        self._base_url = public_base_url.rstrip("/")
        self._recorder = SafeRecorder(recorder)

    # ── URLs ─────────────────────────────────────────────────────────

    def webhook_url(self, call_id: str) -> str:
        return f"{self._base_url}{WEBHOOK_PATH}?{urlencode({'callId': call_id})}"

    def status_url(self, call_id: str) -> str:
        return f"{self._base_url}{STATUS_PATH}?{urlencode({'callId': call_id})}"

    # ── Placing calls ────────────────────────────────────────────────

    def place_call(self, request: VoiceCallRequest) -> CallPlacement:
        """Start a voice session, generate its greeting and dial the customer.

        On any failure to dial, the session and the call state are released
        again.  Greeting (language-model) errors propagate.
        """
        if not self._telephony.is_configured:
            return CallPlacement(success=False, error="Voice calling is not configured.")

        call_id = f"call_{uuid.uuid4().hex}"
        greeting = self._orchestrator.start_conversation(
            SessionConfig(
                agent_prompt=request.agent_prompt,
                credentials=request.credentials,
                channel=Channel.VOICE,
                customer_name=request.customer_name,
                phone_number=request.phone_number,
            )
        )
        session_id = greeting.session_id
        session = self._orchestrator.get_session(session_id)
        if session is not None:
            session.call_id = call_id
            self._orchestrator.store.put(session, expected_version=session.version)

        state = CallState(call_id=call_id, session_id=session_id, phone_number=request.phone_number)
        self._registry.put(state)

        try:
            result = self._telephony.place_call(
                request.phone_number,
                webhook_url=self.webhook_url(call_id),
                status_callback_url=self.status_url(call_id),
            )
        except Exception as exc:
            logger.exception("Dialing %s for call %s raised", mask_phone_number(request.phone_number), call_id)
            result = TelephonyResult(success=False, error=str(exc) or type(exc).__name__)

        if not result.success:
            logger.warning("Call %s to %s was not placed: %s", call_id, mask_phone_number(request.phone_number), result.error)
            self._registry.delete(call_id)
            self._orchestrator.end_session(session_id)
            return CallPlacement(success=False, call_id=call_id, error=result.error)

        # Status webhooks may already have moved the call on; only the sid is written here.
        self._registry.attach_sid(call_id, result.call_sid)
        self._recorder.record_call_event(
            call_id, "initiated",
            {"call_sid": result.call_sid, "session_id": session_id, "to": mask_phone_number(request.phone_number)},
        )
        logger.info("Call %s (%s) placed for session %s", call_id, result.call_sid, session_id)
        return CallPlacement(success=True, call_id=call_id, call_sid=result.call_sid)

    # ── Status webhook ───────────────────────────────────────────────

    def _find(self, call_id: str | None, call_sid: str | None) -> CallState | None:
        state = self._registry.get(call_id) if call_id else None
        if state is None and call_sid:
            state = self._registry.get_by_sid(call_sid)
        return state

    def handle_status_webhook(
        self,
        call_id: str | None,
        status: str | None,
        *,
        call_sid: str | None = None,
        duration_seconds: int | None = None,
    ) -> CallState | None:
        """Apply a provider status report.  Returns the updated state."""
        state = self._find(call_id, call_sid)
        if state is None:
            logger.warning("Status %r for unknown call %s / %s", status, call_id, call_sid)
            return None

        new_status = normalize_call_status(status)
        if new_status is None:
            logger.warning("Ignoring unknown status %r for call %s", status, state.call_id)
            return state
        if state.status.is_terminal:
            logger.debug("Call %s already %s; ignoring %s", state.call_id, state.status.value, new_status.value)
            return state

        now = datetime.now(UTC)
        state.status = new_status
        state.updated_at = now
        if call_sid and not state.call_sid:
            state.call_sid = call_sid
        if new_status.is_terminal:
            state.ended_at = now
            state.duration_seconds = duration_seconds
        self._registry.put(state)

        self._recorder.record_call_event(
            state.call_id, new_status.value, {"duration_seconds": duration_seconds},
        )
        logger.info("Call %s → %s", state.call_id, new_status.value)

        if new_status.is_terminal:
            self._orchestrator.end_session(state.session_id)
        return state

    # ── Speech webhook ───────────────────────────────────────────────

    def handle_speech_webhook(
        self,
        call_id: str | None,
        speech: str | None,
        call_status: str | None = None,
        *,
        call_sid: str | None = None,
    ) -> str:
        """Return the TwiML for the next step of the call.  Never raises."""
        try:
            return self._speech_turn(call_id, speech, call_status, call_sid)
        except Exception:
            logger.exception("Speech webhook failed for call %s", call_id)
            return twiml.technical_difficulty()

    def _speech_turn(
        self, call_id: str | None, speech: str | None, call_status: str | None, call_sid: str | None,
    ) -> str:
        state = self._find(call_id, call_sid)
        if state is None:
            logger.warning("Speech webhook for unknown call %s", call_id)
            return twiml.hangup()

        reported = normalize_call_status(call_status)
        if state.status.is_terminal or (reported is not None and reported.is_terminal):
            self._orchestrator.end_session(state.session_id)
            return twiml.hangup()

        action_url = self.webhook_url(state.call_id)
        session = self._orchestrator.get_session(state.session_id)
        if session is None:
            logger.warning("Call %s has no live session", state.call_id)
            return twiml.hangup()

        text = (speech or "").strip()
        if not text:
            if not state.greeted:
                state.greeted = True
                self._registry.put(state)
                greeting = session.turns[0].content if session.turns else None
                return twiml.greeting(greeting, action_url)
            return twiml.reprompt(action_url, twiml.NO_SPEECH_PROMPT)

        if not state.greeted:
            state.greeted = True
            self._registry.put(state)

        try:
            result = self._orchestrator.handle_inbound_utterance(state.session_id, text)
        except StaleSessionError:
            logger.warning("Overlapping turns on call %s; asking the caller to repeat", state.call_id)
            return twiml.reprompt(action_url)

        if result.end_conversation:
            state.hangup_requested = True
            self._registry.put(state)
            return twiml.hangup(result.reply)
        return twiml.speak_and_gather(result.reply, action_url)

    # ── Queries ──────────────────────────────────────────────────────

    def get_call_state(self, call_id: str) -> CallState | None:
        return self._registry.get(call_id)
