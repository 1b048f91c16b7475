"""Wires the stores, provider clients, dispatcher, orchestrator and call
lifecycle into one object shared by the HTTP app and the CLI.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from agentdesk.agent import ConversationOrchestrator
from agentdesk.calls import CallLifecycle
from agentdesk.config import PUBLIC_BASE_URL, SESSION_TTL_SECONDS
from agentdesk.services.calcom_client import CalcomClient, get_calcom_client
from agentdesk.services.store import (
    CallRegistry,
    InMemoryCallRegistry,
    InMemorySessionStore,
    SessionStore,
    TurnRecorder,
)
from agentdesk.services.twilio_client import TwilioVoiceClient, get_twilio_client
from agentdesk.tools.functions import FunctionDispatcher

logger = logging.getLogger(__name__)


@dataclass
class AgentRuntime:
    orchestrator: ConversationOrchestrator
    calls: CallLifecycle
    dispatcher: FunctionDispatcher
    store: SessionStore
    registry: CallRegistry
    telephony: TwilioVoiceClient

    @property
    def telephony_configured(self) -> bool:
        return self.telephony.is_configured

    def expire_idle_sessions(self) -> int:
        return self.store.expire(timedelta(seconds=SESSION_TTL_SECONDS))


def build_runtime(
    *,
    scheduling: CalcomClient | None = None,
    telephony: TwilioVoiceClient | None = None,
    store: SessionStore | None = None,
    registry: CallRegistry | None = None,
    recorder: TurnRecorder | None = None,
    public_base_url: str = PUBLIC_BASE_URL,
) -> AgentRuntime:
    """Assemble the components; anything not passed in uses the defaults."""
    if scheduling is None:
        scheduling = get_calcom_client()
    if telephony is None:
        telephony = get_twilio_client()
    if store is None:
        store = InMemorySessionStore()
    if registry is None:
        registry = InMemoryCallRegistry()

    dispatcher = FunctionDispatcher(scheduling, telephony)
    orchestrator = ConversationOrchestrator(store, dispatcher, recorder=recorder)
    calls = CallLifecycle(orchestrator, telephony, registry, public_base_url, recorder=recorder)
    dispatcher.attach_voice_caller(calls)

    logger.info(
        "Runtime ready (telephony %s)", "configured" if telephony.is_configured else "disabled",
    )
    return AgentRuntime(
        orchestrator=orchestrator,
        calls=calls,
        dispatcher=dispatcher,
        store=store,
        registry=registry,
        telephony=telephony,
    )
