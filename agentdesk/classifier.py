"""Heuristic context-flag classification of customer utterances.

The flags are a rough read of where the conversation is; they are never
used to decide which functions the model may call.
"""

from __future__ import annotations

import re
from typing import Protocol

from agentdesk.models import ConversationContext, ConversationStep

_NAME_RE = re.compile(r"\b(?:my name is|i'm|i am|this is|call me)\b", re.IGNORECASE)
_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_TIME_RE = re.compile(
    r"\b(?:tomorrow|today|morning|afternoon|evening)\b"
    r"|\d{1,2}:\d{2}"
    r"|\b\d{1,2}\s*(?:am|pm|a\.m\.|p\.m\.)",
    re.IGNORECASE,
)
_CONFIRM_RE = re.compile(
    r"\b(?:yes|book it|confirm|proceed|go ahead|that works)\b", re.IGNORECASE,
)


class ContextClassifier(Protocol):
    def update(self, context: ConversationContext, utterance: str) -> ConversationContext:
        ...


class KeywordContextClassifier:
    """Regex-based classifier.

    Flags only ever switch on.  Temporal phrasing moves the conversation to
    the availability-check step, confirmation phrasing to the booking step;
    when both appear in one utterance the booking step wins.
    """

    def update(self, context: ConversationContext, utterance: str) -> ConversationContext:
        if not utterance:
            return context

        if _NAME_RE.search(utterance):
            context.has_name = True
        if _EMAIL_RE.search(utterance):
            context.has_email = True
        if _TIME_RE.search(utterance):
            context.has_preferred_time = True
            if context.current_step is not ConversationStep.ENDING:
                context.current_step = ConversationStep.AVAILABILITY_CHECK
        if _CONFIRM_RE.search(utterance):
            context.is_booking = True
            if context.current_step is not ConversationStep.ENDING:
                context.current_step = ConversationStep.BOOKING
        return context
