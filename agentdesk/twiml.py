"""TwiML (Twilio voice markup) for the webhook responses.

Every builder goes through :func:`render`, which turns *any* failure while
building markup into the fixed technical-difficulty response, so the caller
always hears an apology and a clean hang-up instead of dead air.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from twilio.twiml.voice_response import VoiceResponse

logger = logging.getLogger(__name__)

VOICE = "Polly.Joanna"
GATHER_TIMEOUT_SECONDS = 10

DEFAULT_GREETING = "Hello! I'm here to help you book an appointment. Is now a good time to talk?"
NO_SPEECH_PROMPT = "I didn't hear anything. Please try again or say goodbye to end the call."
REPROMPT_MESSAGE = "Sorry, I didn't catch that. Could you please repeat it?"
GOODBYE_MESSAGE = "Thank you for calling. Have a great day!"
TECHNICAL_DIFFICULTY_MESSAGE = (
    "I apologize, but we are experiencing technical difficulties. Please call back later."
)

# Static on purpose: it must not depend on the builder that just failed.
TECHNICAL_DIFFICULTY_TWIML = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    f'<Response><Say voice="{VOICE}">{TECHNICAL_DIFFICULTY_MESSAGE}</Say><Hangup /></Response>'
)


class MarkupKind(str, Enum):
    GREETING = "greeting"
    SPEAK_AND_GATHER = "speak-and-gather"
    PLAY_AND_BRANCH = "play-and-branch"
    REDIRECT = "redirect"
    HANGUP = "hangup"


def _gather(response: VoiceResponse, action_url: str, message: str | None = None) -> None:
    """Listen for speech and post it to *action_url*.

    The prompt is spoken inside the ``<Gather>`` so callers can barge in.
    When nothing is said the trailing ``<Redirect>`` hits the same webhook
    with no ``SpeechResult``, which triggers a re-prompt.
    """
    gather = response.gather(
        input="speech",
        action=action_url,
        method="POST",
        timeout=GATHER_TIMEOUT_SECONDS,
        speech_timeout="auto",
        speech_model="phone_call",
        enhanced=True,
        profanity_filter=False,
    )
    if message:
        gather.say(message, voice=VOICE)
    response.redirect(action_url, method="POST")


def _greeting(response: VoiceResponse, *, action_url: str, message: str | None = None) -> None:
    _gather(response, action_url, message or DEFAULT_GREETING)


def _speak_and_gather(response: VoiceResponse, *, action_url: str, message: str | None = None) -> None:
    _gather(response, action_url, message)


def _play_and_branch(
    response: VoiceResponse,
    *,
    audio_url: str,
    next_action: str = "gather",
    action_url: str | None = None,
) -> None:
    response.play(audio_url)
    if next_action == "gather":
        if not action_url:
            raise ValueError("play-and-branch with gather needs an action_url")
        _gather(response, action_url)
    elif next_action == "hangup":
        response.hangup()
    else:
        raise ValueError(f"Unknown next action: {next_action!r}")


def _redirect(response: VoiceResponse, *, url: str) -> None:
    response.redirect(url, method="POST")


def _hangup(response: VoiceResponse, *, message: str | None = None) -> None:
    if message:
        response.say(message, voice=VOICE)
    response.hangup()


_BUILDERS = {
    MarkupKind.GREETING: _greeting,
    MarkupKind.SPEAK_AND_GATHER: _speak_and_gather,
    MarkupKind.PLAY_AND_BRANCH: _play_and_branch,
    MarkupKind.REDIRECT: _redirect,
    MarkupKind.HANGUP: _hangup,
}


def render(kind: MarkupKind | str, **options: Any) -> str:
    """Build the TwiML document for *kind*; never raises."""
    try:
        response = VoiceResponse()
        _BUILDERS[MarkupKind(kind)](response, **options)
        return str(response)
    except Exception:
        logger.exception("Failed to build %s TwiML, using technical-difficulty fallback", kind)
        return TECHNICAL_DIFFICULTY_TWIML


# ── Shorthands used by the call lifecycle ───────────────────────────


def greeting(message: str | None, action_url: str) -> str:
    return render(MarkupKind.GREETING, message=message, action_url=action_url)


def speak_and_gather(message: str, action_url: str) -> str:
    return render(MarkupKind.SPEAK_AND_GATHER, message=message, action_url=action_url)


def reprompt(action_url: str, message: str = REPROMPT_MESSAGE) -> str:
    return render(MarkupKind.SPEAK_AND_GATHER, message=message, action_url=action_url)


def hangup(message: str | None = GOODBYE_MESSAGE) -> str:
    return render(MarkupKind.HANGUP, message=message)


def technical_difficulty() -> str:
    return TECHNICAL_DIFFICULTY_TWIML
