"""Tests for TwiML rendering."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from unittest.mock import patch

from agentdesk import twiml
from agentdesk.twiml import MarkupKind, render

ACTION = "https://agent.example.com/api/voice/webhook?callId=call_1"


def _parse(markup: str) -> ET.Element:
    return ET.fromstring(markup.encode())


class TestGather:
    def test_greeting_speaks_inside_gather(self):
        root = _parse(twiml.greeting("Hi, this is Anna.", ACTION))

        gather = root.find("Gather")
        assert gather is not None
        assert gather.get("input") == "speech"
        assert gather.get("action") == ACTION
        assert gather.get("timeout") == "10"
        assert gather.get("speechTimeout") == "auto"
        assert gather.find("Say").text == "Hi, this is Anna."
        assert gather.find("Say").get("voice") == "Polly.Joanna"
        # no speech → same webhook again
        assert root.find("Redirect").text == ACTION

    def test_greeting_has_default_text(self):
        root = _parse(twiml.greeting(None, ACTION))
        assert root.find("Gather/Say").text == twiml.DEFAULT_GREETING

    def test_speak_and_gather(self):
        root = _parse(twiml.speak_and_gather("Tomorrow at 3 pm is free.", ACTION))
        assert root.find("Gather/Say").text == "Tomorrow at 3 pm is free."

    def test_reprompt(self):
        root = _parse(twiml.reprompt(ACTION))
        assert root.find("Gather/Say").text == twiml.REPROMPT_MESSAGE

    def test_message_is_escaped(self):
        markup = twiml.speak_and_gather("Dr. Smith & partners <3", ACTION)
        assert _parse(markup).find("Gather/Say").text == "Dr. Smith & partners <3"


class TestHangup:
    def test_says_goodbye_then_hangs_up(self):
        root = _parse(twiml.hangup())
        assert [child.tag for child in root] == ["Say", "Hangup"]
        assert root.find("Say").text == twiml.GOODBYE_MESSAGE

    def test_silent_hangup(self):
        root = _parse(twiml.hangup(None))
        assert [child.tag for child in root] == ["Hangup"]


class TestRender:
    def test_play_and_hangup(self):
        root = _parse(render(MarkupKind.PLAY_AND_BRANCH, audio_url="https://x/a.mp3", next_action="hangup"))
        assert [child.tag for child in root] == ["Play", "Hangup"]

    def test_play_and_gather(self):
        root = _parse(render("play-and-branch", audio_url="https://x/a.mp3", action_url=ACTION))
        assert [child.tag for child in root] == ["Play", "Gather", "Redirect"]

    def test_redirect(self):
        root = _parse(render(MarkupKind.REDIRECT, url=ACTION))
        assert root.find("Redirect").text == ACTION

    def test_bad_options_fall_back(self):
        markup = render(MarkupKind.PLAY_AND_BRANCH, audio_url="https://x/a.mp3", next_action="bogus")
        assert markup == twiml.TECHNICAL_DIFFICULTY_TWIML

    def test_unknown_kind_falls_back(self):
        assert render("dance") == twiml.TECHNICAL_DIFFICULTY_TWIML

    def test_builder_exception_falls_back(self):
        with patch.object(twiml, "_gather", side_effect=RuntimeError("boom")):
            assert twiml.greeting("Hi", ACTION) == twiml.TECHNICAL_DIFFICULTY_TWIML

    def test_fallback_is_valid_markup(self):
        root = _parse(twiml.technical_difficulty())
        assert root.find("Say").text == twiml.TECHNICAL_DIFFICULTY_MESSAGE
        assert root.find("Hangup") is not None
