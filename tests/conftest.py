"""Shared test fixtures for the AgentDesk test suite."""

from __future__ import annotations

import os

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    Twilio is left unconfigured; tests that need telephony build their own
    client.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    for name in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER", "AWS_EXECUTION_ENV"):
        os.environ.pop(name, None)


@pytest.fixture
def credentials():
    from agentdesk.models import SchedulingCredentials

    return SchedulingCredentials(api_key="cal_test_key", event_type_id="42")


@pytest.fixture
def chat_session(credentials):
    from agentdesk.models import ConversationSession, SessionConfig

    return ConversationSession.from_config(
        SessionConfig(agent_prompt="You are Anna.", credentials=credentials),
    )
