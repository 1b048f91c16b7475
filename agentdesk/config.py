"""Centralized configuration for the AgentDesk booking agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/agentdesk/<VARIABLE_NAME>``.
Telephony settings are optional: when any of the three Twilio values is
missing the agent simply never offers voice calling.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 lazy import, only needed on AWS

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/agentdesk/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value
    return default


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_env(name)
    if value:
        return value
    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /agentdesk/{name} (AWS)."
    )


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
MODEL_TEMPERATURE: float = float(os.getenv("MODEL_TEMPERATURE", "0.7"))
MAX_TOKENS: int = int(os.getenv("MAX_TOKENS", "1000"))

DEFAULT_AGENT_PROMPT: str = os.getenv(
    "DEFAULT_AGENT_PROMPT",
    "You are Anna, a friendly scheduling assistant. Help customers find a "
    "convenient time and book an appointment. Collect their name and email "
    "before booking.",
)

# ── Cal.com ─────────────────────────────────────────────────────────
CALCOM_BASE_URL: str = os.getenv("CALCOM_BASE_URL", "https://api.cal.com/v1")
# Only used by the CLI; HTTP callers pass credentials per session.
CALCOM_API_KEY: str | None = _optional_env("CALCOM_API_KEY")
CALCOM_EVENT_TYPE_ID: str | None = _optional_env("CALCOM_EVENT_TYPE_ID")

# ── Twilio ──────────────────────────────────────────────────────────
TWILIO_ACCOUNT_SID: str | None = _optional_env("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN: str | None = _optional_env("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER: str | None = _optional_env("TWILIO_PHONE_NUMBER")
PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

# ── Sessions ────────────────────────────────────────────────────────
SESSION_TTL_SECONDS: int = int(os.getenv("SESSION_TTL_SECONDS", "3600"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
