"""Twilio client for placing outbound calls.

Only the call-control side lives here; what the caller hears is produced by
``agentdesk.twiml`` and served from the webhook routes.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass

import requests
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from agentdesk.config import TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER

logger = logging.getLogger(__name__)

RING_TIMEOUT_SECONDS = 30
STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


def to_e164(number: str | None) -> str | None:
    """Normalize a phone number to E.164; bare 10-digit numbers are taken as US."""
    if not number:
        return None
    number = number.strip()
    digits = re.sub(r"\D", "", number)
    if number.startswith("+"):
        return f"+{digits}" if 8 <= len(digits) <= 15 else None
    if len(digits) == 10:
        return "+1" + digits
    if len(digits) == 11 and digits.startswith("1"):
        return "+" + digits
    return None


def mask_phone_number(number: str | None) -> str | None:
    """Hide every digit except the last four."""
    if not number:
        return number
    digits = re.sub(r"\D", "", number)
    if len(digits) < 4:
        return number
    return re.sub(r"\d(?=(?:\D*\d){4})", "*", number)


@dataclass(frozen=True)
class TelephonyResult:
    success: bool
    call_sid: str | None = None
    status: str | None = None
    error: str | None = None


class TwilioVoiceClient:
    """Places calls through the Twilio REST API.

    The client is considered *configured* only when the account SID, the auth
    token and the caller-id number are all present.
    """

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        *,
        client: Client | None = None,
    ):
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._client = client
        if self._client is None and self.is_configured:
            self._client = Client(account_sid, auth_token)

    @property
    def is_configured(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    def place_call(
        self,
        to: str,
        *,
        webhook_url: str,
        status_callback_url: str,
    ) -> TelephonyResult:
        """Dial *to*; Twilio fetches TwiML from *webhook_url* once answered."""
        if not self.is_configured or self._client is None:
            return TelephonyResult(success=False, error="Twilio is not configured")

        try:
            call = self._client.calls.create(
                to=to,
                from_=self._from_number,
                url=webhook_url,
                method="POST",
                status_callback=status_callback_url,
                status_callback_event=STATUS_CALLBACK_EVENTS,
                status_callback_method="POST",
                timeout=RING_TIMEOUT_SECONDS,
            )
        except (TwilioException, requests.RequestException) as exc:
            logger.error("Failed to place call to %s: %s", mask_phone_number(to), exc)
            return TelephonyResult(success=False, error=str(exc))

        logger.info("Placed call %s to %s (%s)", call.sid, mask_phone_number(to), call.status)
        return TelephonyResult(success=True, call_sid=call.sid, status=call.status)


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: TwilioVoiceClient | None = None
_client_lock = threading.Lock()


def get_twilio_client() -> TwilioVoiceClient:
    """Return a TwilioVoiceClient built from the environment configuration."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = TwilioVoiceClient(
                    TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER,
                )
                if not _client.is_configured:
                    logger.warning("Twilio configuration incomplete; voice calling disabled")
    return _client
