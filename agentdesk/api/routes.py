"""FastAPI route definitions for the AgentDesk API.

Chat endpoints speak JSON; the two ``/voice/webhook`` and ``/voice/status``
endpoints receive Twilio's form-encoded callbacks and answer with TwiML.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request, Response

from agentdesk import twiml
from agentdesk.agent import SessionNotFoundError
from agentdesk.api.schemas import (
    CallStateResponse,
    ChatRequest,
    ChatResponse,
    CredentialsPayload,
    HealthResponse,
    PlaceCallRequest,
    PlaceCallResponse,
    StartSessionRequest,
    StartSessionResponse,
)
from agentdesk.config import DEFAULT_AGENT_PROMPT
from agentdesk.models import ConversationSession, SchedulingCredentials, SessionConfig
from agentdesk.runtime import AgentRuntime
from agentdesk.services.store import StaleSessionError
from agentdesk.services.twilio_client import mask_phone_number
from agentdesk.tools.functions import FunctionName

logger = logging.getLogger(__name__)

router = APIRouter()

XML_MEDIA_TYPE = "application/xml"


def _get_runtime(request: Request) -> AgentRuntime:
    """Retrieve the runtime built during the FastAPI lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return runtime


def _credentials(payload: CredentialsPayload | None) -> SchedulingCredentials | None:
    if payload is None:
        return None
    return SchedulingCredentials(api_key=payload.api_key, event_type_id=payload.event_type_id)


def _twiml_response(body: str) -> Response:
    return Response(content=body, media_type=XML_MEDIA_TYPE)


def _optional_int(value) -> int | None:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


# ── Health ───────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(http_request: Request):
    """Health check endpoint."""
    runtime = getattr(http_request.app.state, "runtime", None)
    return HealthResponse(telephony_configured=bool(runtime and runtime.telephony_configured))


# ── Chat ─────────────────────────────────────────────────────────────


@router.post("/sessions", response_model=StartSessionResponse)
async def start_session(request: StartSessionRequest, http_request: Request):
    """Start a chat conversation and return the agent's greeting."""
    runtime = _get_runtime(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    config = SessionConfig(
        agent_prompt=request.agent_prompt or DEFAULT_AGENT_PROMPT,
        credentials=_credentials(request.credentials),
        customer_name=request.customer_name,
    )
    try:
        await asyncio.to_thread(runtime.expire_idle_sessions)
        result = await asyncio.to_thread(runtime.orchestrator.start_conversation, config)
    except Exception as e:
        logger.exception("[%s] Error starting conversation", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e
    return StartSessionResponse(session_id=result.session_id, greeting=result.reply)


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Send a customer message and get the agent's reply.

    The orchestrator call blocks on the model and the scheduling provider,
    so it runs in the default thread pool via ``asyncio.to_thread``.
    """
    runtime = _get_runtime(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        result = await asyncio.to_thread(
            runtime.orchestrator.handle_inbound_utterance,
            request.session_id,
            request.message,
        )
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail="Unknown session. Start a new one.") from e
    except StaleSessionError as e:
        raise HTTPException(
            status_code=409,
            detail="Another message for this session is still being processed.",
        ) from e
    except Exception as e:
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ChatResponse(
        reply=result.reply,
        session_id=result.session_id,
        function_name=result.function_name,
        function_success=result.function_result.success if result.function_result else None,
        end_conversation=result.end_conversation,
    )


# ── Voice ────────────────────────────────────────────────────────────


@router.post("/voice/calls", response_model=PlaceCallResponse)
async def place_call(request: PlaceCallRequest, http_request: Request):
    """Have the agent phone a customer.

    Goes through the same ``initiate_voice_call`` function the model uses,
    so validation and error messages are identical.
    """
    runtime = _get_runtime(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    caller_session = ConversationSession.from_config(
        SessionConfig(
            agent_prompt=request.agent_prompt or DEFAULT_AGENT_PROMPT,
            credentials=_credentials(request.credentials),
        )
    )
    arguments = {
        "phoneNumber": request.phone_number,
        "customerName": request.customer_name,
        "reason": request.reason,
    }
    try:
        result = await asyncio.to_thread(
            runtime.dispatcher.dispatch,
            FunctionName.INITIATE_VOICE_CALL.value,
            arguments,
            caller_session,
        )
    except Exception as e:
        logger.exception("[%s] Error placing call to %s", request_id, mask_phone_number(request.phone_number))
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return PlaceCallResponse(
        success=result.success,
        message=result.user_message,
        call_id=result.structured.get("call_id"),
        call_sid=result.structured.get("call_sid"),
    )


@router.post("/voice/webhook")
async def voice_webhook(http_request: Request, callId: str | None = None):  # noqa: N803
    """Twilio speech-result webhook; always answers with TwiML."""
    runtime = getattr(http_request.app.state, "runtime", None)
    if runtime is None:
        return _twiml_response(twiml.technical_difficulty())

    form = await http_request.form()
    markup = await asyncio.to_thread(
        runtime.calls.handle_speech_webhook,
        callId,
        form.get("SpeechResult"),
        form.get("CallStatus"),
        call_sid=form.get("CallSid"),
    )
    return _twiml_response(markup)


@router.post("/voice/status", status_code=204)
async def voice_status(http_request: Request, callId: str | None = None):  # noqa: N803
    """Twilio status callback."""
    runtime = _get_runtime(http_request)
    form = await http_request.form()
    await asyncio.to_thread(
        runtime.calls.handle_status_webhook,
        callId,
        form.get("CallStatus"),
        call_sid=form.get("CallSid"),
        duration_seconds=_optional_int(form.get("CallDuration")),
    )
    return Response(status_code=204)


@router.get("/voice/calls/{call_id}", response_model=CallStateResponse)
async def get_call(call_id: str, http_request: Request):
    """Current state of a call."""
    runtime = _get_runtime(http_request)
    state = runtime.calls.get_call_state(call_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Unknown call.")
    return CallStateResponse(
        call_id=state.call_id,
        session_id=state.session_id,
        status=state.status.value,
        call_sid=state.call_sid,
        phone_number=mask_phone_number(state.phone_number),
        started_at=state.started_at,
        updated_at=state.updated_at,
        ended_at=state.ended_at,
        duration_seconds=state.duration_seconds,
    )
