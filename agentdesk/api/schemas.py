"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class CredentialsPayload(BaseModel):
    """Cal.com credentials for one agent account."""

    api_key: str = Field(..., min_length=1, description="Cal.com API key")
    event_type_id: str = Field(..., min_length=1, description="Cal.com event type id")


class StartSessionRequest(BaseModel):
    agent_prompt: str | None = Field(
        None, max_length=8000, description="Agent persona; the server default when omitted",
    )
    credentials: CredentialsPayload | None = None
    customer_name: str | None = Field(None, max_length=200)


class StartSessionResponse(BaseModel):
    session_id: str
    greeting: str


class ChatRequest(BaseModel):
    """Incoming chat message from the frontend."""

    message: str = Field(..., min_length=1, max_length=2000, description="The customer's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Session identifier returned by POST /api/sessions",
    )


class ChatResponse(BaseModel):
    """Response from the agent."""

    reply: str = Field(..., description="The agent's response message")
    session_id: str = Field(..., description="The session ID for this conversation")
    function_name: str | None = Field(None, description="Function the agent ran on this turn, if any")
    function_success: bool | None = None
    end_conversation: bool = False


class PlaceCallRequest(BaseModel):
    phone_number: str = Field(..., min_length=4, max_length=32)
    customer_name: str | None = Field(None, max_length=200)
    reason: str | None = Field(None, max_length=500)
    agent_prompt: str | None = Field(None, max_length=8000)
    credentials: CredentialsPayload | None = None


class PlaceCallResponse(BaseModel):
    success: bool
    message: str
    call_id: str | None = None
    call_sid: str | None = None


class CallStateResponse(BaseModel):
    call_id: str
    session_id: str
    status: str
    call_sid: str | None = None
    phone_number: str | None = Field(None, description="Masked to the last four digits")
    started_at: datetime
    updated_at: datetime
    ended_at: datetime | None = None
    duration_seconds: int | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "agentdesk"
    telephony_configured: bool = False
