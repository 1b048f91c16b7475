"""AgentDesk: a conversational booking agent for chat and phone.

Architecture Overview
=====================

An operator configures an agent persona and (optionally) Cal.com
credentials.  Customers talk to the agent by chat or over a Twilio phone
call; the agent checks availability and books appointments by calling a
small fixed set of functions.

Per customer turn a **LangGraph** StateGraph runs two nodes:

1. **chatbot**: Claude with the persona, today's date context and the
   functions offered for this session.
2. **dispatch**: runs the first requested function through the
   ``FunctionDispatcher``; the function's message is the reply.

Routing: chatbot → (function call?) → dispatch → END, otherwise END.

Key Design Decisions
--------------------
- **Functions** are offered per turn: scheduling functions only when the
  session has Cal.com credentials, ``initiate_voice_call`` only when Twilio
  is configured, ``end_conversation`` always.
- **Scheduling**: Cal.com REST API v1 via httpx with exponential backoff
  retries.  Provider failures never raise past the client; availability
  failures degrade to an optimistic (but flagged unverified) answer.
- **Time**: natural-language dates and clock times are normalized with
  dateutil and converted to UTC with ``zoneinfo``; a small static offset
  table is the fallback when the zone database is missing.
- **Voice**: Twilio status callbacks drive the call state machine; speech
  webhooks become orchestrator turns answered with TwiML.  Markup failures
  fall back to a fixed apologetic hang-up.
- **State**: sessions and calls live behind store protocols; the
  in-memory session store versions every save so racing turns are
  detected instead of silently merged.

Package Structure
-----------------
- ``agentdesk/agent.py``: LangGraph graph and ``ConversationOrchestrator``
- ``agentdesk/calls.py``: Twilio call lifecycle
- ``agentdesk/classifier.py``: context-flag heuristics
- ``agentdesk/config.py``: configuration from env / ``.env`` / SSM
- ``agentdesk/models.py``: session, turn and call dataclasses
- ``agentdesk/prompts.py``: system instructions
- ``agentdesk/runtime.py``: component wiring
- ``agentdesk/server.py``: FastAPI application
- ``agentdesk/main.py``: CLI chat interface
- ``agentdesk/twiml.py``: voice markup
- ``agentdesk/services/``: Cal.com and Twilio clients, stores
- ``agentdesk/tools/``: time normalization and the function table
- ``agentdesk/api/``: FastAPI routes and Pydantic schemas
"""
