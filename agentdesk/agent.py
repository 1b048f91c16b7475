"""LangGraph-based conversation orchestrator.

Architecture:
  Each customer turn runs a small LangGraph StateGraph with two nodes:

    1. **chatbot**:  Claude call with the session's persona, date context
                     and the functions offered on this turn
    2. **dispatch**: runs the *first* function the model asked for through
                     the ``FunctionDispatcher``

  Routing:
    chatbot → (function call?)    → dispatch → END
    chatbot → (no function call?) → END

  There is no loop back into the model after a function runs: the
  function's ``user_message`` is the reply the customer gets.

  Memory:
    Turn history lives on the ``ConversationSession`` in the session store,
    not in a LangGraph checkpointer, so chat and voice share one history
    and the store can be swapped for a durable backend.  Every turn is
    replayed to the model, including earlier function calls and results.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from agentdesk.classifier import ContextClassifier, KeywordContextClassifier
from agentdesk.config import ANTHROPIC_API_KEY, MAX_TOKENS, MODEL_NAME, MODEL_TEMPERATURE
from agentdesk.models import (
    ConversationSession,
    FunctionCallRecord,
    SessionConfig,
    Turn,
    TurnRole,
)
from agentdesk.prompts import GREETING_INSTRUCTION, get_system_prompt
from agentdesk.services.store import SafeRecorder, SessionStore, TurnRecorder
from agentdesk.tools.functions import (
    FunctionArgumentsError,
    FunctionDispatcher,
    FunctionResult,
    build_function_descriptors,
)

logger = logging.getLogger(__name__)

GENERIC_FAILURE_REPLY = (
    "I'm sorry, something went wrong on my side while handling that. "
    "Could you please say that again?"
)
EMPTY_REPLY_FALLBACK = "I'm sorry, could you repeat that?"


class SessionNotFoundError(Exception):
    """Raised when a turn arrives for a session the store does not know."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Unknown session: {session_id}")


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict):
    """The state that flows through the graph for one turn.

    ``session`` is the working copy taken from the store; the dispatch node
    may update its context flags.  ``tools`` are the Anthropic tool
    definitions offered on this turn (empty for the greeting).
    """

    messages: Annotated[list[AnyMessage], add_messages]
    session: ConversationSession
    tools: list[dict[str, Any]]
    function_call: dict[str, Any] | None
    function_result: FunctionResult | None


@dataclass
class TurnResult:
    session_id: str
    reply: str
    function_name: str | None = None
    function_result: FunctionResult | None = None
    failed: bool = False

    @property
    def end_conversation(self) -> bool:
        return self.function_result is not None and self.function_result.ends_conversation


# ── LLM builder ──────────────────────────────────────────────────────


def _build_llm() -> ChatAnthropic:
    """Build the Claude chat model; tools are bound per turn."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=MODEL_TEMPERATURE,
        max_tokens=MAX_TOKENS,
    )


def _message_text(message: AnyMessage) -> str:
    """Plain text of a model message whose content may be a list of blocks."""
    content = message.content
    if isinstance(content, str):
        return content.strip()
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts).strip()


def history_to_messages(session: ConversationSession) -> list[AnyMessage]:
    """Replay the session's turns as LangChain messages.

    Function calls are re-attached to the assistant message that made them
    and their results are replayed as tool messages with the same id.
    """
    messages: list[AnyMessage] = []
    if session.turns and session.turns[0].role is not TurnRole.USER:
        # The conversation opened with our greeting; the model API wants a
        # user message first.
        messages.append(HumanMessage(content=GREETING_INSTRUCTION))

    for turn in session.turns:
        call = turn.function_call
        if turn.role is TurnRole.USER:
            messages.append(HumanMessage(content=turn.content))
        elif turn.role is TurnRole.FUNCTION and call is not None:
            messages.append(ToolMessage(content=turn.content, tool_call_id=call.call_id, name=call.name))
        elif call is not None:
            messages.append(
                AIMessage(
                    content=turn.content,
                    tool_calls=[{"name": call.name, "args": call.arguments, "id": call.call_id}],
                )
            )
        else:
            messages.append(AIMessage(content=turn.content))
    return messages


# ── Nodes ────────────────────────────────────────────────────────────


def _make_chatbot_node():
    """Create the chatbot node.

    The chat model is built once and captured in the closure; the tool
    list differs per session, so binding happens on every call.
    """
    llm = _build_llm()

    def chatbot_node(state: TurnState) -> dict:
        session = state["session"]
        tools = state.get("tools") or []
        model = llm.bind_tools(tools) if tools else llm
        system = SystemMessage(content=get_system_prompt(session))
        t0 = time.perf_counter()
        response = model.invoke([system] + state["messages"])
        logger.debug(
            "chatbot responded in %.0fms for %s (%d tools offered)",
            (time.perf_counter() - t0) * 1000, session.session_id, len(tools),
        )
        return {"messages": [response]}

    return chatbot_node


def _make_dispatch_node(dispatcher: FunctionDispatcher):
    """Create the node that executes the model's function call."""

    def dispatch_node(state: TurnState) -> dict:
        session = state["session"]
        last = state["messages"][-1]
        tool_calls = getattr(last, "tool_calls", None) or []
        if not tool_calls:
            invalid = (getattr(last, "invalid_tool_calls", None) or [{}])[0]
            raise FunctionArgumentsError(
                invalid.get("name") or "unknown", invalid.get("error") or "arguments are not valid JSON",
            )
        if len(tool_calls) > 1:
            logger.warning(
                "Model requested %d function calls; only %s will run",
                len(tool_calls), tool_calls[0]["name"],
            )

        call = tool_calls[0]
        result = dispatcher.dispatch(call["name"], call.get("args"), session)
        return {"function_call": call, "function_result": result, "session": session}

    return dispatch_node


def should_dispatch(state: TurnState) -> str:
    """Route to dispatch when the model asked for a function."""
    last = state["messages"][-1]
    if getattr(last, "tool_calls", None) or getattr(last, "invalid_tool_calls", None):
        return "dispatch"
    return END


def create_turn_graph(dispatcher: FunctionDispatcher):
    """Build and compile the per-turn graph."""
    graph = StateGraph(TurnState)
    graph.add_node("chatbot", _make_chatbot_node())
    graph.add_node("dispatch", _make_dispatch_node(dispatcher))
    graph.set_entry_point("chatbot")
    graph.add_conditional_edges("chatbot", should_dispatch, {"dispatch": "dispatch", END: END})
    graph.add_edge("dispatch", END)
    return graph.compile()


# ── Orchestrator ─────────────────────────────────────────────────────


class ConversationOrchestrator:
    """Entry point for chat and voice turns."""

    def __init__(
        self,
        store: SessionStore,
        dispatcher: FunctionDispatcher,
        *,
        classifier: ContextClassifier | None = None,
        recorder: TurnRecorder | None = None,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._classifier = classifier or KeywordContextClassifier()
        self._recorder = SafeRecorder(recorder)
        self._graph = create_turn_graph(dispatcher)

    @property
    def store(self) -> SessionStore:
        return self._store

    def get_session(self, session_id: str) -> ConversationSession | None:
        return self._store.get(session_id)

    def end_session(self, session_id: str) -> bool:
        removed = self._store.delete(session_id)
        if removed:
            logger.info("Released session %s", session_id)
        return removed

    def _add_turn(self, session: ConversationSession, turn: Turn) -> None:
        session.add_turn(turn)
        self._recorder.record_turn(session.session_id, turn)

    def start_conversation(self, config: SessionConfig, session_id: str | None = None) -> TurnResult:
        """Create a session and generate its greeting.

        Language-model errors propagate; no session is left behind.
        """
        session = ConversationSession.from_config(config, session_id=session_id)
        state = self._graph.invoke({
            "messages": [HumanMessage(content=GREETING_INSTRUCTION)],
            "session": session,
            "tools": [],
            "function_call": None,
            "function_result": None,
        })
        greeting = _message_text(state["messages"][-1]) or EMPTY_REPLY_FALLBACK
        self._add_turn(session, Turn(role=TurnRole.ASSISTANT, content=greeting))
        self._store.put(session)
        logger.info("Started %s conversation %s", session.channel.value, session.session_id)
        return TurnResult(session_id=session.session_id, reply=greeting)

    def handle_inbound_utterance(self, session_id: str, text: str) -> TurnResult:
        """Run one customer turn and return the reply.

        Raises ``SessionNotFoundError`` for unknown sessions and
        ``StaleSessionError`` if another turn saved the session meanwhile.
        """
        session = self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        expected_version = session.version

        self._classifier.update(session.context, text)
        self._add_turn(session, Turn(role=TurnRole.USER, content=text))

        tools = [
            d.to_tool()
            for d in build_function_descriptors(
                session, telephony_configured=self._dispatcher.telephony_configured,
            )
        ]
        try:
            state = self._graph.invoke({
                "messages": history_to_messages(session),
                "session": session,
                "tools": tools,
                "function_call": None,
                "function_result": None,
            })
        except FunctionArgumentsError as exc:
            logger.warning("Malformed function call in session %s: %s", session_id, exc)
            self._add_turn(session, Turn(role=TurnRole.ASSISTANT, content=GENERIC_FAILURE_REPLY))
            self._store.put(session, expected_version=expected_version)
            return TurnResult(
                session_id=session_id, reply=GENERIC_FAILURE_REPLY,
                function_name=exc.function_name, failed=True,
            )

        session = state["session"]
        result = state.get("function_result")
        response = state["messages"][-1]

        if result is None:
            reply = _message_text(response) or EMPTY_REPLY_FALLBACK
            self._add_turn(session, Turn(role=TurnRole.ASSISTANT, content=reply))
            function_name = None
        else:
            call = state["function_call"]
            function_name = call["name"]
            record = FunctionCallRecord(
                name=function_name, arguments=call.get("args") or {}, call_id=call["id"],
            )
            self._add_turn(
                session,
                Turn(role=TurnRole.ASSISTANT, content=_message_text(response), function_call=record),
            )
            self._add_turn(
                session,
                Turn(role=TurnRole.FUNCTION, content=json.dumps(result.to_payload(), default=str), function_call=record),
            )
            reply = result.user_message
            self._add_turn(session, Turn(role=TurnRole.ASSISTANT, content=reply))

        self._store.put(session, expected_version=expected_version)
        return TurnResult(
            session_id=session_id,
            reply=reply,
            function_name=function_name,
            function_result=result,
        )
