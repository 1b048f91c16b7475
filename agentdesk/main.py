"""CLI entry point for AgentDesk.

A terminal chat with the agent for testing and development.  For
production, use the FastAPI server (``agentdesk/server.py``).

Usage:
    python -m agentdesk.main                                   # no scheduling
    python -m agentdesk.main --api-key cal_xxx --event-type 123
    python -m agentdesk.main --debug                           # show API calls
"""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from agentdesk.agent import SessionNotFoundError
from agentdesk.config import CALCOM_API_KEY, CALCOM_EVENT_TYPE_ID, DEFAULT_AGENT_PROMPT
from agentdesk.models import SchedulingCredentials, SessionConfig
from agentdesk.runtime import build_runtime

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("agentdesk").setLevel(logging.DEBUG if debug else logging.INFO)


def _start(runtime, config: SessionConfig) -> str:
    result = runtime.orchestrator.start_conversation(config)
    print(f"\nAgent: {result.reply}\n")
    return result.session_id


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="AgentDesk CLI")
    parser.add_argument("--api-key", default=CALCOM_API_KEY, help="Cal.com API key")
    parser.add_argument("--event-type", default=CALCOM_EVENT_TYPE_ID, help="Cal.com event type id")
    parser.add_argument("--prompt", default=None, help="Agent persona (defaults to DEFAULT_AGENT_PROMPT)")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    credentials = None
    if args.api_key and args.event_type:
        credentials = SchedulingCredentials(api_key=args.api_key, event_type_id=str(args.event_type))
    config = SessionConfig(agent_prompt=args.prompt or DEFAULT_AGENT_PROMPT, credentials=credentials)

    print("\n" + "=" * 60)
    print("  AgentDesk - CLI Chat")
    print("=" * 60)
    print(f"  Scheduling: {'enabled' if credentials else 'disabled (no Cal.com credentials)'}")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60)

    runtime = build_runtime()
    session_id = _start(runtime, config)

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye! Have a great day!")
            break

        if user_input.lower() == "new":
            runtime.orchestrator.end_session(session_id)
            session_id = _start(runtime, config)
            continue

        try:
            result = runtime.orchestrator.handle_inbound_utterance(session_id, user_input)
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except SessionNotFoundError:
            print("\n>> Session expired, starting a new one.")
            session_id = _start(runtime, config)
            continue
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nAgent: I'm sorry, something went wrong: {e}")
            print("       Please try again or type 'new' to start a fresh session.\n")
            continue

        tag = f" [{result.function_name}]" if result.function_name else ""
        print(f"\nAgent{tag}: {result.reply}\n")
        if result.end_conversation:
            print(">> The agent ended the conversation. Type 'new' to start again.\n")


if __name__ == "__main__":
    main()
