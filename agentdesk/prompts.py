"""System instructions for the booking agent."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

from agentdesk.models import Channel, ConversationSession

GREETING_INSTRUCTION = "Start the conversation with a greeting"

DATE_CONTEXT_TEMPLATE = """CURRENT DATE CONTEXT:
Today: {today}
Tomorrow: {tomorrow}
Weekday: {weekday}
Resolve relative dates such as "tomorrow" or "next Monday" against these dates.
Pass the customer's own wording for times (for example "3 pm") to the functions."""

VOICE_CONTEXT_TEMPLATE = """CONVERSATION CONTEXT:
- Customer Name: {customer_name}
- Phone: {phone}
- Has provided name: {has_name}
- Has provided email: {has_email}
- Has preferred time: {has_preferred_time}
- Current step: {current_step}

VOICE CONVERSATION GUIDELINES:
- Keep responses concise and natural for voice, one or two sentences
- Ask one question at a time
- Never use lists, markdown or emoji; everything you write is read aloud
- Spell out email addresses back to the customer before booking
- If the customer provides a specific time, use check_availability
- If the customer confirms a booking, use book_appointment
- When the customer is done, say goodbye and use end_conversation"""

CHAT_GUIDELINES = """CONVERSATION GUIDELINES:
- Be friendly, professional and brief
- When the customer mentions a specific date and time, use check_availability before booking
- Collect the customer's full name and email address before calling book_appointment
- Always repeat the confirmation ID from a successful booking exactly as given
- Never invent availability or booking details; only share what the functions return"""


def _today() -> date:
    return datetime.now(UTC).date()


def build_date_context(today: date | None = None) -> str:
    """Machine-readable current-date block appended to every system prompt."""
    today = today or _today()
    return DATE_CONTEXT_TEMPLATE.format(
        today=today.isoformat(),
        tomorrow=(today + timedelta(days=1)).isoformat(),
        weekday=today.strftime("%A"),
    )


def get_system_prompt(session: ConversationSession, *, today: date | None = None) -> str:
    """Return the system instruction for *session*: persona, date context and
    the channel-specific guidelines.
    """
    sections = [session.agent_prompt.strip(), build_date_context(today)]

    if session.channel is Channel.VOICE:
        ctx = session.context
        sections.append(
            VOICE_CONTEXT_TEMPLATE.format(
                customer_name=session.customer_name or "Customer",
                phone=session.phone_number or "unknown",
                has_name=ctx.has_name,
                has_email=ctx.has_email,
                has_preferred_time=ctx.has_preferred_time,
                current_step=ctx.current_step.value,
            )
        )
    else:
        sections.append(CHAT_GUIDELINES)

    return "\n\n".join(sections)
