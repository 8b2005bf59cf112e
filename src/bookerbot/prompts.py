from dataclasses import dataclass, field

from bookerbot.context import criterion_label
from bookerbot.llm import FAST_MODEL, SMART_MODEL
from bookerbot.states import Channel, ConversationGoal, QualificationStatus
from bookerbot.transcript import MAX_PROMPT_MESSAGES, to_prompt_messages

GENERATION_TEMPERATURE = 0.7

# Goals where a weak reply costs a lead
CAREFUL_GOALS = {ConversationGoal.HANDLE_OBJECTION, ConversationGoal.CONFIRM_BOOKING}


@dataclass(frozen=True)
class ChannelPolicy:
    char_limit: int
    max_tokens: int
    style: str


CHANNEL_POLICIES = {
    Channel.SMS: ChannelPolicy(
        char_limit=320,
        max_tokens=150,
        style="CRITICAL: This is SMS. Keep replies to 1-3 SHORT sentences. Be concise but warm.",
    ),
    Channel.WHATSAPP: ChannelPolicy(
        char_limit=700,
        max_tokens=250,
        style="This is WhatsApp. Keep replies brief (2-4 sentences). Emojis sparingly, if at all.",
    ),
    Channel.EMAIL: ChannelPolicy(
        char_limit=2000,
        max_tokens=500,
        style="This is email. You can be a little more detailed, but keep it concise and scannable.",
    ),
}


@dataclass
class PromptConfig:
    model: str
    max_tokens: int
    temperature: float
    system_prompt: str
    messages: list = field(default_factory=list)


def select_model(channel: Channel, goal: ConversationGoal) -> str:
    if channel == Channel.EMAIL or goal in CAREFUL_GOALS:
        return SMART_MODEL
    return FAST_MODEL


def conversation_phase(context, knowledge) -> str:
    """rapport, qualifying, qualified or booking."""
    early = context.state.turn_count < 2
    goal = context.state.current_goal
    if not knowledge.qualification_criteria:
        return "rapport" if early else "booking"

    qualified = context.qualification.status == QualificationStatus.QUALIFIED
    if qualified and goal in (ConversationGoal.OFFER_BOOKING, ConversationGoal.CONFIRM_BOOKING):
        return "booking"
    if early:
        return "rapport"
    if qualified:
        return "qualified"
    return "qualifying"


def _phase_prompt(phase: str, knowledge, appointment_duration: int) -> str:
    if phase == "rapport":
        discover = (
            "\n- Begin naturally learning whether they fit (see WHAT WE NEED TO LEARN)"
            if knowledge.qualification_criteria else ""
        )
        return f"""You are in the RAPPORT phase.

Your goal right now:
- Acknowledge their reply warmly and naturally
- Show genuine interest in them and their situation
- Start to understand their needs through friendly conversation{discover}

Do NOT mention booking or appointments yet."""

    if phase == "qualifying":
        return """You are in the QUALIFYING phase.

Your goal right now:
- Keep the conversation friendly while learning whether they are a good fit
- Ask ONE thoughtful question at a time and acknowledge what they share
- Do NOT suggest booking until you know they are a fit

This should feel like a helpful chat, not an interrogation."""

    if phase == "qualified":
        return f"""The contact looks like a GOOD FIT.

Your goal right now:
- If they seem interested, offer to set up a {appointment_duration}-minute call
- Gauge their interest first. Don't be pushy
- If they're not ready to book, keep the conversation helpful"""

    return f"""You can discuss booking now.

Your goal right now:
- Help them pick a time for a {appointment_duration}-minute call
- Confirm the day and time they choose in plain words
- NEVER say the meeting is confirmed unless they have agreed to a specific time"""


def _progress(context, knowledge) -> str:
    criteria = knowledge.qualification_criteria
    qualification = context.qualification
    confirmed = [criterion_label(c) for c in criteria if c in qualification.criteria_matched]
    ruled_out = [criterion_label(c) for c in criteria if c in qualification.criteria_missed]
    open_items = [
        criterion_label(c) for c in criteria
        if c not in qualification.criteria_matched and c not in qualification.criteria_missed
    ]

    lines = [f"Confirmed so far: {len(confirmed)} of {len(criteria)}"]
    if confirmed:
        lines.append("\nAlready confirmed (don't ask about these again):")
        lines.extend(f"- {c}" for c in confirmed)
    if open_items:
        lines.append("\nStill to learn (weave into natural conversation):")
        lines.extend(f"- {c}" for c in open_items)
    if ruled_out:
        lines.append("\nNot a fit on:")
        lines.extend(f"- {c}" for c in ruled_out)
    return "\n".join(lines)


def _build_context(contact, context) -> str:
    info = context.extracted_info
    parts = []
    name = contact.full_name
    if name:
        parts.append(f"Name: {name}")
    if info.is_decision_maker is True:
        parts.append("They make the buying decision")
    elif info.is_decision_maker is False:
        parts.append("Someone else makes the buying decision")
    if info.timeline:
        parts.append(f"Timeline: {info.timeline}")
    if info.budget:
        parts.append(f"Budget: {info.budget}")
    if info.company_size:
        parts.append(f"Company size: {info.company_size}")
    if info.preferred_times:
        parts.append(f"Prefers: {', '.join(info.preferred_times)}")
    if info.objections:
        parts.append(f"Concerns raised: {', '.join(info.objections)}")
    if not parts:
        return ""
    return "KNOWN INFO:\n" + "\n".join(f"- {p}" for p in parts)


def build_system_prompt(
    knowledge,
    contact,
    context,
    channel: Channel,
    appointment_duration: int,
    instructions: str = "",
) -> str:
    policy = CHANNEL_POLICIES[channel]
    phase = conversation_phase(context, knowledge)
    first_name = contact.first_name or "there"

    sections = [
        f"You are an assistant having a natural conversation via {channel.value.upper()} "
        f"on behalf of {knowledge.company_name}.",
        f"## YOUR PRIMARY DIRECTIVE\n{_phase_prompt(phase, knowledge, appointment_duration)}",
        f"## INSTRUCTIONS FROM THE BUSINESS\n{instructions or 'No additional instructions provided.'}",
    ]

    business = [f"Company: {knowledge.company_name}"]
    if knowledge.brand_summary:
        business.append(f"About: {knowledge.brand_summary}")
    if knowledge.services:
        business.append(f"Services: {', '.join(knowledge.services)}")
    if knowledge.target_audience:
        business.append(f"Who we help: {knowledge.target_audience}")
    if knowledge.goal:
        business.append(f"Campaign: {knowledge.goal}")
    sections.append("## ABOUT THE BUSINESS\n" + "\n".join(business))

    sections.append(
        f"## COMMUNICATION STYLE\nTone: {knowledge.tone}\n{policy.style}\n"
        f"Never write more than {policy.char_limit} characters."
    )

    known = _build_context(contact, context)
    if known:
        sections.append(f"## WHO YOU'RE TALKING TO\n{known}")

    if knowledge.qualification_criteria:
        sections.append(f"## WHAT WE NEED TO LEARN\n{_progress(context, knowledge)}")

    summary = context.summary or "This is a new conversation. They just replied to your first message."
    sections.append(f"## CONVERSATION SO FAR\n{summary}")

    if knowledge.faqs:
        faqs = "\n\n".join(f"Q: {faq.question}\nA: {faq.answer}" for faq in knowledge.faqs)
        sections.append(f"## FAQS YOU CAN REFERENCE\n{faqs}")

    dos = "\n".join(f"- {d}" for d in knowledge.dos)
    donts = "\n".join(f"- {d}" for d in knowledge.donts)
    sections.append(f"## GUIDELINES\nDO:\n{dos}\n\nDON'T:\n{donts}")

    sections.append(f"""## RULES
1. If they want to stop receiving messages, acknowledge politely and confirm removal.
2. If they ask something you can't answer, offer to have someone follow up.
3. If they ask for a person, say someone from the team will reach out.
4. Ask ONE question at a time.
5. Address them as {first_name} occasionally, not every message.
6. Never mention internal labels, scores or statuses.""")

    return "\n\n".join(sections)


def build_prompt(
    knowledge,
    contact,
    context,
    message_history: list,
    current_message: str,
    channel: Channel,
    appointment_duration: int,
    instructions: str = "",
) -> PromptConfig:
    """Assemble everything one generation call needs.

    Only the most recent MAX_PROMPT_MESSAGES records are sent verbatim; the
    context summary in the system prompt stands in for older turns.
    """
    policy = CHANNEL_POLICIES[channel]
    return PromptConfig(
        model=select_model(channel, context.state.current_goal),
        max_tokens=policy.max_tokens,
        temperature=GENERATION_TEMPERATURE,
        system_prompt=build_system_prompt(
            knowledge, contact, context, channel, appointment_duration, instructions
        ),
        messages=to_prompt_messages(message_history, current_message, MAX_PROMPT_MESSAGES),
    )
