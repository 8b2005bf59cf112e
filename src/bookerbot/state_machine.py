import logging
from dataclasses import dataclass

from bookerbot.states import ContactStatus, ConversationGoal, Intent, QualificationStatus
from bookerbot.validation import match_any_keyword

logger = logging.getLogger(__name__)

MAX_TURNS_BEFORE_HANDOFF = 15
MAX_ESCALATION_ATTEMPTS = 2

HUMAN_REQUEST_KEYWORDS = frozenset({
    "real person", "a human", "human being", "speak to a human", "talk to a human",
    "speak to someone", "talk to someone", "talk to a person", "speak to a person",
    "representative", "live agent", "real agent", "your manager", "a manager",
    "supervisor", "talk to someone real",
})
FRUSTRATION_KEYWORDS = frozenset({
    "frustrated", "frustrating", "angry", "ridiculous", "waste of time",
    "useless", "terrible", "unacceptable", "complaint", "complain",
    "this is a joke", "fed up", "annoyed", "stupid bot",
})

HANDOFF_REASON_HUMAN = "Contact requested human assistance"
HANDOFF_REASON_FRUSTRATION = "Contact expressed frustration"
HANDOFF_REASON_TURN_LIMIT = "Conversation exceeded turn limit without resolution"
HANDOFF_REASON_ATTEMPTS = "Multiple unresolved complex queries"

HANDOFF_MESSAGES = {
    HANDOFF_REASON_HUMAN:
        "I'll have someone from our team reach out to you shortly. They'll be able to help you better!",
    HANDOFF_REASON_ATTEMPTS:
        "I want to make sure you get the best help possible. Let me have one of our team members follow up with you.",
    HANDOFF_REASON_TURN_LIMIT:
        "Thanks for your patience! I'm going to have a team member reach out to assist you directly.",
    HANDOFF_REASON_FRUSTRATION:
        "I apologize for any frustration. Let me have someone from our team reach out to you right away to help resolve this.",
}
DEFAULT_HANDOFF_MESSAGE = (
    "I'm connecting you with a team member who can assist you further. You'll hear from them shortly!"
)


@dataclass
class StatusUpdate:
    new_status: ContactStatus
    reason: str


@dataclass
class EscalationCheck:
    required: bool = False
    reason: str = ""


def next_goal(
    current: ConversationGoal,
    intent: Intent,
    qualification: QualificationStatus,
) -> ConversationGoal:
    if current.is_terminal:
        return current
    if intent in (Intent.OPT_OUT, Intent.REQUEST_HUMAN):
        return ConversationGoal.CLOSING

    qualified = qualification == QualificationStatus.QUALIFIED

    if intent == Intent.BOOKING_INTEREST:
        return ConversationGoal.OFFER_BOOKING if qualified else ConversationGoal.QUALIFY_LEAD
    if intent == Intent.QUESTION:
        return ConversationGoal.ANSWER_QUESTION
    if intent == Intent.OBJECTION:
        return ConversationGoal.HANDLE_OBJECTION
    if intent == Intent.CONFIRMATION and current == ConversationGoal.OFFER_BOOKING:
        return ConversationGoal.CONFIRM_BOOKING
    if intent == Intent.POSITIVE_RESPONSE:
        return ConversationGoal.OFFER_BOOKING if qualified else ConversationGoal.QUALIFY_LEAD

    if current == ConversationGoal.INITIAL_ENGAGEMENT:
        return ConversationGoal.QUALIFY_LEAD
    return current


def floor_goal_for_booked(previous: ConversationGoal, candidate: ConversationGoal) -> ConversationGoal:
    """A booked contact's goal never drops back into qualification."""
    if not candidate.is_pre_qualified:
        return candidate
    if not previous.is_pre_qualified:
        return previous
    return ConversationGoal.CONFIRM_BOOKING


def next_contact_status(
    current: ContactStatus,
    *,
    intent: Intent,
    escalated: bool,
    qualification: QualificationStatus,
    booking_confirmed: bool,
) -> StatusUpdate | None:
    """At most one lifecycle transition per turn, never to a lower rank."""
    if current.is_terminal:
        return None

    if intent == Intent.OPT_OUT:
        candidate = StatusUpdate(ContactStatus.OPTED_OUT, "Contact opted out")
    elif escalated:
        candidate = StatusUpdate(ContactStatus.HANDED_OFF, "Escalated to a human")
    elif booking_confirmed:
        candidate = StatusUpdate(ContactStatus.BOOKED, "Contact confirmed a booking")
    elif qualification == QualificationStatus.QUALIFIED:
        candidate = StatusUpdate(ContactStatus.QUALIFIED, "Contact met qualification criteria")
    else:
        candidate = StatusUpdate(ContactStatus.IN_CONVERSATION, "Contact replied")

    if candidate.new_status == current or candidate.new_status.rank <= current.rank:
        return None
    return candidate


def check_escalation_triggers(message: str, context) -> EscalationCheck:
    """Deterministic escalation checks applied on top of the classifier."""
    if match_any_keyword(message, HUMAN_REQUEST_KEYWORDS):
        return EscalationCheck(True, HANDOFF_REASON_HUMAN)
    if match_any_keyword(message, FRUSTRATION_KEYWORDS):
        return EscalationCheck(True, HANDOFF_REASON_FRUSTRATION)
    if context.state.turn_count > MAX_TURNS_BEFORE_HANDOFF:
        logger.warning("Turn limit exceeded (%d turns), escalating", context.state.turn_count)
        return EscalationCheck(True, HANDOFF_REASON_TURN_LIMIT)
    if context.state.escalation_attempts >= MAX_ESCALATION_ATTEMPTS:
        return EscalationCheck(True, HANDOFF_REASON_ATTEMPTS)
    return EscalationCheck()


def handoff_message(reason: str) -> str:
    lower = reason.lower().strip()
    if not lower:
        return DEFAULT_HANDOFF_MESSAGE
    for key, message in HANDOFF_MESSAGES.items():
        if key.lower() in lower or lower in key.lower():
            return message
    return DEFAULT_HANDOFF_MESSAGE
