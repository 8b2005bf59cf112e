from enum import Enum

TERMINAL_CONTACT_STATUSES = {"opted_out", "handed_off"}
PRE_QUALIFIED_GOALS = {"initial_engagement", "qualify_lead"}

# Lifecycle rank; a contact status never moves to a lower rank.
CONTACT_STATUS_RANK = {
    "pending": 0,
    "contacted": 1,
    "unresponsive": 1,
    "in_conversation": 2,
    "qualified": 3,
    "booked": 4,
    "opted_out": 5,
    "handed_off": 5,
}

QUALIFICATION_RANK = {
    "unknown": 0,
    "partial": 1,
    "qualified": 2,
    "disqualified": 2,
}


class Intent(Enum):
    BOOKING_INTEREST = "booking_interest"
    QUESTION = "question"
    OBJECTION = "objection"
    POSITIVE_RESPONSE = "positive_response"
    NEGATIVE_RESPONSE = "negative_response"
    OPT_OUT = "opt_out"
    REQUEST_HUMAN = "request_human"
    CONFIRMATION = "confirmation"
    UNCLEAR = "unclear"
    GREETING = "greeting"
    THANKS = "thanks"


class ConversationGoal(Enum):
    INITIAL_ENGAGEMENT = "initial_engagement"
    QUALIFY_LEAD = "qualify_lead"
    HANDLE_OBJECTION = "handle_objection"
    ANSWER_QUESTION = "answer_question"
    OFFER_BOOKING = "offer_booking"
    CONFIRM_BOOKING = "confirm_booking"
    FOLLOW_UP = "follow_up"
    CLOSING = "closing"

    @property
    def is_pre_qualified(self) -> bool:
        return self.value in PRE_QUALIFIED_GOALS

    @property
    def is_terminal(self) -> bool:
        return self is ConversationGoal.CLOSING


class QualificationStatus(Enum):
    UNKNOWN = "unknown"
    PARTIAL = "partial"
    QUALIFIED = "qualified"
    DISQUALIFIED = "disqualified"

    @property
    def rank(self) -> int:
        return QUALIFICATION_RANK[self.value]


class ContactStatus(Enum):
    PENDING = "pending"
    CONTACTED = "contacted"
    IN_CONVERSATION = "in_conversation"
    QUALIFIED = "qualified"
    BOOKED = "booked"
    OPTED_OUT = "opted_out"
    UNRESPONSIVE = "unresponsive"
    HANDED_OFF = "handed_off"

    @property
    def rank(self) -> int:
        return CONTACT_STATUS_RANK[self.value]

    @property
    def is_terminal(self) -> bool:
        """Terminal for automated processing."""
        return self.value in TERMINAL_CONTACT_STATUSES


class Channel(Enum):
    SMS = "sms"
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class WorkflowStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class Direction(Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
