import logging
import re
from dataclasses import dataclass, field

from bookerbot.llm import FAST_MODEL
from bookerbot.state_machine import (
    FRUSTRATION_KEYWORDS,
    HANDOFF_REASON_FRUSTRATION,
    HANDOFF_REASON_HUMAN,
    HUMAN_REQUEST_KEYWORDS,
)
from bookerbot.states import ConversationGoal, Intent
from bookerbot.validation import is_opt_out_keyword, match_any_keyword

logger = logging.getLogger(__name__)

# LLM opt-out verdicts below this confidence are treated as a plain "no".
OPT_OUT_MIN_CONFIDENCE = 0.9

# Multi-word phrases only: a bare "stop" is handled by is_opt_out_keyword,
# so "don't stop now" never reads as an opt-out.
OPT_OUT_PHRASES = frozenset({
    "unsubscribe", "remove me", "opt out", "opt-out", "dont contact",
    "don't contact", "do not contact", "leave me alone", "remove my number",
    "take me off", "no more messages", "stop texting", "stop messaging",
    "stop contacting me",
})

BOOKING_KEYWORDS = frozenset({
    "book", "schedule", "appointment", "meeting", "available", "availability",
    "calendar", "set up a call", "set up a time", "when can we", "lets meet",
    "let's meet", "free time", "slot",
})

RESCHEDULE_KEYWORDS = frozenset({
    "reschedule", "change the time", "change the meeting", "change the appointment",
    "change my appointment", "change my booking", "move the meeting",
    "move the appointment", "move my appointment", "different time",
    "different day", "push it back", "postpone",
})

POSITIVE_KEYWORDS = frozenset({
    "yes", "yeah", "yep", "sure", "sounds good", "interested", "go ahead",
    "okay", "ok", "definitely", "absolutely", "perfect", "great",
    "no problem", "no worries",
})

# Acceptances that contain a bare "no".
NOT_NEGATIVE_PHRASES = re.compile(r"\bno (?:problem|worries)\b")
LEADING_POSITIVE = re.compile(
    r"(?:yes|yeah|yep|sure|ok|okay|definitely|absolutely|perfect|great|sounds good|go ahead)\b"
)

NEGATIVE_KEYWORDS = frozenset({
    "no", "nope", "no thanks", "not interested", "not for me", "pass",
    "maybe later", "not right now", "busy",
})

GREETINGS = ("hi", "hello", "hey", "good morning", "good afternoon", "good evening")
THANKS_KEYWORDS = frozenset({"thanks", "thank you", "appreciate it", "cheers"})
QUESTION_STARTS = ("what", "how", "why", "when", "where", "who", "can you", "do you", "is it")

TIME_SELECTION_PATTERNS = [
    re.compile(r"\b\d{1,2}(?::\d{2})?\s*(?:am|pm)\b"),
    re.compile(r"\b(?:at|@)\s*\d{1,2}(?::\d{2})?\s*(?:am|pm)?\b"),
    re.compile(r"\b(?:let'?s\s+(?:do|go with)|i'?ll\s+take|works\s+for\s+me)\b"),
    re.compile(r"\b(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday)\s+(?:at|@)?\s*\d{1,2}"),
    re.compile(r"\b(?:tomorrow|today)\s+(?:at|@)?\s*\d{1,2}"),
]

DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

BOOKING_OFFER_GOALS = {ConversationGoal.OFFER_BOOKING, ConversationGoal.CONFIRM_BOOKING}

CLASSIFIER_SYSTEM_PROMPT = """You are an intent classifier for an appointment booking assistant.
Classify the contact's message into exactly one of these intents:
- booking_interest: wants to schedule or book something
- question: asking about services, pricing, etc.
- objection: expressing concerns or hesitation
- positive_response: agreeing or showing interest
- negative_response: declining, not interested (but not opting out)
- opt_out: explicitly wants to stop receiving messages
- request_human: wants to speak to a real person
- confirmation: confirming details or an appointment time
- greeting: just saying hello
- thanks: expressing gratitude
- unclear: cannot determine intent

Only use opt_out when the contact clearly asks to stop being messaged.
Set requiresEscalation to true when the contact asks for a person or is frustrated or complaining.

Respond in JSON only:
{"intent": "...", "confidence": 0.0-1.0, "requiresEscalation": true/false, "escalationReason": "..."}"""


@dataclass
class IntentClassification:
    intent: Intent
    confidence: float
    entities: dict = field(default_factory=dict)
    requires_escalation: bool = False
    escalation_reason: str = ""


def extract_time_entities(text: str) -> dict:
    entities = {}
    for day in DAYS:
        if day in text:
            entities["preferred_day"] = day
            break
    for part in ("morning", "afternoon", "evening"):
        if part in text:
            entities["preferred_time"] = part
            break
    for relative in ("tomorrow", "next week", "this week"):
        if relative in text:
            entities["preferred_date"] = relative
            break
    return entities


def matches_time_selection(text: str) -> bool:
    return any(pattern.search(text) for pattern in TIME_SELECTION_PATTERNS)


def is_short_negative(text: str) -> bool:
    """A short decline. After a leading "yes"/"ok" a bare "no" doesn't count."""
    if len(text) >= 20:
        return False
    keywords = NEGATIVE_KEYWORDS
    if LEADING_POSITIVE.match(text):
        keywords = NEGATIVE_KEYWORDS - {"no"}
    return match_any_keyword(NOT_NEGATIVE_PHRASES.sub(" ", text), keywords)


def fast_path(message: str, goal: ConversationGoal) -> IntentClassification | None:
    """Keyword classification for unambiguous messages; None when unsure."""
    normalized = message.lower().strip()
    if not normalized:
        return IntentClassification(Intent.UNCLEAR, 0.5)

    if is_opt_out_keyword(normalized) or match_any_keyword(normalized, OPT_OUT_PHRASES):
        return IntentClassification(Intent.OPT_OUT, 1.0)

    if match_any_keyword(normalized, HUMAN_REQUEST_KEYWORDS):
        return IntentClassification(
            Intent.REQUEST_HUMAN, 0.95,
            requires_escalation=True,
            escalation_reason=HANDOFF_REASON_HUMAN,
        )

    offering = goal in BOOKING_OFFER_GOALS
    negative = is_short_negative(normalized)

    if not negative and len(normalized) < 15 and match_any_keyword(normalized, POSITIVE_KEYWORDS):
        if offering:
            return IntentClassification(Intent.CONFIRMATION, 0.85)
        return IntentClassification(Intent.POSITIVE_RESPONSE, 0.85)

    if offering and matches_time_selection(normalized):
        return IntentClassification(
            Intent.CONFIRMATION, 0.85, entities=extract_time_entities(normalized)
        )

    if negative:
        return IntentClassification(Intent.NEGATIVE_RESPONSE, 0.85)

    if (match_any_keyword(normalized, RESCHEDULE_KEYWORDS)
            or match_any_keyword(normalized, BOOKING_KEYWORDS)
            or matches_time_selection(normalized)):
        return IntentClassification(
            Intent.BOOKING_INTEREST, 0.8, entities=extract_time_entities(normalized)
        )

    if "?" in normalized or normalized.startswith(QUESTION_STARTS):
        return IntentClassification(Intent.QUESTION, 0.75)

    if len(normalized) < 20 and normalized.startswith(GREETINGS):
        return IntentClassification(Intent.GREETING, 0.9)

    if match_any_keyword(normalized, THANKS_KEYWORDS):
        return IntentClassification(Intent.THANKS, 0.9)

    return None


def _from_model(result: dict) -> IntentClassification:
    try:
        intent = Intent(result.get("intent"))
    except ValueError:
        intent = Intent.UNCLEAR

    confidence = result.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = 0.5
    confidence = min(max(float(confidence), 0.0), 1.0)

    if intent == Intent.OPT_OUT and confidence < OPT_OUT_MIN_CONFIDENCE:
        logger.info("Low-confidence opt-out (%.2f) downgraded to negative_response", confidence)
        intent = Intent.NEGATIVE_RESPONSE

    requires = result.get("requiresEscalation") is True
    reason = result.get("escalationReason")
    reason = reason.strip() if isinstance(reason, str) else ""
    if intent == Intent.REQUEST_HUMAN:
        requires = True
        reason = HANDOFF_REASON_HUMAN
    elif requires and not reason:
        reason = "Classifier flagged the message for a human"

    return IntentClassification(
        intent=intent,
        confidence=confidence,
        requires_escalation=requires,
        escalation_reason=reason if requires else "",
    )


class IntentClassifier:
    """Classifies one inbound message. Never raises."""

    def __init__(self, llm, model: str = FAST_MODEL):
        self.llm = llm
        self.model = model

    async def detect(self, message: str, context) -> IntentClassification:
        message = (message or "").strip()
        result = fast_path(message, context.state.current_goal)
        if result is None:
            result = await self._classify_with_model(message, context)

        if not result.requires_escalation and match_any_keyword(message, FRUSTRATION_KEYWORDS):
            result.requires_escalation = True
            result.escalation_reason = HANDOFF_REASON_FRUSTRATION

        logger.info(
            "Intent: %s (%.2f)%s",
            result.intent.value, result.confidence,
            " escalate" if result.requires_escalation else "",
        )
        return result

    async def _classify_with_model(self, message: str, context) -> IntentClassification:
        summary = context.summary or "New conversation"
        try:
            result = await self.llm.complete_json(
                CLASSIFIER_SYSTEM_PROMPT,
                f'Context: {summary}\n\nMessage to classify: "{message}"',
                model=self.model,
                max_tokens=100,
            )
            return _from_model(result)
        except Exception as e:
            logger.warning("Intent classification failed, treating as unclear: %s", e)
            return IntentClassification(Intent.UNCLEAR, 0.0)
