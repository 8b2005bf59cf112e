"""Conversation context: the per-contact memory persisted as a JSON column.

``parse`` is the only place raw JSON is read; everything past it works on
typed dataclasses. ``update`` is a pure merge: it never mutates its inputs
and depends only on its arguments.
"""

import logging
from dataclasses import dataclass, field, replace

from bookerbot.state_machine import next_goal
from bookerbot.states import ConversationGoal, Intent, QualificationStatus
from bookerbot.validation import clean_bool, clean_list, clean_text

logger = logging.getLogger(__name__)

ADVISORY_PREFIXES = ("(optional)", "[optional]", "(advisory)", "[advisory]")


def is_advisory(criterion: str) -> bool:
    return criterion.strip().lower().startswith(ADVISORY_PREFIXES)


def criterion_label(criterion: str) -> str:
    """Criterion text without its advisory marker."""
    stripped = criterion.strip()
    lower = stripped.lower()
    for prefix in ADVISORY_PREFIXES:
        if lower.startswith(prefix):
            return stripped[len(prefix):].strip()
    return stripped


@dataclass
class ExtractedInfo:
    is_decision_maker: bool | None = None
    has_active_need: bool | None = None
    budget: str = ""
    timeline: str = ""
    company_size: str = ""
    preferred_contact_method: str = ""
    objections: list = field(default_factory=list)
    preferred_times: list = field(default_factory=list)
    additional_notes: list = field(default_factory=list)

    def merged(self, update: "ExtractedInfo | None") -> "ExtractedInfo":
        """Scalars overwrite only with a concrete value; lists append (deduped)."""
        if update is None:
            return replace(
                self,
                objections=list(self.objections),
                preferred_times=list(self.preferred_times),
                additional_notes=list(self.additional_notes),
            )

        def pick(old, new):
            return new if new not in (None, "") else old

        def extend(old, new):
            result = list(old)
            for item in new:
                if item not in result:
                    result.append(item)
            return result

        return ExtractedInfo(
            is_decision_maker=pick(self.is_decision_maker, update.is_decision_maker),
            has_active_need=pick(self.has_active_need, update.has_active_need),
            budget=pick(self.budget, update.budget),
            timeline=pick(self.timeline, update.timeline),
            company_size=pick(self.company_size, update.company_size),
            preferred_contact_method=pick(
                self.preferred_contact_method, update.preferred_contact_method
            ),
            objections=extend(self.objections, update.objections),
            preferred_times=extend(self.preferred_times, update.preferred_times),
            additional_notes=extend(self.additional_notes, update.additional_notes),
        )

    @classmethod
    def from_dict(cls, data) -> "ExtractedInfo":
        """Build from persisted (camelCase) or model-produced data."""
        if not isinstance(data, dict):
            return cls()

        def get(camel, snake):
            return data.get(camel, data.get(snake))

        return cls(
            is_decision_maker=clean_bool(get("isDecisionMaker", "is_decision_maker")),
            has_active_need=clean_bool(get("hasActiveNeed", "has_active_need")),
            budget=clean_text(get("budget", "budget")),
            timeline=clean_text(get("timeline", "timeline")),
            company_size=clean_text(get("companySize", "company_size")),
            preferred_contact_method=clean_text(
                get("preferredContactMethod", "preferred_contact_method")
            ),
            objections=clean_list(get("objections", "objections")),
            preferred_times=clean_list(get("preferredTimes", "preferred_times")),
            additional_notes=clean_list(get("additionalNotes", "additional_notes")),
        )

    def to_dict(self) -> dict:
        return {
            "isDecisionMaker": self.is_decision_maker,
            "hasActiveNeed": self.has_active_need,
            "budget": self.budget or None,
            "timeline": self.timeline or None,
            "companySize": self.company_size or None,
            "preferredContactMethod": self.preferred_contact_method or None,
            "objections": list(self.objections),
            "preferredTimes": list(self.preferred_times),
            "additionalNotes": list(self.additional_notes),
        }


@dataclass
class QualificationState:
    status: QualificationStatus = QualificationStatus.UNKNOWN
    criteria_matched: list = field(default_factory=list)
    criteria_unknown: list = field(default_factory=list)
    criteria_missed: list = field(default_factory=list)

    def verdict(self, criterion: str) -> str:
        if criterion in self.criteria_matched:
            return "matched"
        if criterion in self.criteria_missed:
            return "missed"
        return "unknown"

    def all_criteria(self) -> list[str]:
        return [*self.criteria_matched, *self.criteria_unknown, *self.criteria_missed]


@dataclass
class ConversationState:
    current_goal: ConversationGoal = ConversationGoal.INITIAL_ENGAGEMENT
    turn_count: int = 0
    last_intent: Intent = Intent.UNCLEAR
    escalation_attempts: int = 0
    follow_ups_sent: int = 0
    last_message_at: str | None = None
    last_provider_message_id: str = ""


@dataclass
class ConversationContext:
    extracted_info: ExtractedInfo = field(default_factory=ExtractedInfo)
    qualification: QualificationState = field(default_factory=QualificationState)
    state: ConversationState = field(default_factory=ConversationState)
    summary: str = ""
    workflow_id: str = ""


@dataclass
class ContextDelta:
    """Everything one turn contributes to the context."""
    intent: Intent
    user_message: str
    assistant_message: str
    at: str | None = None
    goal: ConversationGoal | None = None
    qualification: QualificationState | None = None
    extracted_info: ExtractedInfo | None = None
    escalated: bool = False
    provider_message_id: str = ""


# --- Parse / serialize ---

def new_context(workflow_id: str = "") -> ConversationContext:
    return ConversationContext(workflow_id=workflow_id)


def _enum(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


def _count(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return 0
    return value


def _strings(value) -> list[str]:
    if not isinstance(value, list):
        return []
    result = []
    for item in value:
        if isinstance(item, str) and item and item not in result:
            result.append(item)
    return result


def _parse_qualification(data) -> QualificationState:
    if not isinstance(data, dict):
        return QualificationState()
    matched = _strings(data.get("criteriaMatched"))
    missed = [c for c in _strings(data.get("criteriaMissed")) if c not in matched]
    unknown = [
        c for c in _strings(data.get("criteriaUnknown"))
        if c not in matched and c not in missed
    ]
    return QualificationState(
        status=_enum(QualificationStatus, data.get("status"), QualificationStatus.UNKNOWN),
        criteria_matched=matched,
        criteria_unknown=unknown,
        criteria_missed=missed,
    )


def _parse_state(data) -> ConversationState:
    if not isinstance(data, dict):
        return ConversationState()
    last_at = data.get("lastMessageAt")
    provider_id = data.get("lastProviderMessageId")
    return ConversationState(
        current_goal=_enum(
            ConversationGoal, data.get("currentGoal"), ConversationGoal.INITIAL_ENGAGEMENT
        ),
        turn_count=_count(data.get("turnCount")),
        last_intent=_enum(Intent, data.get("lastIntent"), Intent.UNCLEAR),
        escalation_attempts=_count(data.get("escalationAttempts")),
        follow_ups_sent=_count(data.get("followUpsSent")),
        last_message_at=last_at if isinstance(last_at, str) else None,
        last_provider_message_id=provider_id if isinstance(provider_id, str) else "",
    )


def parse(raw, workflow_id: str | None = None) -> ConversationContext:
    """Parse a persisted context. Never raises: bad input gives a fresh context.

    A context recorded for a different workflow is discarded, since the
    contact was re-assigned and its criteria no longer apply.
    """
    if not isinstance(raw, dict):
        return new_context(workflow_id or "")

    stored_workflow = raw.get("workflowId")
    if workflow_id and isinstance(stored_workflow, str) and stored_workflow != workflow_id:
        logger.info(
            "Context built for workflow %s, contact now on %s; resetting",
            stored_workflow, workflow_id,
        )
        return new_context(workflow_id)

    summary = raw.get("summary")
    return ConversationContext(
        extracted_info=ExtractedInfo.from_dict(raw.get("extractedInfo")),
        qualification=_parse_qualification(raw.get("qualification")),
        state=_parse_state(raw.get("state")),
        summary=summary if isinstance(summary, str) else "",
        workflow_id=workflow_id or (stored_workflow if isinstance(stored_workflow, str) else ""),
    )


def stored_turn_count(raw) -> int:
    """Turn count of a persisted context as stored, 0 when absent or malformed."""
    if not isinstance(raw, dict) or not isinstance(raw.get("state"), dict):
        return 0
    return _count(raw["state"].get("turnCount"))


def serialize(context: ConversationContext) -> dict:
    qual = context.qualification
    state = context.state
    return {
        "workflowId": context.workflow_id,
        "extractedInfo": context.extracted_info.to_dict(),
        "qualification": {
            "status": qual.status.value,
            "criteriaMatched": list(qual.criteria_matched),
            "criteriaUnknown": list(qual.criteria_unknown),
            "criteriaMissed": list(qual.criteria_missed),
        },
        "state": {
            "currentGoal": state.current_goal.value,
            "turnCount": state.turn_count,
            "lastIntent": state.last_intent.value,
            "escalationAttempts": state.escalation_attempts,
            "followUpsSent": state.follow_ups_sent,
            "lastMessageAt": state.last_message_at,
            "lastProviderMessageId": state.last_provider_message_id,
        },
        "summary": context.summary,
    }


# --- Qualification rules ---

def derive_status(matched, unknown, missed) -> QualificationStatus:
    """Overall status from a criteria partition.

    Advisory criteria never disqualify. Qualified needs every required
    criterion matched and nothing left undetermined.
    """
    if any(not is_advisory(c) for c in missed):
        return QualificationStatus.DISQUALIFIED
    if not unknown:
        return QualificationStatus.QUALIFIED
    if matched:
        return QualificationStatus.PARTIAL
    return QualificationStatus.UNKNOWN


def advance_status(previous: QualificationStatus, candidate: QualificationStatus) -> QualificationStatus:
    if candidate.rank > previous.rank:
        return candidate
    return previous


def align_criteria(qualification: QualificationState, criteria: list[str]) -> QualificationState:
    """Re-partition a qualification against the configured criteria list.

    Decided verdicts for criteria still configured are kept, new criteria
    start unknown and removed ones drop out. When the list is unchanged the
    status is kept as-is; otherwise it is re-derived from the new partition.
    """
    matched = [c for c in criteria if c in qualification.criteria_matched]
    missed = [
        c for c in criteria
        if c in qualification.criteria_missed and c not in matched
    ]
    unknown = [c for c in criteria if c not in matched and c not in missed]
    if sorted(qualification.all_criteria()) == sorted(criteria):
        status = qualification.status
    else:
        status = derive_status(matched, unknown, missed)
    return QualificationState(
        status=status,
        criteria_matched=matched,
        criteria_unknown=unknown,
        criteria_missed=missed,
    )


def merge_qualification(previous: QualificationState, update: QualificationState) -> QualificationState:
    """Merge an assessment into the stored verdicts.

    A criterion already matched or missed keeps its verdict. A criterion the
    update lists as both matched and missed stays unknown.
    """
    decided = set(previous.criteria_matched) | set(previous.criteria_missed)
    contested = set(update.criteria_matched) & set(update.criteria_missed)

    matched = list(previous.criteria_matched)
    for c in update.criteria_matched:
        if c not in decided and c not in contested and c not in matched:
            matched.append(c)
    missed = list(previous.criteria_missed)
    for c in update.criteria_missed:
        if c not in decided and c not in contested and c not in missed:
            missed.append(c)

    unknown = []
    candidates = [
        *previous.criteria_unknown, *update.criteria_unknown,
        *update.criteria_matched, *update.criteria_missed,
    ]
    for c in candidates:
        if c not in matched and c not in missed and c not in unknown:
            unknown.append(c)

    status = advance_status(previous.status, derive_status(matched, unknown, missed))
    return QualificationState(
        status=status,
        criteria_matched=matched,
        criteria_unknown=unknown,
        criteria_missed=missed,
    )


# --- Update ---

def update(previous: ConversationContext, delta: ContextDelta) -> ConversationContext:
    if delta.qualification is not None:
        qualification = merge_qualification(previous.qualification, delta.qualification)
    else:
        qualification = replace(
            previous.qualification,
            criteria_matched=list(previous.qualification.criteria_matched),
            criteria_unknown=list(previous.qualification.criteria_unknown),
            criteria_missed=list(previous.qualification.criteria_missed),
        )

    goal = delta.goal or next_goal(
        previous.state.current_goal, delta.intent, qualification.status
    )
    state = ConversationState(
        current_goal=goal,
        turn_count=previous.state.turn_count + 1,
        last_intent=delta.intent,
        escalation_attempts=previous.state.escalation_attempts + (1 if delta.escalated else 0),
        follow_ups_sent=previous.state.follow_ups_sent,
        last_message_at=delta.at or previous.state.last_message_at,
        last_provider_message_id=delta.provider_message_id or previous.state.last_provider_message_id,
    )
    extracted = previous.extracted_info.merged(delta.extracted_info)

    return ConversationContext(
        extracted_info=extracted,
        qualification=qualification,
        state=state,
        summary=generate_summary(extracted, qualification, state),
        workflow_id=previous.workflow_id,
    )


def record_follow_up(context: ConversationContext, budget: int) -> ConversationContext:
    """Count one automated follow-up; an exhausted budget closes the conversation."""
    sent = context.state.follow_ups_sent + 1
    if context.state.current_goal.is_terminal or sent >= budget:
        goal = ConversationGoal.CLOSING
    else:
        goal = ConversationGoal.FOLLOW_UP
    state = replace(context.state, follow_ups_sent=sent, current_goal=goal)
    return replace(
        context,
        state=state,
        extracted_info=context.extracted_info.merged(None),
        summary=generate_summary(context.extracted_info, context.qualification, state),
    )


def generate_summary(
    info: ExtractedInfo,
    qualification: QualificationState,
    state: ConversationState,
) -> str:
    parts = []

    if qualification.status == QualificationStatus.QUALIFIED:
        parts.append("Contact is QUALIFIED.")
    elif qualification.status == QualificationStatus.PARTIAL:
        parts.append(f"Partially qualified ({len(qualification.criteria_matched)} criteria met).")
    elif qualification.status == QualificationStatus.DISQUALIFIED:
        parts.append("Contact does NOT meet qualification criteria.")

    if info.is_decision_maker is True:
        parts.append("Is a decision maker.")
    elif info.is_decision_maker is False:
        parts.append("Is not the decision maker.")
    if info.has_active_need is True:
        parts.append("Has an active need.")
    if info.timeline:
        parts.append(f"Timeline: {info.timeline}.")
    if info.budget:
        parts.append(f"Budget: {info.budget}.")
    if info.company_size:
        parts.append(f"Company size: {info.company_size}.")
    if info.objections:
        parts.append(f"Objections raised: {', '.join(info.objections)}.")
    if info.preferred_times:
        parts.append(f"Prefers: {', '.join(info.preferred_times)}.")

    parts.append(f"Turn {state.turn_count}. Goal: {state.current_goal.value.replace('_', ' ')}.")
    return " ".join(parts)
