"""Qualification assessment against a workflow's criteria.

Each criterion gets one of three verdicts: matched, missed or unknown. A
verdict that was already decided on an earlier turn is never revisited; the
model only fills in criteria that are still unknown, and a small set of
deterministic rules over the extracted facts covers what the model leaves
undecided. Identical inputs hit the cache, so re-running an assessment on
the same transcript gives the same verdicts.
"""

import copy
import hashlib
import json
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field

from bookerbot.context import (
    ExtractedInfo,
    QualificationState,
    advance_status,
    align_criteria,
    criterion_label,
    derive_status,
)
from bookerbot.llm import FAST_MODEL
from bookerbot.states import Intent, QualificationStatus
from bookerbot.transcript import to_plain_text
from bookerbot.validation import match_any_keyword, parse_amount

logger = logging.getLogger(__name__)

SKIP_ASSESSMENT_INTENTS = {Intent.OPT_OUT, Intent.REQUEST_HUMAN}

VERDICTS = {"matched", "missed", "unknown"}

ASSESSOR_SYSTEM_PROMPT = """You are a qualification assessor. Analyze a conversation and decide, for each numbered criterion, whether the contact meets it.

For each criterion answer:
- matched: clear evidence in the conversation that they meet it
- missed: clear evidence that they do NOT meet it
- unknown: not enough information to decide

Only use matched or missed when the contact has said so. When in doubt, answer unknown.
Also extract any useful facts the contact mentioned.

Respond in JSON only:
{
  "criteria": [{"number": 1, "status": "matched|missed|unknown", "evidence": "..."}],
  "extractedInfo": {
    "isDecisionMaker": true/false/null,
    "hasActiveNeed": true/false/null,
    "budget": "string or null",
    "timeline": "string or null",
    "companySize": "string or null",
    "preferredContactMethod": "string or null",
    "objections": [],
    "preferredTimes": [],
    "additionalNotes": []
  }
}"""

_MINIMUM_WORDS = ("over", "above", "at least", "more than", "minimum", "min")
_MAXIMUM_WORDS = ("under", "below", "less than", "at most", "maximum", "max")
_MINIMUM_SYMBOLS = (">", "+")
_MAXIMUM_SYMBOLS = ("<",)


@dataclass
class Assessment:
    status: QualificationStatus
    criteria_matched: list = field(default_factory=list)
    criteria_unknown: list = field(default_factory=list)
    criteria_missed: list = field(default_factory=list)
    extracted_info: ExtractedInfo | None = None

    def to_qualification(self) -> QualificationState:
        return QualificationState(
            status=self.status,
            criteria_matched=list(self.criteria_matched),
            criteria_unknown=list(self.criteria_unknown),
            criteria_missed=list(self.criteria_missed),
        )

    @classmethod
    def from_qualification(cls, qualification: QualificationState) -> "Assessment":
        return cls(
            status=qualification.status,
            criteria_matched=list(qualification.criteria_matched),
            criteria_unknown=list(qualification.criteria_unknown),
            criteria_missed=list(qualification.criteria_missed),
        )


class AssessmentCache:
    """Bounded LRU of assessments keyed on criteria, transcript and prior verdicts.

    Construct once and share between assessors; entries are copied in and
    out so callers can't mutate a cached verdict.
    """

    def __init__(self, max_entries: int = 256):
        self.max_entries = max_entries
        self._entries: OrderedDict[str, Assessment] = OrderedDict()

    @staticmethod
    def key(criteria: list[str], transcript: str, previous: QualificationState) -> str:
        raw = json.dumps(
            {
                "criteria": list(criteria),
                "transcript": transcript,
                "matched": sorted(previous.criteria_matched),
                "missed": sorted(previous.criteria_missed),
            },
            sort_keys=True,
        )
        return hashlib.sha256(raw.encode()).hexdigest()

    def get(self, key: str) -> Assessment | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        self._entries.move_to_end(key)
        return copy.deepcopy(entry)

    def put(self, key: str, assessment: Assessment):
        self._entries[key] = copy.deepcopy(assessment)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)


# --- Deterministic rules ---

def _threshold_verdict(label: str, value: str) -> str:
    """Compare an extracted amount against a threshold written in the criterion."""
    threshold = parse_amount(label)
    amount = parse_amount(value)
    if threshold is None or amount is None:
        return "unknown"
    if match_any_keyword(label, _MAXIMUM_WORDS) or any(s in label for s in _MAXIMUM_SYMBOLS):
        return "matched" if amount <= threshold else "missed"
    if match_any_keyword(label, _MINIMUM_WORDS) or any(s in label for s in _MINIMUM_SYMBOLS):
        return "matched" if amount >= threshold else "missed"
    return "unknown"


def _bool_verdict(value) -> str:
    if value is True:
        return "matched"
    if value is False:
        return "missed"
    return "unknown"


def rule_verdict(criterion: str, info: ExtractedInfo) -> str:
    """Verdict from extracted facts alone, for the common criterion shapes."""
    label = criterion_label(criterion).lower()
    if re.search(r"\bdecision[- ]?maker\b", label):
        return _bool_verdict(info.is_decision_maker)
    if re.search(r"\b(active|current|immediate) need\b|\bneeds? (our|the) ", label):
        return _bool_verdict(info.has_active_need)
    if "budget" in label and info.budget:
        return _threshold_verdict(label, info.budget)
    if re.search(r"\b(company size|employees|headcount|team size)\b", label) and info.company_size:
        return _threshold_verdict(label, info.company_size)
    return "unknown"


def _model_verdicts(result: dict, criteria: list[str]) -> dict[str, str]:
    """Map the model's numbered verdicts back onto criterion strings."""
    verdicts = {}
    items = result.get("criteria") or result.get("criteriaAssessment") or []
    if not isinstance(items, list):
        return verdicts
    by_text = {c.lower(): c for c in criteria}
    for item in items:
        if not isinstance(item, dict):
            continue
        status = str(item.get("status", "")).strip().lower()
        if status not in VERDICTS:
            continue
        number = item.get("number")
        criterion = None
        if isinstance(number, int) and not isinstance(number, bool) and 1 <= number <= len(criteria):
            criterion = criteria[number - 1]
        elif isinstance(item.get("criterion"), str):
            criterion = by_text.get(item["criterion"].strip().lower())
        if criterion is not None and criterion not in verdicts:
            verdicts[criterion] = status
    return verdicts


def _user_prompt(criteria: list[str], previous: QualificationState, transcript: str) -> str:
    numbered = "\n".join(f"{i}. {criterion_label(c)}" for i, c in enumerate(criteria, 1))
    return (
        "Analyze this conversation against the qualification criteria.\n\n"
        f"CRITERIA TO ASSESS:\n{numbered}\n\n"
        "PREVIOUS ASSESSMENT:\n"
        f"- Already matched: {', '.join(previous.criteria_matched) or 'None'}\n"
        f"- Previously missed: {', '.join(previous.criteria_missed) or 'None'}\n\n"
        f"CONVERSATION:\n{transcript}\n\n"
        "Assess each criterion and extract relevant information."
    )


class QualificationAssessor:
    def __init__(self, llm, cache: AssessmentCache | None = None, model: str = FAST_MODEL):
        self.llm = llm
        self.cache = cache if cache is not None else AssessmentCache()
        self.model = model

    async def assess(
        self,
        criteria: list[str],
        context,
        history: list,
        latest_message: str,
        intent: Intent | None = None,
    ) -> Assessment:
        if not criteria:
            return Assessment(status=QualificationStatus.QUALIFIED)

        previous = align_criteria(context.qualification, criteria)
        if intent in SKIP_ASSESSMENT_INTENTS:
            return Assessment.from_qualification(previous)

        transcript = to_plain_text(history, latest_message)
        key = AssessmentCache.key(criteria, transcript, previous)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Assessment cache hit")
            return cached

        try:
            result = await self.llm.complete_json(
                ASSESSOR_SYSTEM_PROMPT,
                _user_prompt(criteria, previous, transcript),
                model=self.model,
                max_tokens=500,
            )
        except Exception as e:
            logger.warning("Qualification assessment failed, keeping previous verdicts: %s", e)
            return Assessment.from_qualification(previous)

        extracted = ExtractedInfo.from_dict(result.get("extractedInfo"))
        assessment = self._resolve(criteria, previous, _model_verdicts(result, criteria),
                                   context.extracted_info.merged(extracted))
        assessment.extracted_info = extracted
        self.cache.put(key, assessment)

        logger.info(
            "Qualification: %s (matched=%d unknown=%d missed=%d)",
            assessment.status.value,
            len(assessment.criteria_matched),
            len(assessment.criteria_unknown),
            len(assessment.criteria_missed),
        )
        return assessment

    def _resolve(self, criteria, previous, model_verdicts, facts) -> Assessment:
        matched, unknown, missed = [], [], []
        for criterion in criteria:
            verdict = previous.verdict(criterion)
            if verdict == "unknown":
                verdict = model_verdicts.get(criterion, "unknown")
            if verdict == "unknown":
                verdict = rule_verdict(criterion, facts)

            if verdict == "matched":
                matched.append(criterion)
            elif verdict == "missed":
                missed.append(criterion)
            else:
                unknown.append(criterion)

        status = advance_status(previous.status, derive_status(matched, unknown, missed))
        return Assessment(
            status=status,
            criteria_matched=matched,
            criteria_unknown=unknown,
            criteria_missed=missed,
        )
