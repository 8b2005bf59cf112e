"""Domain records shared by the engine and its collaborators.

These mirror the rows of the relational store (contacts, workflows,
clients, messages). The orchestrator only reads them; writes go through
the repository.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from bookerbot.states import Channel, ContactStatus, Direction, WorkflowStatus

DEFAULT_DOS = [
    "Be helpful and answer questions",
    "Be respectful of their time",
    "Keep responses brief for SMS",
]
DEFAULT_DONTS = [
    "Be pushy or aggressive",
    "Make promises you cannot keep",
    "Ignore opt-out requests",
]
DEFAULT_TONE = "Professional and friendly"
DEFAULT_OPT_OUT_MESSAGE = (
    "You've been unsubscribed and won't receive any more messages from us. Take care!"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FAQ:
    question: str
    answer: str


@dataclass
class Client:
    id: str
    name: str
    brand_summary: str = ""
    brand_services: list = field(default_factory=list)
    brand_target_audience: str = ""
    brand_tone: str = ""
    brand_faqs: list = field(default_factory=list)
    brand_dos: list = field(default_factory=list)
    brand_donts: list = field(default_factory=list)
    twilio_phone_number: str = ""
    timezone: str = ""


@dataclass
class Workflow:
    id: str
    client_id: str
    name: str
    channel: Channel = Channel.SMS
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    description: str = ""
    instructions: str = ""
    qualification_criteria: str = ""
    appointment_duration_minutes: int = 30
    opt_out_message: str = ""
    follow_up_count: int = 3


@dataclass
class Contact:
    id: str
    workflow_id: str
    phone: str = ""
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    status: ContactStatus = ContactStatus.PENDING
    opted_out: bool = False
    opted_out_at: datetime | None = None
    last_message_at: datetime | None = None
    # Raw persisted JSON; parsed only by bookerbot.context.parse
    conversation_context: dict | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Message:
    contact_id: str
    direction: Direction
    channel: Channel
    content: str
    id: str = ""
    created_at: datetime = field(default_factory=utcnow)
    status: str = "pending"
    provider_sid: str = ""
    ai_generated: bool = False
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    error_message: str = ""


@dataclass
class ContactBundle:
    """A contact joined with its workflow and the workflow's client."""
    contact: Contact
    workflow: Workflow
    client: Client | None = None


@dataclass
class WorkflowKnowledge:
    company_name: str = "the company"
    brand_summary: str = ""
    services: list = field(default_factory=list)
    target_audience: str = ""
    tone: str = DEFAULT_TONE
    faqs: list = field(default_factory=list)
    qualification_criteria: list = field(default_factory=list)
    dos: list = field(default_factory=lambda: list(DEFAULT_DOS))
    donts: list = field(default_factory=lambda: list(DEFAULT_DONTS))
    goal: str = ""


def parse_criteria(text: str) -> list[str]:
    """Split newline-separated criteria text, dropping bullets and blanks."""
    if not text:
        return []
    criteria = []
    for line in text.split("\n"):
        cleaned = re.sub(r"^[-*]\s*", "", line.strip()).strip()
        if cleaned and cleaned not in criteria:
            criteria.append(cleaned)
    return criteria


def _faqs(raw) -> list[FAQ]:
    faqs = []
    for item in raw or []:
        if isinstance(item, FAQ):
            faqs.append(item)
        elif isinstance(item, dict) and item.get("question") and item.get("answer"):
            faqs.append(FAQ(question=str(item["question"]), answer=str(item["answer"])))
    return faqs


def knowledge_from_workflow(workflow: Workflow, client: Client | None) -> WorkflowKnowledge:
    knowledge = WorkflowKnowledge(
        qualification_criteria=parse_criteria(workflow.qualification_criteria),
        goal=workflow.description or workflow.name,
    )
    if client is None:
        knowledge.brand_summary = workflow.instructions[:200]
        return knowledge

    knowledge.company_name = client.name
    knowledge.brand_summary = client.brand_summary
    knowledge.services = list(client.brand_services or [])
    knowledge.target_audience = client.brand_target_audience
    knowledge.tone = client.brand_tone or DEFAULT_TONE
    knowledge.faqs = _faqs(client.brand_faqs)
    if client.brand_dos:
        knowledge.dos = list(client.brand_dos)
    if client.brand_donts:
        knowledge.donts = list(client.brand_donts)
    return knowledge
