import copy
from unittest.mock import AsyncMock

import pytest

from bookerbot.intent import CLASSIFIER_SYSTEM_PROMPT, IntentClassifier
from bookerbot.llm import Generation, TokenUsage
from bookerbot.models import Client, Contact, Workflow
from bookerbot.orchestrator import ContactLocks, ConversationOrchestrator
from bookerbot.qualification import AssessmentCache, QualificationAssessor
from bookerbot.repository import InMemoryRepository
from bookerbot.states import Channel, ContactStatus


class ScriptedLLM:
    """Stands in for LLMClient: canned classifier/assessor JSON and replies."""

    def __init__(self):
        self.reply = "Great to hear from you! Are you the one who makes the call on this?"
        self.intent = {"intent": "unclear", "confidence": 0.5, "requiresEscalation": False}
        self.assessment = {"criteria": [], "extractedInfo": {}}
        self.generate = AsyncMock(side_effect=self._generate)
        self.complete_json = AsyncMock(side_effect=self._complete_json)

    async def _generate(self, config):
        return Generation(
            content=self.reply,
            usage=TokenUsage(input=120, output=30, total=150, model=config.model),
        )

    async def _complete_json(self, system, user, *, model, max_tokens):
        if system == CLASSIFIER_SYSTEM_PROMPT:
            return copy.deepcopy(self.intent)
        return copy.deepcopy(self.assessment)

    @property
    def assessor_calls(self) -> int:
        return sum(
            1 for call in self.complete_json.call_args_list
            if call.args[0] != CLASSIFIER_SYSTEM_PROMPT
        )


@pytest.fixture
def client_record():
    return Client(
        id="client-1",
        name="Acme Solar",
        brand_summary="Residential solar installs in Central Texas",
        brand_services=["Solar panels", "Battery storage"],
        brand_tone="Warm and straightforward",
        twilio_phone_number="+15125550000",
    )


@pytest.fixture
def workflow():
    return Workflow(
        id="wf-1",
        client_id="client-1",
        name="Spring solar leads",
        channel=Channel.SMS,
        description="Book a 30-minute solar consult",
        instructions="Mention the spring rebate if they ask about price.",
        qualification_criteria="- decision maker\n- budget over 10k",
    )


@pytest.fixture
def contact():
    return Contact(
        id="contact-1",
        workflow_id="wf-1",
        phone="+15125551234",
        first_name="Dana",
        last_name="Reyes",
        status=ContactStatus.CONTACTED,
    )


@pytest.fixture
def repo(client_record, workflow, contact):
    repository = InMemoryRepository()
    repository.add_client(client_record)
    repository.add_workflow(workflow)
    repository.add_contact(contact)
    return repository


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def orchestrator(repo, llm):
    return ConversationOrchestrator(
        repo,
        IntentClassifier(llm),
        QualificationAssessor(llm, AssessmentCache()),
        llm,
        locks=ContactLocks(),
        generation_timeout=5.0,
    )
