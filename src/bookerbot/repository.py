"""Persistence seam for the conversation engine.

The orchestrator and webhook handler depend only on the ``Repository``
protocol. ``InMemoryRepository`` backs tests and local runs; a relational
implementation provides the same coroutines against the real tables.
"""

import copy
import logging
import uuid
from typing import Protocol

from bookerbot.context import stored_turn_count
from bookerbot.errors import ConcurrentUpdate, PersistenceError
from bookerbot.models import Client, Contact, ContactBundle, Message, Workflow
from bookerbot.validation import normalize_phone

logger = logging.getLogger(__name__)


class Repository(Protocol):
    async def get_contact_with_workflow_and_client(self, contact_id: str) -> ContactBundle | None: ...

    async def save_message(self, message: Message) -> Message: ...

    async def update_message(self, message_id: str, fields: dict) -> None: ...

    async def update_contact(self, contact_id: str, fields: dict) -> None: ...

    async def update_context(
        self,
        contact_id: str,
        context: dict,
        expected_turn_count: int | None = None,
    ) -> None: ...

    async def list_messages(self, contact_id: str) -> list[Message]: ...

    async def find_message_by_provider_sid(self, sid: str) -> Message | None: ...

    async def find_contacts_by_phone(self, phone: str) -> list[Contact]: ...


class InMemoryRepository:
    """Dict-backed repository. Reads hand out copies so callers can't
    mutate stored rows behind the repository's back."""

    def __init__(self):
        self.clients: dict[str, Client] = {}
        self.workflows: dict[str, Workflow] = {}
        self.contacts: dict[str, Contact] = {}
        self.messages: dict[str, Message] = {}

    # --- Seeding ---

    def add_client(self, client: Client) -> Client:
        self.clients[client.id] = client
        return client

    def add_workflow(self, workflow: Workflow) -> Workflow:
        self.workflows[workflow.id] = workflow
        return workflow

    def add_contact(self, contact: Contact) -> Contact:
        contact.phone = normalize_phone(contact.phone)
        self.contacts[contact.id] = contact
        return contact

    # --- Repository protocol ---

    async def get_contact_with_workflow_and_client(self, contact_id: str) -> ContactBundle | None:
        contact = self.contacts.get(contact_id)
        if contact is None:
            return None
        workflow = self.workflows.get(contact.workflow_id)
        if workflow is None:
            logger.error("Contact %s references missing workflow %s", contact_id, contact.workflow_id)
            return None
        client = self.clients.get(workflow.client_id)
        return ContactBundle(
            contact=copy.deepcopy(contact),
            workflow=copy.deepcopy(workflow),
            client=copy.deepcopy(client),
        )

    async def save_message(self, message: Message) -> Message:
        if message.contact_id not in self.contacts:
            raise PersistenceError(f"Unknown contact {message.contact_id}")
        stored = copy.deepcopy(message)
        if not stored.id:
            stored.id = str(uuid.uuid4())
        self.messages[stored.id] = stored
        return copy.deepcopy(stored)

    async def update_message(self, message_id: str, fields: dict) -> None:
        message = self.messages.get(message_id)
        if message is None:
            raise PersistenceError(f"Unknown message {message_id}")
        for key, value in fields.items():
            setattr(message, key, value)

    async def update_contact(self, contact_id: str, fields: dict) -> None:
        contact = self.contacts.get(contact_id)
        if contact is None:
            raise PersistenceError(f"Unknown contact {contact_id}")
        for key, value in fields.items():
            if not hasattr(contact, key):
                raise PersistenceError(f"Unknown contact field {key}")
            setattr(contact, key, value)

    async def update_context(
        self,
        contact_id: str,
        context: dict,
        expected_turn_count: int | None = None,
    ) -> None:
        """Write the context; with ``expected_turn_count``, only if the stored
        turn count still matches (compare-and-set)."""
        contact = self.contacts.get(contact_id)
        if contact is None:
            raise PersistenceError(f"Unknown contact {contact_id}")
        if expected_turn_count is not None:
            current = stored_turn_count(contact.conversation_context)
            if current != expected_turn_count:
                raise ConcurrentUpdate(
                    f"Context for {contact_id} is at turn {current}, expected {expected_turn_count}"
                )
        contact.conversation_context = copy.deepcopy(context)

    async def list_messages(self, contact_id: str) -> list[Message]:
        messages = [m for m in self.messages.values() if m.contact_id == contact_id]
        return [copy.deepcopy(m) for m in sorted(messages, key=lambda m: m.created_at)]

    async def find_message_by_provider_sid(self, sid: str) -> Message | None:
        if not sid:
            return None
        for message in self.messages.values():
            if message.provider_sid == sid:
                return copy.deepcopy(message)
        return None

    async def find_contacts_by_phone(self, phone: str) -> list[Contact]:
        normalized = normalize_phone(phone)
        if not normalized:
            return []
        matches = [c for c in self.contacts.values() if c.phone == normalized]
        # Most recently active first
        matches.sort(
            key=lambda c: c.last_message_at.timestamp() if c.last_message_at else 0.0,
            reverse=True,
        )
        return [copy.deepcopy(c) for c in matches]
