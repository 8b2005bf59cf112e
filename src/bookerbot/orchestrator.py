"""One conversational turn: guard, classify, assess, generate, persist.

A turn for a given contact runs under that contact's lock, and the context
write is a compare-and-set on the stored turn count, so two deliveries for
the same contact can never interleave their read-modify-write. A turn
either commits the new context, the outbound message and the contact
fields, or leaves all three as they were.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from bookerbot import context as ctx
from bookerbot.errors import (
    ContactHandedOff,
    ContactNotFound,
    ContactOptedOut,
    DuplicateMessage,
    GenerationError,
    OrchestratorError,
    PersistenceError,
    StaleMessage,
    WorkflowInactive,
)
from bookerbot.intent import IntentClassification
from bookerbot.llm import TokenUsage, estimate_cost
from bookerbot.models import DEFAULT_OPT_OUT_MESSAGE, Message, knowledge_from_workflow, utcnow
from bookerbot.prompts import CHANNEL_POLICIES, build_prompt
from bookerbot.qualification import Assessment
from bookerbot.state_machine import (
    StatusUpdate,
    check_escalation_triggers,
    floor_goal_for_booked,
    handoff_message,
    next_contact_status,
    next_goal,
)
from bookerbot.states import (
    ContactStatus,
    ConversationGoal,
    Direction,
    Intent,
    QualificationStatus,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_GENERATION_TIMEOUT = 20.0


class ContactLocks:
    """Per-contact asyncio locks.

    Entries exist only while some turn holds or waits on them, so the
    registry doesn't grow with the number of contacts ever seen.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, contact_id: str):
        lock = self._locks.setdefault(contact_id, asyncio.Lock())
        self._users[contact_id] = self._users.get(contact_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[contact_id] -= 1
            if self._users[contact_id] == 0:
                del self._users[contact_id]
                del self._locks[contact_id]

    def __len__(self):
        return len(self._locks)


@dataclass
class TurnResult:
    response: str
    intent: IntentClassification
    qualification: ctx.QualificationState
    context_update: ctx.ConversationContext
    status_update: StatusUpdate | None = None
    tokens_used: TokenUsage = field(default_factory=TokenUsage)
    should_escalate: bool = False
    escalation_reason: str = ""
    inbound_message_id: str = ""
    outbound_message_id: str = ""


def clip_reply(text: str, limit: int) -> str:
    """Trim a reply to the channel limit, preferring a sentence boundary."""
    reply = text.strip()
    if len(reply) <= limit:
        return reply
    cut = reply[:limit - 1]
    boundary = max(cut.rfind(". "), cut.rfind("! "), cut.rfind("? "))
    if boundary >= limit // 2:
        return cut[:boundary + 1]
    return cut.rstrip() + "…"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return _as_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


def floor_qualification_for_booked(qualification: ctx.QualificationState) -> ctx.QualificationState:
    if qualification.status.rank >= QualificationStatus.QUALIFIED.rank:
        return qualification
    return replace(qualification, status=QualificationStatus.QUALIFIED)


class ConversationOrchestrator:
    def __init__(
        self,
        repository,
        classifier,
        assessor,
        llm,
        locks: ContactLocks | None = None,
        generation_timeout: float = DEFAULT_GENERATION_TIMEOUT,
    ):
        self.repository = repository
        self.classifier = classifier
        self.assessor = assessor
        self.llm = llm
        self.locks = locks if locks is not None else ContactLocks()
        self.generation_timeout = generation_timeout

    async def process_message(
        self,
        contact_id: str,
        message: str,
        *,
        inbound_message_id: str | None = None,
        provider_message_id: str | None = None,
        received_at: datetime | None = None,
    ) -> TurnResult:
        """Run one turn for an inbound message.

        ``inbound_message_id`` names an already-recorded inbound message;
        without it the message is recorded here once the guards pass.
        Raises the guard errors, GenerationError / ConcurrentUpdate
        (retryable) or PersistenceError.
        """
        async with self.locks.hold(contact_id):
            return await self._process(
                contact_id,
                (message or "").strip(),
                inbound_message_id=inbound_message_id,
                provider_message_id=provider_message_id or "",
                received_at=_as_utc(received_at) if received_at else utcnow(),
            )

    async def record_follow_up(self, contact_id: str, budget: int | None = None) -> ctx.ConversationContext:
        """Count an automated follow-up sent to this contact."""
        async with self.locks.hold(contact_id):
            bundle = await self._load(contact_id)
            raw = bundle.contact.conversation_context
            previous = ctx.parse(raw, bundle.workflow.id)
            limit = budget if budget is not None else bundle.workflow.follow_up_count
            updated = ctx.record_follow_up(previous, limit)
            try:
                await self.repository.update_context(
                    contact_id, ctx.serialize(updated), expected_turn_count=ctx.stored_turn_count(raw)
                )
            except OrchestratorError:
                raise
            except Exception as e:
                raise PersistenceError(f"Could not record follow-up for {contact_id}") from e
            logger.info(
                "Follow-up %d/%d recorded for %s (goal=%s)",
                updated.state.follow_ups_sent, limit, contact_id, updated.state.current_goal.value,
            )
            return updated

    # --- Turn steps ---

    async def _load(self, contact_id: str):
        bundle = await self.repository.get_contact_with_workflow_and_client(contact_id)
        if bundle is None:
            raise ContactNotFound(contact_id)
        contact, workflow = bundle.contact, bundle.workflow
        if contact.opted_out or contact.status == ContactStatus.OPTED_OUT:
            raise ContactOptedOut(contact_id)
        if contact.status == ContactStatus.HANDED_OFF:
            raise ContactHandedOff(contact_id)
        if workflow.status != WorkflowStatus.ACTIVE:
            raise WorkflowInactive(workflow.id, workflow.status.value)
        return bundle

    async def _process(self, contact_id, message, *, inbound_message_id, provider_message_id, received_at):
        bundle = await self._load(contact_id)
        contact, workflow = bundle.contact, bundle.workflow
        knowledge = knowledge_from_workflow(workflow, bundle.client)
        criteria = knowledge.qualification_criteria

        raw = contact.conversation_context
        previous = ctx.parse(raw, workflow.id)
        qualification = ctx.align_criteria(previous.qualification, criteria)
        booked = contact.status == ContactStatus.BOOKED
        if booked:
            qualification = floor_qualification_for_booked(qualification)
        previous = replace(previous, qualification=qualification)

        if provider_message_id and provider_message_id == previous.state.last_provider_message_id:
            raise DuplicateMessage(f"Message {provider_message_id} already processed for {contact_id}")
        last_at = _parse_timestamp(previous.state.last_message_at)
        if last_at is not None and received_at < last_at:
            raise StaleMessage(
                f"Message received at {received_at.isoformat()} is older than turn at {last_at.isoformat()}"
            )

        if inbound_message_id is None:
            inbound = await self._recorded_inbound(contact_id, provider_message_id)
            if inbound is None:
                inbound = await self._save(Message(
                    contact_id=contact_id,
                    direction=Direction.INBOUND,
                    channel=workflow.channel,
                    content=message,
                    status="received",
                    provider_sid=provider_message_id,
                    created_at=received_at,
                ))
            inbound_message_id = inbound.id

        classification = await self._bounded(
            "Intent detection", contact_id, self.classifier.detect(message, previous)
        )
        if classification is None:
            classification = IntentClassification(Intent.UNCLEAR, 0.0)
        escalation = check_escalation_triggers(message, previous)

        if classification.intent == Intent.OPT_OUT:
            reply = workflow.opt_out_message or DEFAULT_OPT_OUT_MESSAGE
            return await self._canned_turn(
                bundle, raw, previous, message, classification, reply,
                escalated=False, reason="",
                inbound_message_id=inbound_message_id,
                provider_message_id=provider_message_id,
                at=received_at,
            )

        if escalation.required or classification.requires_escalation:
            reason = escalation.reason or classification.escalation_reason or "Escalation requested"
            return await self._canned_turn(
                bundle, raw, previous, message, classification, handoff_message(reason),
                escalated=True, reason=reason,
                inbound_message_id=inbound_message_id,
                provider_message_id=provider_message_id,
                at=received_at,
            )

        history = await self._history(contact_id, inbound_message_id)
        if booked:
            assessment_update = None
            extracted = None
        else:
            assessment = await self._bounded(
                "Qualification assessment", contact_id,
                self.assessor.assess(criteria, previous, history, message, classification.intent),
            )
            if assessment is None:
                assessment = Assessment.from_qualification(previous.qualification)
            assessment_update = assessment.to_qualification()
            extracted = assessment.extracted_info

        merged = (
            ctx.merge_qualification(previous.qualification, assessment_update)
            if assessment_update is not None else previous.qualification
        )
        goal = next_goal(previous.state.current_goal, classification.intent, merged.status)
        if booked:
            goal = floor_goal_for_booked(previous.state.current_goal, goal)
        booking_confirmed = (
            classification.intent == Intent.CONFIRMATION
            and previous.state.current_goal == ConversationGoal.OFFER_BOOKING
            and goal == ConversationGoal.CONFIRM_BOOKING
        )

        planned = replace(
            previous,
            qualification=merged,
            extracted_info=previous.extracted_info.merged(extracted),
            state=replace(previous.state, current_goal=goal),
        )
        config = build_prompt(
            knowledge, contact, planned, history, message,
            workflow.channel, workflow.appointment_duration_minutes, workflow.instructions,
        )
        try:
            generation = await asyncio.wait_for(self.llm.generate(config), timeout=self.generation_timeout)
        except asyncio.TimeoutError as e:
            logger.error("Generation for %s timed out after %.1fs", contact_id, self.generation_timeout)
            raise GenerationError("Generation timed out") from e

        reply = clip_reply(generation.content, CHANNEL_POLICIES[workflow.channel].char_limit)
        status_update = next_contact_status(
            contact.status,
            intent=classification.intent,
            escalated=False,
            qualification=merged.status,
            booking_confirmed=booking_confirmed,
        )
        updated = ctx.update(previous, ctx.ContextDelta(
            intent=classification.intent,
            user_message=message,
            assistant_message=reply,
            at=received_at.isoformat(),
            goal=goal,
            qualification=assessment_update,
            extracted_info=extracted,
            provider_message_id=provider_message_id,
        ))

        outbound_id = await self._persist(
            bundle, raw, updated, reply, status_update, received_at,
            usage=generation.usage, ai_generated=True,
        )
        logger.info(
            "Turn %d for %s: intent=%s goal=%s qualification=%s%s",
            updated.state.turn_count, contact_id, classification.intent.value,
            goal.value, updated.qualification.status.value,
            f" status->{status_update.new_status.value}" if status_update else "",
        )
        return TurnResult(
            response=reply,
            intent=classification,
            qualification=updated.qualification,
            context_update=updated,
            status_update=status_update,
            tokens_used=generation.usage,
            inbound_message_id=inbound_message_id,
            outbound_message_id=outbound_id,
        )

    async def _canned_turn(
        self, bundle, raw, previous, message, classification, reply, *,
        escalated, reason, inbound_message_id, provider_message_id, at,
    ) -> TurnResult:
        """Opt-out and handoff replies: fixed copy, no generation call."""
        contact = bundle.contact
        status_update = next_contact_status(
            contact.status,
            intent=classification.intent,
            escalated=escalated,
            qualification=previous.qualification.status,
            booking_confirmed=False,
        )
        updated = ctx.update(previous, ctx.ContextDelta(
            intent=classification.intent,
            user_message=message,
            assistant_message=reply,
            at=at.isoformat(),
            goal=ConversationGoal.CLOSING,
            escalated=escalated,
            provider_message_id=provider_message_id,
        ))
        extra = {}
        if classification.intent == Intent.OPT_OUT:
            extra = {"opted_out": True, "opted_out_at": at}

        outbound_id = await self._persist(
            bundle, raw, updated, reply, status_update, at, extra_fields=extra,
        )
        if escalated:
            logger.warning("Contact %s handed off: %s", contact.id, reason)
        else:
            logger.info("Contact %s opted out", contact.id)
        return TurnResult(
            response=reply,
            intent=classification,
            qualification=updated.qualification,
            context_update=updated,
            status_update=status_update,
            should_escalate=escalated,
            escalation_reason=reason,
            inbound_message_id=inbound_message_id,
            outbound_message_id=outbound_id,
        )

    async def _bounded(self, step: str, contact_id: str, awaitable):
        """Await a classifier/assessor call under the turn timeout; None if it ran out."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.generation_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s for %s timed out after %.1fs", step, contact_id, self.generation_timeout)
            return None

    async def _recorded_inbound(self, contact_id: str, provider_message_id: str) -> Message | None:
        """The inbound row a failed earlier attempt already saved for this provider id."""
        if not provider_message_id:
            return None
        existing = await self.repository.find_message_by_provider_sid(provider_message_id)
        if existing is not None and existing.contact_id == contact_id and existing.direction == Direction.INBOUND:
            return existing
        return None

    async def _history(self, contact_id: str, inbound_message_id: str) -> list[Message]:
        """Prior messages, minus the current inbound and replies that never went out."""
        messages = await self.repository.list_messages(contact_id)
        return [
            m for m in messages
            if m.id != inbound_message_id
            and not (m.direction == Direction.OUTBOUND and m.status == "failed")
        ]

    async def _save(self, message: Message) -> Message:
        try:
            return await self.repository.save_message(message)
        except OrchestratorError:
            raise
        except Exception as e:
            raise PersistenceError(f"Could not save message for {message.contact_id}") from e

    async def _persist(
        self, bundle, raw, updated, reply, status_update, at, *,
        usage: TokenUsage | None = None, ai_generated: bool = False, extra_fields: dict | None = None,
    ) -> str:
        """Commit the turn: context (CAS), outbound message, contact fields.

        A failure after the context write restores the previous context and
        contact fields before raising PersistenceError.
        """
        contact, workflow = bundle.contact, bundle.workflow
        try:
            await self.repository.update_context(
                contact.id, ctx.serialize(updated), expected_turn_count=ctx.stored_turn_count(raw)
            )
        except OrchestratorError:
            raise
        except Exception as e:
            logger.error("Context write failed for %s: %s", contact.id, e)
            raise PersistenceError(f"Could not write context for {contact.id}") from e

        usage = usage or TokenUsage()
        outbound = None
        fields = {"last_message_at": at, **(extra_fields or {})}
        if status_update is not None:
            fields["status"] = status_update.new_status
        try:
            outbound = await self.repository.save_message(Message(
                contact_id=contact.id,
                direction=Direction.OUTBOUND,
                channel=workflow.channel,
                content=reply,
                status="pending",
                ai_generated=ai_generated,
                model=usage.model if ai_generated else "",
                input_tokens=usage.input,
                output_tokens=usage.output,
                tokens_used=usage.total,
                cost=estimate_cost(usage) if ai_generated else 0.0,
            ))
            await self.repository.update_contact(contact.id, fields)
        except Exception as e:
            logger.error("Persisting turn for %s failed, rolling back: %s", contact.id, e)
            await self._roll_back(contact, raw, outbound, fields)
            raise PersistenceError(f"Could not persist turn for {contact.id}") from e
        return outbound.id

    async def _roll_back(self, contact, raw, outbound, fields):
        try:
            await self.repository.update_context(contact.id, raw)
        except Exception:
            logger.exception("Could not restore context for %s", contact.id)
        if outbound is not None:
            try:
                await self.repository.update_message(
                    outbound.id, {"status": "failed", "error_message": "Turn rolled back"}
                )
            except Exception:
                logger.exception("Could not mark outbound message %s failed", outbound.id)
        previous_fields = {key: getattr(contact, key) for key in fields}
        try:
            await self.repository.update_contact(contact.id, previous_fields)
        except Exception:
            logger.exception("Could not restore contact fields for %s", contact.id)
