import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from bookerbot import context as ctx
from bookerbot.errors import (
    ConcurrentUpdate,
    ContactHandedOff,
    ContactNotFound,
    ContactOptedOut,
    DuplicateMessage,
    GenerationError,
    PersistenceError,
    StaleMessage,
    WorkflowInactive,
)
from bookerbot.intent import IntentClassifier
from bookerbot.llm import Generation, TokenUsage
from bookerbot.models import DEFAULT_OPT_OUT_MESSAGE, Message, utcnow
from bookerbot.orchestrator import ContactLocks, ConversationOrchestrator, clip_reply
from bookerbot.qualification import QualificationAssessor
from bookerbot.state_machine import HANDOFF_MESSAGES, HANDOFF_REASON_HUMAN
from bookerbot.states import (
    Channel,
    ContactStatus,
    ConversationGoal,
    Direction,
    Intent,
    QualificationStatus,
    WorkflowStatus,
)

DM_MATCHED = {
    "criteria": [{"number": 1, "status": "matched"}, {"number": 2, "status": "unknown"}],
    "extractedInfo": {"isDecisionMaker": True},
}


def _stored(repo):
    return repo.contacts["contact-1"]


def _seed_context(repo, *, goal, status, matched, unknown=(), turns=3):
    context = ctx.new_context("wf-1")
    context.state.turn_count = turns
    context.state.current_goal = goal
    context.qualification = ctx.QualificationState(
        status=status, criteria_matched=list(matched), criteria_unknown=list(unknown),
    )
    _stored(repo).conversation_context = ctx.serialize(context)


def _outbound(repo):
    return [m for m in repo.messages.values() if m.direction == Direction.OUTBOUND]


class TestTurn:
    @pytest.mark.asyncio
    async def test_first_reply(self, orchestrator, repo, llm):
        llm.assessment = DM_MATCHED
        result = await orchestrator.process_message("contact-1", "Yes, I'm the owner here")

        assert result.response == llm.reply
        assert result.qualification.status == QualificationStatus.PARTIAL
        assert result.qualification.criteria_matched == ["decision maker"]
        assert result.qualification.criteria_unknown == ["budget over 10k"]
        assert result.status_update.new_status == ContactStatus.IN_CONVERSATION
        assert result.tokens_used.total == 150

        stored = _stored(repo)
        assert stored.status == ContactStatus.IN_CONVERSATION
        assert stored.last_message_at is not None
        assert stored.conversation_context["state"]["turnCount"] == 1
        assert stored.conversation_context["extractedInfo"]["isDecisionMaker"] is True

        messages = await repo.list_messages("contact-1")
        assert [m.direction for m in messages] == [Direction.INBOUND, Direction.OUTBOUND]
        inbound, outbound = messages
        assert inbound.id == result.inbound_message_id
        assert inbound.content == "Yes, I'm the owner here"
        assert outbound.id == result.outbound_message_id
        assert outbound.ai_generated
        assert outbound.model == "gpt-4o-mini"
        assert outbound.tokens_used == 150
        assert outbound.cost > 0
        assert outbound.status == "pending"

    @pytest.mark.asyncio
    async def test_turn_count_matches_processed_messages(self, orchestrator, repo):
        for text in ["Hi there", "Tell me about the panels", "Sounds interesting, go on"]:
            await orchestrator.process_message("contact-1", text)
        assert _stored(repo).conversation_context["state"]["turnCount"] == 3

    @pytest.mark.asyncio
    async def test_existing_inbound_record_not_duplicated(self, orchestrator, repo):
        inbound = await repo.save_message(Message(
            contact_id="contact-1", direction=Direction.INBOUND, channel=Channel.SMS,
            content="Hi there", status="received",
        ))
        result = await orchestrator.process_message("contact-1", "Hi there", inbound_message_id=inbound.id)
        assert result.inbound_message_id == inbound.id
        assert len(repo.messages) == 2

    @pytest.mark.asyncio
    async def test_verdicts_do_not_regress_across_turns(self, orchestrator, repo, llm):
        llm.assessment = DM_MATCHED
        await orchestrator.process_message("contact-1", "Yes, I'm the owner here")
        llm.assessment = {"criteria": [{"number": 1, "status": "missed"}, {"number": 2, "status": "unknown"}]}
        result = await orchestrator.process_message("contact-1", "Well, my wife has opinions too")
        assert result.qualification.criteria_matched == ["decision maker"]
        assert result.qualification.criteria_missed == []
        assert result.qualification.status == QualificationStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_all_criteria_met_qualifies_contact(self, orchestrator, repo, llm):
        llm.assessment = {"criteria": [{"number": 1, "status": "matched"}, {"number": 2, "status": "matched"}]}
        result = await orchestrator.process_message("contact-1", "I own it and we have 20k to spend")
        assert result.qualification.status == QualificationStatus.QUALIFIED
        assert _stored(repo).status == ContactStatus.QUALIFIED

    @pytest.mark.asyncio
    async def test_confirmed_time_books_contact(self, orchestrator, repo, llm):
        _stored(repo).status = ContactStatus.QUALIFIED
        _seed_context(
            repo, goal=ConversationGoal.OFFER_BOOKING, status=QualificationStatus.QUALIFIED,
            matched=["decision maker", "budget over 10k"],
        )
        result = await orchestrator.process_message("contact-1", "Tuesday at 3pm works")
        assert result.intent.intent == Intent.CONFIRMATION
        assert result.context_update.state.current_goal == ConversationGoal.CONFIRM_BOOKING
        assert result.status_update.new_status == ContactStatus.BOOKED
        assert _stored(repo).status == ContactStatus.BOOKED

    @pytest.mark.asyncio
    async def test_booked_contact_does_not_regress(self, orchestrator, repo, llm):
        _stored(repo).status = ContactStatus.BOOKED
        _seed_context(
            repo, goal=ConversationGoal.QUALIFY_LEAD, status=QualificationStatus.PARTIAL,
            matched=["decision maker"], unknown=["budget over 10k"],
        )
        result = await orchestrator.process_message("contact-1", "Just checking in about everything")

        assert result.response == llm.reply
        assert result.qualification.status == QualificationStatus.QUALIFIED
        assert result.context_update.state.current_goal == ConversationGoal.CONFIRM_BOOKING
        assert result.status_update is None
        assert llm.assessor_calls == 0
        assert _stored(repo).status == ContactStatus.BOOKED

    @pytest.mark.asyncio
    async def test_long_reply_clipped_to_channel(self, orchestrator, llm):
        llm.reply = "word " * 200
        result = await orchestrator.process_message("contact-1", "Tell me everything")
        assert len(result.response) <= 320

    @pytest.mark.asyncio
    async def test_failed_replies_left_out_of_prompt(self, orchestrator, repo, llm):
        await repo.save_message(Message(
            contact_id="contact-1", direction=Direction.OUTBOUND, channel=Channel.SMS,
            content="Hi Dana, still thinking about solar?", status="delivered",
        ))
        await repo.save_message(Message(
            contact_id="contact-1", direction=Direction.OUTBOUND, channel=Channel.SMS,
            content="This one never went out", status="failed",
        ))
        await orchestrator.process_message("contact-1", "Maybe, what are the options")
        config = llm.generate.call_args.args[0]
        sent = " ".join(m["content"] for m in config.messages)
        assert "Hi Dana, still thinking about solar?" in sent
        assert "never went out" not in sent
        assert config.messages[-1] == {"role": "user", "content": "Maybe, what are the options"}


class TestGuards:
    @pytest.mark.asyncio
    async def test_unknown_contact(self, orchestrator):
        with pytest.raises(ContactNotFound):
            await orchestrator.process_message("nobody", "Hi")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["Hi", "STOP", "I want to book"])
    async def test_opted_out_contact_gets_no_turn(self, orchestrator, repo, llm, text):
        _stored(repo).status = ContactStatus.OPTED_OUT
        _stored(repo).opted_out = True
        with pytest.raises(ContactOptedOut):
            await orchestrator.process_message("contact-1", text)
        assert llm.generate.await_count == 0
        assert repo.messages == {}

    @pytest.mark.asyncio
    async def test_handed_off_contact_gets_no_turn(self, orchestrator, repo, llm):
        _stored(repo).status = ContactStatus.HANDED_OFF
        with pytest.raises(ContactHandedOff):
            await orchestrator.process_message("contact-1", "Hello?")
        assert llm.generate.await_count == 0

    @pytest.mark.asyncio
    async def test_inactive_workflow(self, orchestrator, repo):
        repo.workflows["wf-1"].status = WorkflowStatus.PAUSED
        with pytest.raises(WorkflowInactive):
            await orchestrator.process_message("contact-1", "Hello?")

    @pytest.mark.asyncio
    async def test_duplicate_delivery(self, orchestrator, repo, llm):
        await orchestrator.process_message("contact-1", "Hi there", provider_message_id="SM1")
        with pytest.raises(DuplicateMessage):
            await orchestrator.process_message("contact-1", "Hi there", provider_message_id="SM1")
        assert _stored(repo).conversation_context["state"]["turnCount"] == 1
        assert llm.generate.await_count == 1

    @pytest.mark.asyncio
    async def test_out_of_order_message_discarded(self, orchestrator, repo):
        now = utcnow()
        await orchestrator.process_message("contact-1", "Hi there", received_at=now)
        with pytest.raises(StaleMessage):
            await orchestrator.process_message("contact-1", "Earlier text", received_at=now - timedelta(minutes=5))
        assert _stored(repo).conversation_context["state"]["turnCount"] == 1


class TestCannedTurns:
    @pytest.mark.asyncio
    async def test_request_human_hands_off(self, orchestrator, repo, llm):
        result = await orchestrator.process_message("contact-1", "I want to speak to a real person")

        assert result.intent.intent == Intent.REQUEST_HUMAN
        assert result.should_escalate
        assert result.escalation_reason == HANDOFF_REASON_HUMAN
        assert result.response == HANDOFF_MESSAGES[HANDOFF_REASON_HUMAN]
        assert result.status_update.new_status == ContactStatus.HANDED_OFF
        assert result.context_update.state.current_goal == ConversationGoal.CLOSING
        assert result.context_update.state.escalation_attempts == 1
        assert llm.generate.await_count == 0
        assert _stored(repo).status == ContactStatus.HANDED_OFF

        with pytest.raises(ContactHandedOff):
            await orchestrator.process_message("contact-1", "Hello?")

    @pytest.mark.asyncio
    async def test_opt_out_phrase(self, orchestrator, repo, llm):
        result = await orchestrator.process_message("contact-1", "Please remove me from your list")

        assert result.intent.intent == Intent.OPT_OUT
        assert result.response == DEFAULT_OPT_OUT_MESSAGE
        assert result.status_update.new_status == ContactStatus.OPTED_OUT
        assert llm.generate.await_count == 0
        assert llm.assessor_calls == 0
        stored = _stored(repo)
        assert stored.opted_out
        assert stored.opted_out_at is not None
        assert stored.status == ContactStatus.OPTED_OUT

        outbound = _outbound(repo)
        assert len(outbound) == 1
        assert not outbound[0].ai_generated

    @pytest.mark.asyncio
    async def test_workflow_opt_out_copy(self, orchestrator, repo):
        repo.workflows["wf-1"].opt_out_message = "Done, you won't hear from Acme again."
        result = await orchestrator.process_message("contact-1", "STOP")
        assert result.response == "Done, you won't hear from Acme again."


class TestFailures:
    @pytest.mark.asyncio
    async def test_generation_error_leaves_state_unchanged(self, orchestrator, repo, llm):
        llm.generate.side_effect = GenerationError("provider down")
        with pytest.raises(GenerationError):
            await orchestrator.process_message("contact-1", "Hi there")
        stored = _stored(repo)
        assert stored.conversation_context is None
        assert stored.status == ContactStatus.CONTACTED
        assert _outbound(repo) == []

    @pytest.mark.asyncio
    async def test_retry_after_generation_error_reuses_inbound(self, orchestrator, repo, llm):
        llm.generate.side_effect = GenerationError("provider down")
        with pytest.raises(GenerationError):
            await orchestrator.process_message("contact-1", "Hi there", provider_message_id="SM1")

        llm.generate.side_effect = llm._generate
        result = await orchestrator.process_message("contact-1", "Hi there", provider_message_id="SM1")

        inbound = [m for m in repo.messages.values() if m.direction == Direction.INBOUND]
        assert len(inbound) == 1
        assert result.inbound_message_id == inbound[0].id
        config = llm.generate.await_args.args[0]
        assert config.messages == [{"role": "user", "content": "Hi there"}]

    @pytest.mark.asyncio
    async def test_slow_classifier_and_assessor_are_bounded(self, repo, llm):
        async def slow(system, user, *, model, max_tokens):
            await asyncio.sleep(1)

        llm.complete_json.side_effect = slow
        orchestrator = ConversationOrchestrator(
            repo, IntentClassifier(llm), QualificationAssessor(llm), llm, generation_timeout=0.05,
        )
        result = await orchestrator.process_message(
            "contact-1", "I've been thinking about the roof situation"
        )
        assert result.intent.intent == Intent.UNCLEAR
        assert result.qualification.criteria_matched == []
        assert result.qualification.criteria_missed == []
        assert llm.complete_json.await_count == 2
        assert _stored(repo).conversation_context["state"]["turnCount"] == 1

    @pytest.mark.asyncio
    async def test_generation_timeout(self, repo, llm):
        async def slow(config):
            await asyncio.sleep(1)

        llm.generate.side_effect = slow
        orchestrator = ConversationOrchestrator(
            repo, IntentClassifier(llm), QualificationAssessor(llm), llm, generation_timeout=0.01,
        )
        with pytest.raises(GenerationError):
            await orchestrator.process_message("contact-1", "Hi there")
        assert _stored(repo).conversation_context is None

    @pytest.mark.asyncio
    async def test_concurrent_context_write_detected(self, orchestrator, repo, llm):
        async def racing(config):
            _stored(repo).conversation_context = {"state": {"turnCount": 5}}
            return Generation(content="Hello!", usage=TokenUsage(model=config.model))

        llm.generate.side_effect = racing
        with pytest.raises(ConcurrentUpdate):
            await orchestrator.process_message("contact-1", "Hi there")
        assert _stored(repo).conversation_context == {"state": {"turnCount": 5}}
        assert _outbound(repo) == []

    @pytest.mark.asyncio
    async def test_failed_write_rolls_back(self, orchestrator, repo):
        repo.update_contact = AsyncMock(side_effect=[RuntimeError("db down"), None])
        with pytest.raises(PersistenceError):
            await orchestrator.process_message("contact-1", "Hi there")

        assert _stored(repo).conversation_context is None
        outbound = _outbound(repo)
        assert len(outbound) == 1
        assert outbound[0].status == "failed"
        assert outbound[0].error_message == "Turn rolled back"
        restore = repo.update_contact.call_args_list[1].args[1]
        assert restore["status"] == ContactStatus.CONTACTED
        assert restore["last_message_at"] is None


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_contact_turns_serialize(self, orchestrator, repo, llm):
        async def slow(config):
            await asyncio.sleep(0.01)
            return Generation(content="Got it!", usage=TokenUsage(model=config.model))

        llm.generate.side_effect = slow
        await asyncio.gather(
            orchestrator.process_message("contact-1", "Hi there"),
            orchestrator.process_message("contact-1", "Also, what does it cost"),
        )
        assert _stored(repo).conversation_context["state"]["turnCount"] == 2
        assert len(_outbound(repo)) == 2
        assert len(orchestrator.locks) == 0


class TestFollowUps:
    @pytest.mark.asyncio
    async def test_record_follow_up(self, orchestrator, repo):
        updated = await orchestrator.record_follow_up("contact-1")
        assert updated.state.follow_ups_sent == 1
        assert updated.state.current_goal == ConversationGoal.FOLLOW_UP
        assert updated.state.turn_count == 0
        assert _stored(repo).conversation_context["state"]["followUpsSent"] == 1

    @pytest.mark.asyncio
    async def test_budget_from_workflow(self, orchestrator, repo):
        repo.workflows["wf-1"].follow_up_count = 1
        updated = await orchestrator.record_follow_up("contact-1")
        assert updated.state.current_goal == ConversationGoal.CLOSING


class TestClipReply:
    def test_short_reply_unchanged(self):
        assert clip_reply("  Hi Dana!  ", 320) == "Hi Dana!"

    def test_cuts_at_sentence_boundary(self):
        text = "A" * 200 + ". " + "B" * 200
        assert clip_reply(text, 320) == "A" * 200 + "."

    def test_hard_cut_with_ellipsis(self):
        clipped = clip_reply("Sure thing. " + "a" * 400, 320)
        assert len(clipped) == 320
        assert clipped.endswith("…")


class TestContactLocks:
    @pytest.mark.asyncio
    async def test_registry_empties_after_use(self):
        locks = ContactLocks()
        async with locks.hold("contact-1"):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_holders_run_one_at_a_time(self):
        locks = ContactLocks()
        events = []

        async def turn(name):
            async with locks.hold("contact-1"):
                events.append(f"{name} start")
                await asyncio.sleep(0.01)
                events.append(f"{name} end")

        await asyncio.gather(turn("a"), turn("b"))
        assert events == ["a start", "a end", "b start", "b end"]
