from unittest.mock import AsyncMock

import pytest

from bookerbot.errors import GenerationError
from bookerbot.gateway import SendResult
from bookerbot.models import Contact, Message, Workflow
from bookerbot.state_machine import HANDOFF_MESSAGES, HANDOFF_REASON_HUMAN
from bookerbot.states import Channel, ContactStatus, Direction
from bookerbot.webhook import InboundMessage, InboundWebhookHandler, twiml

STATUS_URL = "https://bot.example.com/webhooks/twilio/status"


@pytest.fixture
def gateway():
    gateway = AsyncMock()
    gateway.send.return_value = SendResult(True, sid="SMout1")
    return gateway


@pytest.fixture
def notifier():
    notifier = AsyncMock()
    notifier.notify.return_value = True
    return notifier


@pytest.fixture
def handler(repo, orchestrator, gateway, notifier):
    return InboundWebhookHandler(repo, orchestrator, gateway, notifier, status_callback_url=STATUS_URL)


def _inbound(body, sid="SM1", sender="+15125551234", **kwargs):
    return InboundMessage(sender=sender, body=body, provider_message_id=sid, **kwargs)


def _by_direction(repo, direction):
    return [m for m in repo.messages.values() if m.direction == direction]


class TestOptOut:
    @pytest.mark.asyncio
    async def test_stop_keyword(self, handler, repo, llm, gateway):
        result = await handler.handle(_inbound("STOP"))

        assert result.status_code == 200
        contact = repo.contacts["contact-1"]
        assert contact.status == ContactStatus.OPTED_OUT
        assert contact.opted_out
        assert contact.opted_out_at is not None
        assert llm.generate.await_count == 0
        assert llm.complete_json.await_count == 0
        assert gateway.send.await_count == 0
        inbound = _by_direction(repo, Direction.INBOUND)
        assert [m.content for m in inbound] == ["STOP"]
        assert _by_direction(repo, Direction.OUTBOUND) == []

    @pytest.mark.asyncio
    async def test_opts_out_every_workflow_for_the_number(self, handler, repo):
        repo.add_workflow(Workflow(id="wf-2", client_id="client-1", name="Battery upsell"))
        repo.add_contact(Contact(id="contact-2", workflow_id="wf-2", phone="+15125551234"))
        await handler.handle(_inbound("unsubscribe"))
        assert repo.contacts["contact-1"].opted_out
        assert repo.contacts["contact-2"].opted_out

    @pytest.mark.asyncio
    async def test_carrier_flag(self, handler, repo):
        await handler.handle(_inbound("Stop please", opt_out_type="STOP"))
        assert repo.contacts["contact-1"].status == ContactStatus.OPTED_OUT

    @pytest.mark.asyncio
    async def test_stop_inside_sentence_is_a_normal_turn(self, handler, repo, gateway):
        await handler.handle(_inbound("Please don't stop, tell me more"))
        assert repo.contacts["contact-1"].status != ContactStatus.OPTED_OUT
        assert gateway.send.await_count == 1


class TestInbound:
    @pytest.mark.asyncio
    async def test_reply_sent_and_recorded(self, handler, repo, llm, gateway):
        result = await handler.handle(_inbound("Hi there"))

        assert result.status_code == 200
        gateway.send.assert_awaited_once_with(
            "+15125551234", llm.reply, Channel.SMS,
            from_number="+15125550000", status_callback=STATUS_URL,
        )
        [inbound] = _by_direction(repo, Direction.INBOUND)
        assert inbound.provider_sid == "SM1"
        [outbound] = _by_direction(repo, Direction.OUTBOUND)
        assert outbound.provider_sid == "SMout1"
        assert outbound.status == "queued"

    @pytest.mark.asyncio
    async def test_send_failure_recorded(self, handler, repo, gateway):
        gateway.send.return_value = SendResult(False, error="Invalid 'To' Phone Number")
        result = await handler.handle(_inbound("Hi there"))
        assert result.status_code == 200
        [outbound] = _by_direction(repo, Direction.OUTBOUND)
        assert outbound.status == "failed"
        assert outbound.error_message == "Invalid 'To' Phone Number"

    @pytest.mark.asyncio
    async def test_unknown_sender(self, handler, repo, llm):
        result = await handler.handle(_inbound("Hi there", sender="+15125559999"))
        assert result.status_code == 200
        assert result.detail == "unknown sender"
        assert repo.messages == {}
        assert llm.generate.await_count == 0

    @pytest.mark.asyncio
    async def test_channel_mismatch_ignored(self, handler, repo, llm):
        result = await handler.handle(_inbound("Hi there", sender="whatsapp:+15125551234"))
        assert result.detail == "channel mismatch"
        assert repo.messages == {}
        assert llm.generate.await_count == 0

    @pytest.mark.asyncio
    async def test_handed_off_contact_gets_no_reply(self, handler, repo, gateway):
        repo.contacts["contact-1"].status = ContactStatus.HANDED_OFF
        result = await handler.handle(_inbound("Hello?"))
        assert result.status_code == 200
        assert gateway.send.await_count == 0
        assert len(_by_direction(repo, Direction.INBOUND)) == 1

    @pytest.mark.asyncio
    async def test_generation_failure_asks_for_retry(self, handler, repo, llm, gateway):
        llm.generate.side_effect = GenerationError("provider down")
        result = await handler.handle(_inbound("Hi there"))
        assert result.status_code == 503
        assert gateway.send.await_count == 0

        llm.generate.side_effect = llm._generate
        result = await handler.handle(_inbound("Hi there"))
        assert result.status_code == 200
        assert len(_by_direction(repo, Direction.INBOUND)) == 1
        assert len(_by_direction(repo, Direction.OUTBOUND)) == 1

    @pytest.mark.asyncio
    async def test_provider_retry_after_success_not_answered_twice(self, handler, repo, gateway):
        await handler.handle(_inbound("Hi there"))
        result = await handler.handle(_inbound("Hi there"))
        assert result.status_code == 200
        assert gateway.send.await_count == 1
        assert repo.contacts["contact-1"].conversation_context["state"]["turnCount"] == 1

    @pytest.mark.asyncio
    async def test_escalation_notifies_operator(self, handler, notifier, gateway):
        await handler.handle(_inbound("I want to speak to a real person"))
        assert gateway.send.await_args.args[1] == HANDOFF_MESSAGES[HANDOFF_REASON_HUMAN]
        notifier.notify.assert_awaited_once()
        assert notifier.notify.await_args.args[3] == HANDOFF_REASON_HUMAN


class TestStatusCallback:
    @pytest.mark.asyncio
    async def test_delivered(self, handler, repo):
        saved = await repo.save_message(Message(
            contact_id="contact-1", direction=Direction.OUTBOUND, channel=Channel.SMS,
            content="Hi Dana!", provider_sid="SMout1", status="queued",
        ))
        assert await handler.handle_status("SMout1", "delivered") is True
        assert repo.messages[saved.id].status == "delivered"

    @pytest.mark.asyncio
    async def test_undelivered_records_error(self, handler, repo):
        saved = await repo.save_message(Message(
            contact_id="contact-1", direction=Direction.OUTBOUND, channel=Channel.SMS,
            content="Hi Dana!", provider_sid="SMout1", status="queued",
        ))
        await handler.handle_status("SMout1", "undelivered", error_code="30003")
        assert repo.messages[saved.id].status == "undelivered"
        assert repo.messages[saved.id].error_message == "Error 30003"

    @pytest.mark.asyncio
    async def test_unknown_message(self, handler):
        assert await handler.handle_status("SMnope", "delivered") is False


class TestInboundMessage:
    def test_from_form(self):
        inbound = InboundMessage.from_form({
            "From": "whatsapp:+15125551234", "Body": "Hi", "MessageSid": "SM1", "NumMedia": "x",
        })
        assert inbound.channel == Channel.WHATSAPP
        assert inbound.provider_message_id == "SM1"
        assert inbound.num_media == 0

    def test_sms_channel(self):
        assert _inbound("Hi").channel == Channel.SMS


class TestTwiml:
    def test_empty(self):
        assert twiml() == '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'

    def test_escapes(self):
        assert "<Message>Tom &amp; Jerry</Message>" in twiml("Tom & Jerry")
