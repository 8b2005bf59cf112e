"""Inbound message handling, independent of the HTTP framework.

The carrier opt-out check runs here, before the orchestrator or any model
sees the text: a message that is exactly a standard keyword (or that
Twilio already flagged with OptOutType=STOP) opts the number out of every
workflow it belongs to and never gets an automated reply.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from xml.sax.saxutils import escape

from bookerbot.errors import OrchestratorError, PersistenceError
from bookerbot.models import Message, utcnow
from bookerbot.states import Channel, ContactStatus, Direction
from bookerbot.validation import is_opt_out_keyword, normalize_phone

logger = logging.getLogger(__name__)

FAILED_DELIVERY_STATUSES = {"failed", "undelivered"}


@dataclass
class InboundMessage:
    sender: str
    body: str
    provider_message_id: str
    to: str = ""
    opt_out_type: str = ""
    num_media: int = 0
    received_at: datetime | None = None

    @property
    def channel(self) -> Channel:
        if self.sender.lower().startswith("whatsapp:"):
            return Channel.WHATSAPP
        return Channel.SMS

    @property
    def is_opt_out(self) -> bool:
        return self.opt_out_type.upper() == "STOP" or is_opt_out_keyword(self.body)

    @classmethod
    def from_form(cls, form: dict) -> "InboundMessage":
        try:
            num_media = int(form.get("NumMedia") or 0)
        except ValueError:
            num_media = 0
        return cls(
            sender=form.get("From", ""),
            body=form.get("Body", ""),
            provider_message_id=form.get("MessageSid", ""),
            to=form.get("To", ""),
            opt_out_type=form.get("OptOutType", ""),
            num_media=num_media,
        )


@dataclass
class WebhookResult:
    status_code: int = 200
    reply: str = ""
    detail: str = ""


def twiml(message: str = "") -> str:
    if not message:
        return '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<Response><Message>{escape(message)}</Message></Response>"
    )


def _preview(text: str, limit: int = 60) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class InboundWebhookHandler:
    def __init__(self, repository, orchestrator, gateway, notifier, status_callback_url: str = ""):
        self.repository = repository
        self.orchestrator = orchestrator
        self.gateway = gateway
        self.notifier = notifier
        self.status_callback_url = status_callback_url

    async def handle(self, inbound: InboundMessage) -> WebhookResult:
        channel = inbound.channel
        phone = normalize_phone(inbound.sender)
        received_at = inbound.received_at or utcnow()
        logger.info("Inbound %s from %s: %s", channel.value, phone, _preview(inbound.body))

        if inbound.is_opt_out:
            await self._opt_out_everywhere(phone, channel, inbound, received_at)
            return WebhookResult(detail="opted out")

        if inbound.num_media:
            logger.info("Message %s has %d media attachments (ignored)", inbound.provider_message_id, inbound.num_media)

        contacts = [
            c for c in await self.repository.find_contacts_by_phone(phone)
            if not c.opted_out and c.status != ContactStatus.OPTED_OUT
        ]
        if not contacts:
            logger.info("No active contact for %s", phone)
            return WebhookResult(detail="unknown sender")
        contact = contacts[0]

        bundle = await self.repository.get_contact_with_workflow_and_client(contact.id)
        if bundle is None or bundle.workflow.channel != channel:
            logger.info("Contact %s is not on an active %s workflow", contact.id, channel.value)
            return WebhookResult(detail="channel mismatch")

        recorded = await self._record_inbound(contact.id, channel, inbound, received_at)

        try:
            result = await self.orchestrator.process_message(
                contact.id,
                inbound.body,
                inbound_message_id=recorded.id,
                provider_message_id=inbound.provider_message_id,
                received_at=recorded.created_at,
            )
        except PersistenceError as e:
            logger.error("Turn for %s failed to persist: %s", contact.id, e)
            return WebhookResult(status_code=500, detail=str(e))
        except OrchestratorError as e:
            if e.retryable:
                logger.warning("Turn for %s failed, asking provider to retry: %s", contact.id, e)
                return WebhookResult(status_code=503, detail=str(e))
            logger.info("No automated reply for %s: %s", contact.id, e)
            return WebhookResult(detail=str(e))

        await self._deliver(bundle, phone, channel, result)

        if result.should_escalate:
            summary = result.context_update.summary
            await self.notifier.notify(
                bundle.contact, bundle.workflow, bundle.client, result.escalation_reason, summary
            )
        return WebhookResult()

    async def handle_status(
        self,
        message_sid: str,
        message_status: str,
        error_code: str = "",
        error_message: str = "",
    ) -> bool:
        """Apply a delivery status callback to the matching outbound message."""
        message = await self.repository.find_message_by_provider_sid(message_sid)
        if message is None:
            logger.info("Status callback for unknown message %s", message_sid)
            return False
        fields = {"status": message_status}
        if message_status in FAILED_DELIVERY_STATUSES:
            fields["error_message"] = error_message or (f"Error {error_code}" if error_code else "Delivery failed")
            logger.warning("Message %s %s: %s", message_sid, message_status, fields["error_message"])
        await self.repository.update_message(message.id, fields)
        return True

    # --- Steps ---

    async def _record_inbound(self, contact_id, channel, inbound, received_at) -> Message:
        """Save the inbound message once per provider id.

        A provider retry reuses the first record, including its receipt time,
        so a late retry of an old message is recognised as stale.
        """
        existing = await self.repository.find_message_by_provider_sid(inbound.provider_message_id)
        if existing is not None and existing.contact_id == contact_id:
            return existing
        return await self.repository.save_message(Message(
            contact_id=contact_id,
            direction=Direction.INBOUND,
            channel=channel,
            content=inbound.body,
            status="received",
            provider_sid=inbound.provider_message_id,
            created_at=received_at,
        ))

    async def _opt_out_everywhere(self, phone, channel, inbound, received_at):
        contacts = await self.repository.find_contacts_by_phone(phone)
        for contact in contacts:
            if contact.opted_out:
                continue
            async with self.orchestrator.locks.hold(contact.id):
                await self._record_inbound(contact.id, channel, inbound, received_at)
                await self.repository.update_contact(contact.id, {
                    "status": ContactStatus.OPTED_OUT,
                    "opted_out": True,
                    "opted_out_at": received_at,
                })
            logger.info("Contact %s opted out by keyword", contact.id)

    async def _deliver(self, bundle, phone, channel, result):
        from_number = bundle.client.twilio_phone_number if bundle.client else ""
        sent = await self.gateway.send(
            phone,
            result.response,
            channel,
            from_number=from_number or None,
            status_callback=self.status_callback_url or None,
        )
        if not result.outbound_message_id:
            return
        if sent.success:
            fields = {"provider_sid": sent.sid, "status": "queued"}
        else:
            logger.error("Reply to %s not sent: %s", bundle.contact.id, sent.error)
            fields = {"status": "failed", "error_message": sent.error}
        try:
            await self.repository.update_message(result.outbound_message_id, fields)
        except Exception:
            logger.exception("Could not record delivery status for %s", result.outbound_message_id)
