import asyncio
import logging

import httpx

from bookerbot.models import utcnow

logger = logging.getLogger(__name__)


class HandoffNotifier:
    """Tells a human operator that a conversation needs them.

    POSTs an alert to the configured URL and retries once after a short
    backoff. Without a URL, notifications are logged and dropped.
    """

    def __init__(
        self,
        url: str = "",
        *,
        secret: str = "",
        timeout: float = 10.0,
        retry_delay: float = 2.0,
    ):
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.retry_delay = retry_delay

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Webhook-Secret"] = self.secret
        return headers

    @staticmethod
    def build_payload(contact, workflow, client, reason: str, summary: str = "") -> dict:
        return {
            "type": "handoff",
            "contact_id": contact.id,
            "contact_name": contact.full_name or None,
            "contact_phone": contact.phone or None,
            "contact_email": contact.email or None,
            "workflow_id": workflow.id,
            "workflow_name": workflow.name,
            "client_name": client.name if client else None,
            "reason": reason,
            "summary": summary or None,
            "created_at": utcnow().isoformat(),
        }

    async def notify(self, contact, workflow, client, reason: str, summary: str = "") -> bool:
        if not self.url:
            logger.info("No handoff URL configured; contact %s needs a human: %s", contact.id, reason)
            return False

        payload = self.build_payload(contact, workflow, client, reason, summary)
        for attempt in range(2):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as http:
                    resp = await http.post(self.url, json=payload, headers=self._headers())
                    resp.raise_for_status()
                logger.info("Handoff alert sent for contact %s", contact.id)
                return True
            except Exception as e:
                if attempt == 0:
                    logger.warning("Handoff alert failed (attempt 1), retrying in %.0fs: %s", self.retry_delay, e)
                    await asyncio.sleep(self.retry_delay)
                else:
                    logger.error("Handoff alert for contact %s failed after retry: %s", contact.id, e)
        return False
