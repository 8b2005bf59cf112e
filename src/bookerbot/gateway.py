import logging
from dataclasses import dataclass

import httpx
from twilio.request_validator import RequestValidator

from bookerbot.circuit_breaker import CircuitBreaker
from bookerbot.states import Channel
from bookerbot.validation import normalize_phone

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com"


@dataclass
class SendResult:
    success: bool
    sid: str = ""
    error: str = ""


def format_address(phone: str, channel: Channel) -> str:
    number = normalize_phone(phone)
    if channel == Channel.WHATSAPP and number:
        return f"whatsapp:{number}"
    return number


def validate_signature(auth_token: str, url: str, params: dict, signature: str) -> bool:
    """Check an X-Twilio-Signature header against the request URL and form params."""
    if not auth_token or not signature:
        return False
    return RequestValidator(auth_token).validate(url, params, signature)


class TwilioGateway:
    """Outbound SMS/WhatsApp through the Twilio REST API.

    ``send`` never raises: failures come back as ``SendResult(success=False)``
    so the caller can record the delivery failure on the message. After 3
    consecutive failures sends are skipped for 60s.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        default_from: str = "",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.account_sid = account_sid
        self.default_from = default_from
        self.timeout = timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="Twilio",
        )
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=TWILIO_API_URL,
                auth=(account_sid, auth_token),
                timeout=self.timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def send(
        self,
        to: str,
        body: str,
        channel: Channel,
        from_number: str | None = None,
        status_callback: str | None = None,
    ) -> SendResult:
        if channel == Channel.EMAIL:
            return SendResult(False, error="Email is not delivered through Twilio")

        sender = from_number or self.default_from
        data = {
            "To": format_address(to, channel),
            "From": format_address(sender, channel),
            "Body": body,
        }
        if not data["To"] or not data["From"]:
            return SendResult(False, error="Missing recipient or sender number")
        if status_callback:
            data["StatusCallback"] = status_callback

        if not self._circuit.should_try():
            logger.warning("Twilio circuit breaker open, not sending to %s", data["To"])
            return SendResult(False, error="Messaging gateway unavailable")
        try:
            resp = await self._client.post(
                f"/2010-04-01/Accounts/{self.account_sid}/Messages.json",
                data=data,
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as e:
            self._circuit.record_failure()
            detail = _error_detail(e.response)
            logger.error("Twilio send to %s failed: %s", data["To"], detail)
            return SendResult(False, error=detail)
        except Exception as e:
            self._circuit.record_failure()
            logger.error("Twilio send to %s failed: %s", data["To"], e)
            return SendResult(False, error=str(e))

        self._circuit.record_success()
        sid = payload.get("sid", "")
        logger.info("Sent %s message %s to %s", channel.value, sid, data["To"])
        return SendResult(True, sid=sid)


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    message = payload.get("message") if isinstance(payload, dict) else None
    return message or f"HTTP {response.status_code}"
