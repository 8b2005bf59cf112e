"""Startup configuration.

``validate_config`` checks that all required environment variables are set
before the server accepts webhooks, so a missing key causes a clear startup
failure rather than a silent failure on the first inbound message.
"""

import logging
import os
import sys
from dataclasses import dataclass

from bookerbot.llm import DEFAULT_BASE_URL

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "OPENAI_API_KEY",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
]

OPTIONAL_VARS = [
    "HANDOFF_WEBHOOK_URL",
    "APP_URL",
    "GENERATION_TIMEOUT_S",
    "LOG_LEVEL",
    "OPENAI_BASE_URL",
]


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or in the deployment's secrets.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number, using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("%s must be positive, using %s", name, default)
        return default
    return value


@dataclass(frozen=True)
class Settings:
    openai_api_key: str = ""
    openai_base_url: str = DEFAULT_BASE_URL
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    validate_twilio_signature: bool = False
    handoff_webhook_url: str = ""
    handoff_webhook_secret: str = ""
    app_url: str = ""
    generation_timeout: float = 20.0
    log_level: str = "INFO"

    @property
    def status_callback_url(self) -> str:
        if not self.app_url:
            return ""
        return f"{self.app_url.rstrip('/')}/webhooks/twilio/status"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_base_url=os.getenv("OPENAI_BASE_URL") or DEFAULT_BASE_URL,
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
            twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),
            validate_twilio_signature=os.getenv("TWILIO_VALIDATE_SIGNATURE", "").lower() in ("1", "true", "yes"),
            handoff_webhook_url=os.getenv("HANDOFF_WEBHOOK_URL", ""),
            handoff_webhook_secret=os.getenv("HANDOFF_WEBHOOK_SECRET", ""),
            app_url=os.getenv("APP_URL", ""),
            generation_timeout=_float_env("GENERATION_TIMEOUT_S", 20.0),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )
