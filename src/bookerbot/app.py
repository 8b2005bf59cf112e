import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from bookerbot.config import Settings, validate_config
from bookerbot.gateway import TwilioGateway, validate_signature
from bookerbot.handoff import HandoffNotifier
from bookerbot.intent import IntentClassifier
from bookerbot.llm import LLMClient
from bookerbot.orchestrator import ContactLocks, ConversationOrchestrator
from bookerbot.qualification import AssessmentCache, QualificationAssessor
from bookerbot.repository import InMemoryRepository
from bookerbot.webhook import InboundMessage, InboundWebhookHandler, twiml

load_dotenv()

logging.basicConfig(
    level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    repository=None,
    llm=None,
    gateway=None,
    notifier=None,
) -> FastAPI:
    """Wire the engine and expose the Twilio webhooks."""
    settings = settings or Settings.from_env()
    repository = repository if repository is not None else InMemoryRepository()
    llm = llm or LLMClient(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
    )
    gateway = gateway or TwilioGateway(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        default_from=settings.twilio_from_number,
    )
    notifier = notifier or HandoffNotifier(
        settings.handoff_webhook_url,
        secret=settings.handoff_webhook_secret,
    )
    orchestrator = ConversationOrchestrator(
        repository,
        IntentClassifier(llm),
        QualificationAssessor(llm, AssessmentCache()),
        llm,
        locks=ContactLocks(),
        generation_timeout=settings.generation_timeout,
    )
    handler = InboundWebhookHandler(
        repository,
        orchestrator,
        gateway,
        notifier,
        status_callback_url=settings.status_callback_url,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        for client in (llm, gateway):
            close = getattr(client, "close", None)
            if close is not None:
                await close()

    app = FastAPI(title="BookerBot Conversation Engine", lifespan=lifespan)
    app.state.settings = settings
    app.state.repository = repository
    app.state.orchestrator = orchestrator
    app.state.handler = handler

    async def _form(request: Request) -> dict | None:
        form = {key: str(value) for key, value in (await request.form()).items()}
        if settings.validate_twilio_signature:
            signature = request.headers.get("X-Twilio-Signature", "")
            if not validate_signature(settings.twilio_auth_token, str(request.url), form, signature):
                logger.warning("Rejected webhook with invalid Twilio signature")
                return None
        return form

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/webhooks/twilio/inbound")
    async def twilio_inbound(request: Request):
        form = await _form(request)
        if form is None:
            return PlainTextResponse("Unauthorized", status_code=401)
        result = await handler.handle(InboundMessage.from_form(form))
        if result.status_code != 200:
            return PlainTextResponse(result.detail or "error", status_code=result.status_code)
        return Response(content=twiml(result.reply), media_type="application/xml")

    @app.post("/webhooks/twilio/status")
    async def twilio_status(request: Request):
        form = await _form(request)
        if form is None:
            return PlainTextResponse("Unauthorized", status_code=401)
        await handler.handle_status(
            form.get("MessageSid", ""),
            form.get("MessageStatus", ""),
            error_code=form.get("ErrorCode", ""),
            error_message=form.get("ErrorMessage", ""),
        )
        return PlainTextResponse("ok")

    return app


app = create_app()


def main():
    validate_config()
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("bookerbot.app:app", host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
