import asyncio
import json
import logging
import os
from dataclasses import dataclass

import httpx

from bookerbot.circuit_breaker import CircuitBreaker
from bookerbot.errors import GenerationError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
FAST_MODEL = "gpt-4o-mini"
SMART_MODEL = "gpt-4o"

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
RETRY_DELAYS = (1.0, 2.0)

# USD per million tokens
PRICING = {
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4o": {"input": 2.50, "output": 10.00},
}


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    total: int = 0
    model: str = "none"


@dataclass
class Generation:
    content: str
    usage: TokenUsage
    finish_reason: str = ""


def estimate_cost(usage: TokenUsage) -> float:
    pricing = PRICING.get(usage.model, PRICING[FAST_MODEL])
    return (usage.input / 1_000_000) * pricing["input"] + (usage.output / 1_000_000) * pricing["output"]


class LLMClient:
    """Chat-completions client for the generation provider.

    One instance is shared by the classifier, the assessor and the
    orchestrator. Every request carries the client timeout; 429/5xx responses
    are retried with backoff; a circuit breaker skips the provider entirely
    after repeated failures. All failures surface as GenerationError.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        retry_delays: tuple = RETRY_DELAYS,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_delays = retry_delays
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=30.0,
            label="generation provider",
        )
        if client is not None:
            self._client = client
        else:
            key = api_key if api_key is not None else os.getenv("OPENAI_API_KEY", "")
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def _chat(self, payload: dict) -> dict:
        if not self._circuit.should_try():
            raise GenerationError("Generation provider circuit open")

        attempts = len(self.retry_delays) + 1
        for attempt in range(attempts):
            try:
                resp = await self._client.post("/chat/completions", json=payload)
                if resp.status_code in RETRYABLE_STATUS and attempt < attempts - 1:
                    delay = self.retry_delays[attempt]
                    logger.warning(
                        "Provider returned %d (attempt %d), retrying in %.1fs",
                        resp.status_code, attempt + 1, delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                resp.raise_for_status()
                data = resp.json()
            except httpx.TimeoutException as e:
                self._circuit.record_failure()
                logger.error("Provider call timed out after %.1fs", self.timeout)
                raise GenerationError("Generation provider timed out") from e
            except (httpx.HTTPError, ValueError) as e:
                self._circuit.record_failure()
                logger.error("Provider call failed: %s", e)
                raise GenerationError(f"Generation provider failed: {e}") from e
            self._circuit.record_success()
            return data
        raise GenerationError("Generation provider failed after retries")

    async def generate(self, config) -> Generation:
        """Run one reply generation from a PromptConfig."""
        data = await self._chat({
            "model": config.model,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "messages": [
                {"role": "system", "content": config.system_prompt},
                *config.messages,
            ],
        })
        try:
            choice = data["choices"][0]
            content = (choice["message"]["content"] or "").strip()
        except (KeyError, IndexError, TypeError) as e:
            raise GenerationError("Malformed provider response") from e
        if not content:
            raise GenerationError("Provider returned an empty reply")

        usage = data.get("usage") or {}
        input_tokens = int(usage.get("prompt_tokens", 0))
        output_tokens = int(usage.get("completion_tokens", 0))
        return Generation(
            content=content,
            usage=TokenUsage(
                input=input_tokens,
                output=output_tokens,
                total=int(usage.get("total_tokens", input_tokens + output_tokens)),
                model=data.get("model") or config.model,
            ),
            finish_reason=choice.get("finish_reason") or "",
        )

    async def complete_json(
        self,
        system: str,
        user: str,
        *,
        model: str = FAST_MODEL,
        max_tokens: int = 500,
    ) -> dict:
        """Deterministic JSON-mode call used for classification and assessment."""
        data = await self._chat({
            "model": model,
            "max_tokens": max_tokens,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        })
        try:
            result = json.loads(data["choices"][0]["message"]["content"])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise GenerationError("Provider returned malformed JSON") from e
        if not isinstance(result, dict):
            raise GenerationError("Provider JSON is not an object")
        return result
