"""
generation.py — Generation Client over the Mistral async chat API.

GenerationClient.generate() never raises for upstream trouble. It returns either
GeneratedText or a GenerationFailure carrying a short reason code; the raw
upstream error is logged here and never handed to the conversation layer.

Retry policy:
  - every attempt is bounded by asyncio.wait_for(timeout); a hung socket counts
    as a retryable timeout, not a hang of the webhook handler
  - timeouts, transport errors, missing responses, HTTP 429 and 5xx are retried
  - other 4xx, response validation errors and empty completions are terminal
  - the whole call, semaphore wait included, is bounded by
    settings.generation_budget_seconds so it always ends inside the session lease
  - backoff is exponential with full jitter: uniform(0, min(cap, base * 2**n))

The optional asyncio.Semaphore caps concurrent backend calls per process. It is
created in main.py lifespan and passed in (no module-level event-loop objects).
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

import httpx
from mistralai import Mistral, models

from fortunebot.config import Settings
from fortunebot.conversation.schemas import (
    GeneratedText,
    GenerationFailure,
    GenerationRequest,
    GenerationResult,
)

logger = logging.getLogger(__name__)

_RETRYABLE_REASONS = {"timeout", "upstream_unavailable", "rate_limited"}
_SDK_ERRORS = (asyncio.TimeoutError, httpx.HTTPError, models.MistralError, models.NoResponseError)


def _classify(exc: BaseException) -> str:
    """Map an exception from one attempt to a GenerationFailure reason code."""
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return "timeout"
    if isinstance(exc, (httpx.TransportError, models.NoResponseError)):
        return "upstream_unavailable"
    status = getattr(exc, "status_code", None)
    if status is None and isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    if status == 429:
        return "rate_limited"
    if isinstance(status, int) and status >= 500:
        return "upstream_unavailable"
    return "rejected"


def _usage_dict(usage: Any) -> dict[str, int]:
    if usage is None:
        return {}
    fields = ("prompt_tokens", "completion_tokens", "total_tokens")
    return {f: getattr(usage, f) for f in fields if isinstance(getattr(usage, f, None), int)}


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Chunked content: keep the text chunks only
        return "".join(getattr(chunk, "text", "") or "" for chunk in content)
    return ""


class GenerationClient:
    def __init__(
        self,
        client: Mistral,
        settings: Settings,
        *,
        semaphore: Optional[asyncio.Semaphore] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._client = client
        self._model = settings.generation_model
        self._temperature = settings.generation_temperature
        self._max_tokens = settings.generation_max_tokens
        self._timeout = settings.generation_timeout_seconds
        self._max_attempts = max(1, settings.generation_max_attempts)
        self._backoff_base = settings.generation_backoff_base_seconds
        self._backoff_max = settings.generation_backoff_max_seconds
        self._budget = settings.generation_budget_seconds
        self._semaphore = semaphore
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_delay(self, attempt: int) -> float:
        """Full-jitter delay before retry number `attempt` (1-based)."""
        ceiling = min(self._backoff_max, self._backoff_base * (2 ** (attempt - 1)))
        return self._rng.uniform(0, ceiling)

    async def _complete(self, request: GenerationRequest, timeout: float):
        call = self._client.chat.complete_async(
            model=self._model,
            messages=[
                {"role": "system", "content": request.instructions},
                {"role": "user", "content": request.user_data},
            ],
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        return await asyncio.wait_for(call, timeout=timeout)

    async def _call_once(self, request: GenerationRequest, deadline: float):
        loop = asyncio.get_running_loop()
        if self._semaphore is None:
            return await self._complete(request, min(self._timeout, deadline - loop.time()))
        # Queueing behind other calls spends the same budget as the call itself
        await asyncio.wait_for(self._semaphore.acquire(), timeout=max(0.0, deadline - loop.time()))
        try:
            return await self._complete(request, min(self._timeout, max(0.0, deadline - loop.time())))
        finally:
            self._semaphore.release()

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Submit a structured prompt and return the generated text or a terminal failure.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._budget
        reason = "upstream_unavailable"
        for attempt in range(1, self._max_attempts + 1):
            if loop.time() >= deadline:
                logger.error(
                    "Generation budget spent kind=%s attempts=%d budget=%.1fs",
                    request.kind.value, attempt - 1, self._budget,
                )
                return GenerationFailure(reason="timeout", attempts=attempt - 1, retryable=True)
            logger.info(
                "Calling generation backend model=%s kind=%s attempt=%d",
                self._model, request.kind.value, attempt,
            )
            try:
                response = await self._call_once(request, deadline)
            except _SDK_ERRORS as exc:
                reason = _classify(exc)
                logger.warning(
                    "Generation attempt failed kind=%s attempt=%d reason=%s error=%s",
                    request.kind.value, attempt, reason, type(exc).__name__,
                )
                if reason not in _RETRYABLE_REASONS:
                    return GenerationFailure(reason=reason, attempts=attempt, retryable=False)
                if attempt < self._max_attempts:
                    await self._sleep(min(self.backoff_delay(attempt), max(0.0, deadline - loop.time())))
                continue
            except Exception as exc:
                logger.error(
                    "Generation attempt raised unexpectedly kind=%s attempt=%d error=%s",
                    request.kind.value, attempt, type(exc).__name__, exc_info=True,
                )
                return GenerationFailure(reason="rejected", attempts=attempt, retryable=False)

            choices = getattr(response, "choices", None) or []
            text = _content_text(choices[0].message.content).strip() if choices else ""
            if not text:
                logger.warning("Generation returned empty content kind=%s attempt=%d", request.kind.value, attempt)
                return GenerationFailure(reason="empty_response", attempts=attempt, retryable=False)

            logger.info(
                "Generation succeeded kind=%s attempt=%d output_len=%d",
                request.kind.value, attempt, len(text),
            )
            return GeneratedText(
                text=text,
                model=self._model,
                attempts=attempt,
                usage=_usage_dict(getattr(response, "usage", None)),
            )

        logger.error(
            "Generation exhausted retries kind=%s attempts=%d reason=%s",
            request.kind.value, self._max_attempts, reason,
        )
        return GenerationFailure(reason=reason, attempts=self._max_attempts, retryable=True)
