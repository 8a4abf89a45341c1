"""
LLM Client Abstraction
Single entry point for every vision-model call in the inspection service.
Primary: Gemini 2.0 Flash
Fallback: Gemini 1.5 Flash

Each model call is raced against a timeout, provider exceptions are mapped
onto AIServiceError kinds, and the whole primary→fallback sequence is retried
with the AI_CALL profile when the final error is transient.
"""
from __future__ import annotations

import asyncio
import logging
from typing import NamedTuple, Optional

import litellm

from app import config
from app.services.errors import AIServiceError, BudgetExceededError, ErrorKind
from app.services.retry import AI_CALL_RETRY_POLICY, RetryPolicy, with_retry
from app.services.usage_tracker import RateLimiter, UsageTracker

logger = logging.getLogger("inspection-api.llm")

# Suppress litellm verbose logging
litellm.set_verbose = False


class LLMResponse(NamedTuple):
    text: str
    model: str


# Order matters: subclasses before their bases.
_EXCEPTION_KINDS: tuple[tuple[type, ErrorKind], ...] = (
    (litellm.ContentPolicyViolationError, ErrorKind.CONTENT_REJECTED),
    (litellm.RateLimitError, ErrorKind.RATE_LIMITED),
    (litellm.Timeout, ErrorKind.TIMEOUT),
    (litellm.AuthenticationError, ErrorKind.AUTHENTICATION),
    (litellm.NotFoundError, ErrorKind.NOT_FOUND),
    (litellm.BadRequestError, ErrorKind.INVALID_REQUEST),
    (litellm.ServiceUnavailableError, ErrorKind.SERVICE_UNAVAILABLE),
    (litellm.InternalServerError, ErrorKind.SERVICE_UNAVAILABLE),
    (litellm.APIConnectionError, ErrorKind.NETWORK),
    (litellm.APIError, ErrorKind.SERVICE_UNAVAILABLE),
)


def map_llm_exception(exc: BaseException, model: str) -> AIServiceError:
    if isinstance(exc, AIServiceError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return AIServiceError(f"{model} timed out", kind=ErrorKind.TIMEOUT)
    for exc_type, kind in _EXCEPTION_KINDS:
        if isinstance(exc, exc_type):
            return AIServiceError(
                f"{model} failed: {type(exc).__name__}: {exc}",
                kind=kind,
                status_code=getattr(exc, "status_code", None),
            )
    return AIServiceError(f"{model} failed: {type(exc).__name__}: {exc}", kind=ErrorKind.UNKNOWN)


def _image_url(image: str) -> str:
    if image.startswith(("data:", "http://", "https://")):
        return image
    return f"data:image/jpeg;base64,{image}"


def build_vision_messages(prompt_text: str, images: list[str]) -> list[dict]:
    content: list[dict] = [{"type": "text", "text": prompt_text}]
    for image in images:
        content.append({"type": "image_url", "image_url": {"url": _image_url(image)}})
    return [{"role": "user", "content": content}]


async def _call_model(model: str, messages: list[dict], timeout: float, temperature: float, max_tokens: int) -> str:
    try:
        response = await asyncio.wait_for(
            litellm.acompletion(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            ),
            timeout=timeout,
        )
    except Exception as exc:
        raise map_llm_exception(exc, model) from exc

    try:
        text = response.choices[0].message.content
    except (AttributeError, IndexError, TypeError):
        text = None
    if not text or not str(text).strip():
        raise AIServiceError("No content returned from model", kind=ErrorKind.UNKNOWN)
    return str(text)


async def _complete_with_fallback(
    models: list[str],
    messages: list[dict],
    timeout: float,
    temperature: float,
    max_tokens: int,
    usage: Optional[UsageTracker],
    rate_limiter: Optional[RateLimiter],
) -> LLMResponse:
    last_error: Optional[AIServiceError] = None

    cost = config.AI_COST_PER_CALL_USD

    for model in models:
        # Booked before the await; released below unless the model answers.
        if usage is not None:
            decision = usage.reserve(model, cost)
            if not decision.allowed:
                raise BudgetExceededError(decision.reason or "AI budget exceeded")

        if rate_limiter is not None and not rate_limiter.acquire(model):
            if usage is not None:
                usage.release(model, cost)
            last_error = AIServiceError(f"{model} rate limit window is full", kind=ErrorKind.RATE_LIMITED)
            logger.warning(f"Skipping {model}: local rate limit reached")
            continue

        answered = False
        try:
            text = await _call_model(model, messages, timeout, temperature, max_tokens)
            answered = True
        except AIServiceError as exc:
            last_error = exc
            logger.warning(f"{model} failed ({exc.kind.value}: {exc})")
            continue
        finally:
            if not answered and usage is not None:
                usage.release(model, cost)

        logger.info(f"Vision call answered by {model} ({len(text)} chars)")
        return LLMResponse(text, model)

    logger.error(f"All vision models failed. Last error: {last_error}")
    raise last_error or AIServiceError("No model available", kind=ErrorKind.SERVICE_UNAVAILABLE)


async def generate(
    prompt_text: str,
    images: list[str],
    *,
    model: Optional[str] = None,
    timeout: Optional[float] = None,
    usage: Optional[UsageTracker] = None,
    rate_limiter: Optional[RateLimiter] = None,
    temperature: float = config.AI_TEMPERATURE,
    max_tokens: int = config.AI_MAX_OUTPUT_TOKENS,
    retry_policy: RetryPolicy = AI_CALL_RETRY_POLICY,
) -> LLMResponse:
    models = [model] if model else [config.LLM_PRIMARY_MODEL, config.LLM_FALLBACK_MODEL]
    messages = build_vision_messages(prompt_text, images)
    return await with_retry(
        lambda: _complete_with_fallback(
            models,
            messages,
            timeout or config.AI_REQUEST_TIMEOUT_SECONDS,
            temperature,
            max_tokens,
            usage,
            rate_limiter,
        ),
        retry_policy,
    )


async def call_text_generation_api(
    prompt_text: str,
    images: list[str],
    *,
    model: Optional[str] = None,
    timeout: Optional[float] = None,
    usage: Optional[UsageTracker] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> str:
    """
    Send a prompt plus images to the vision model and return its raw text.

    Raises AIServiceError (or BudgetExceededError) once retries are exhausted.
    """
    response = await generate(
        prompt_text, images, model=model, timeout=timeout, usage=usage, rate_limiter=rate_limiter,
    )
    return response.text


class LLMClient:
    """
    Class-based wrapper around generate() that carries the per-process
    usage tracker and rate limiter.
    """

    def __init__(
        self,
        usage: Optional[UsageTracker] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: Optional[float] = None,
    ):
        self.usage = usage
        self.rate_limiter = rate_limiter
        self.timeout = timeout

    async def generate(self, images: list[str], prompt: str, model: Optional[str] = None) -> LLMResponse:
        return await generate(
            prompt,
            images,
            model=model,
            timeout=self.timeout,
            usage=self.usage,
            rate_limiter=self.rate_limiter,
        )

    async def vision(self, images: list[str], prompt: str) -> str:
        return (await self.generate(images, prompt)).text
