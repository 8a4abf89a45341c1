"""
test_llm_client.py: Tests for the vision-model client.

litellm.acompletion is monkeypatched with scripted fakes; no provider is
contacted.

Tests cover:
  - primary answer, fallback on failure, retry of the whole chain
  - empty answers, budget refusal, local rate-limit skipping
  - provider exception mapping and message construction
"""

import asyncio
from types import SimpleNamespace

import litellm
import pytest

from app import config
from app.services.errors import AIServiceError, BudgetExceededError, ErrorKind
from app.services.llm_client import (
    LLMClient,
    build_vision_messages,
    call_text_generation_api,
    generate,
    map_llm_exception,
)
from app.services.usage_tracker import RateLimiter, UsageTracker

PRIMARY = config.LLM_PRIMARY_MODEL
FALLBACK = config.LLM_FALLBACK_MODEL


def _response(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


@pytest.fixture
def scripted(monkeypatch):
    """
    Patch litellm.acompletion. Assign ``scripted.behaviour[model]`` to a
    string (answer) or an exception instance (raised). Calls are recorded.
    """
    state = SimpleNamespace(behaviour={}, calls=[])

    async def fake_acompletion(**kwargs):
        model = kwargs["model"]
        state.calls.append(model)
        await asyncio.sleep(0)
        outcome = state.behaviour.get(model, "{}")
        if isinstance(outcome, BaseException):
            raise outcome
        return _response(outcome)

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
    return state


class TestGenerate:

    def test_primary_answers(self, scripted, no_sleep):
        scripted.behaviour[PRIMARY] = '{"description": "door"}'
        usage = UsageTracker(daily_budget=1.0, monthly_budget=10.0)

        response = asyncio.run(generate("assess", ["abc"], usage=usage))

        assert response.text == '{"description": "door"}'
        assert response.model == PRIMARY
        assert scripted.calls == [PRIMARY]
        assert usage.snapshot()["daily"]["calls"] == 1

    def test_fallback_used_when_primary_fails(self, scripted, no_sleep):
        scripted.behaviour[PRIMARY] = asyncio.TimeoutError()
        scripted.behaviour[FALLBACK] = "from fallback"

        response = asyncio.run(generate("assess", ["abc"]))

        assert response.model == FALLBACK
        assert scripted.calls == [PRIMARY, FALLBACK]
        assert no_sleep == []

    def test_failed_model_releases_its_budget(self, scripted, no_sleep):
        scripted.behaviour[PRIMARY] = asyncio.TimeoutError()
        scripted.behaviour[FALLBACK] = "from fallback"
        usage = UsageTracker(daily_budget=1.0, monthly_budget=10.0)

        asyncio.run(generate("assess", ["abc"], usage=usage))

        daily = usage.snapshot()["daily"]
        assert daily["calls"] == 1
        assert daily["cost"] == pytest.approx(config.AI_COST_PER_CALL_USD)
        assert list(daily["model_breakdown"]) == [FALLBACK]

    def test_concurrent_calls_cannot_overspend(self, scripted, no_sleep):
        """Budget for one call: the second concurrent caller is refused while the first is in flight."""
        scripted.behaviour[PRIMARY] = "ok"
        usage = UsageTracker(daily_budget=config.AI_COST_PER_CALL_USD * 1.5, monthly_budget=10.0)

        async def both():
            return await asyncio.gather(
                generate("assess", ["abc"], model=PRIMARY, usage=usage),
                generate("assess", ["abc"], model=PRIMARY, usage=usage),
                return_exceptions=True,
            )

        outcomes = asyncio.run(both())

        assert sum(isinstance(o, BudgetExceededError) for o in outcomes) == 1
        assert scripted.calls == [PRIMARY]
        assert usage.snapshot()["daily"]["calls"] == 1

    def test_whole_chain_retried_on_transient_failure(self, scripted, no_sleep):
        scripted.behaviour[PRIMARY] = asyncio.TimeoutError()
        scripted.behaviour[FALLBACK] = asyncio.TimeoutError()

        with pytest.raises(AIServiceError) as info:
            asyncio.run(generate("assess", ["abc"]))

        assert info.value.kind is ErrorKind.TIMEOUT
        assert scripted.calls == [PRIMARY, FALLBACK] * 3
        assert len(no_sleep) == 2

    def test_empty_answer_is_not_retried(self, scripted, no_sleep):
        scripted.behaviour[PRIMARY] = "   "
        scripted.behaviour[FALLBACK] = ""

        with pytest.raises(AIServiceError, match="No content returned from model") as info:
            asyncio.run(generate("assess", ["abc"]))

        assert info.value.kind is ErrorKind.UNKNOWN
        assert scripted.calls == [PRIMARY, FALLBACK]

    def test_budget_refusal_skips_provider(self, scripted, no_sleep):
        usage = UsageTracker(daily_budget=0.0, monthly_budget=0.0)

        with pytest.raises(BudgetExceededError):
            asyncio.run(generate("assess", ["abc"], usage=usage))

        assert scripted.calls == []

    def test_rate_limited_model_skipped(self, scripted, no_sleep):
        limiter = RateLimiter(requests_per_minute=1)
        limiter.acquire(PRIMARY)
        scripted.behaviour[FALLBACK] = "ok"

        response = asyncio.run(generate("assess", ["abc"], rate_limiter=limiter))

        assert response.model == FALLBACK
        assert scripted.calls == [FALLBACK]

    def test_explicit_model_has_no_fallback(self, scripted, no_sleep):
        scripted.behaviour["gemini/custom"] = "custom answer"

        text = asyncio.run(call_text_generation_api("assess", ["abc"], model="gemini/custom"))

        assert text == "custom answer"
        assert scripted.calls == ["gemini/custom"]


class TestLLMClient:

    def test_vision_returns_text(self, scripted, no_sleep):
        scripted.behaviour[PRIMARY] = "answer"
        client = LLMClient(usage=UsageTracker(daily_budget=1.0, monthly_budget=1.0), rate_limiter=RateLimiter(10))

        assert asyncio.run(client.vision(["abc"], "prompt")) == "answer"
        assert client.rate_limiter.snapshot()[PRIMARY]["used"] == 1


class TestHelpers:

    def test_exception_mapping(self):
        error = map_llm_exception(
            litellm.RateLimitError(message="slow down", llm_provider="gemini", model=PRIMARY), PRIMARY
        )
        assert error.kind is ErrorKind.RATE_LIMITED

        assert map_llm_exception(asyncio.TimeoutError(), PRIMARY).kind is ErrorKind.TIMEOUT
        assert map_llm_exception(RuntimeError("??"), PRIMARY).kind is ErrorKind.UNKNOWN

        existing = AIServiceError("already mapped", kind=ErrorKind.NETWORK)
        assert map_llm_exception(existing, PRIMARY) is existing

    def test_vision_messages(self):
        (message,) = build_vision_messages("describe", ["rawbase64", "data:image/png;base64,AAA", "https://x.test/a.jpg"])

        assert message["role"] == "user"
        assert message["content"][0] == {"type": "text", "text": "describe"}
        urls = [part["image_url"]["url"] for part in message["content"][1:]]
        assert urls == [
            "data:image/jpeg;base64,rawbase64",
            "data:image/png;base64,AAA",
            "https://x.test/a.jpg",
        ]
