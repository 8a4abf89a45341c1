"""
Retry executor with exponential backoff and jitter.

with_retry() awaits a zero-argument coroutine factory up to
policy.max_attempts times. tenacity drives the loop; the policy supplies the
stop, wait and retry decisions, and the sleep between attempts is
asyncio.sleep so only the calling task is suspended.

Failures are classified by their structured ErrorKind when they carry one,
otherwise by case-insensitive substring match of the exception name/message
against the policy's patterns.

Profiles:
  DEFAULT_RETRY_POLICY: general purpose
  STORAGE_RETRY_POLICY: single storage operations (upload/delete)
  BATCH_RETRY_POLICY: per-asset uploads inside a batch (fewer, shorter)
  AI_CALL_RETRY_POLICY: vision model calls
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from app.config import RETRY_PROFILES
from app.services.errors import TRANSIENT_KINDS, error_kind

logger = logging.getLogger("inspection-api.retry")

T = TypeVar("T")

JITTER_RATIO = 0.10

COMMON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "NetworkError",
    "TimeoutError",
    "timeout",
    "Failed to fetch",
    "ERR_NETWORK",
    "ERR_INTERNET_DISCONNECTED",
    "ERR_CONNECTION",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "connection reset",
    "Storage rate limit exceeded",
    "Service temporarily unavailable",
    "503",
    "502",
    "429",
)

# Exceptions that are transient whatever their message says.
_ALWAYS_RETRYABLE = (asyncio.TimeoutError, TimeoutError, ConnectionError, httpx.TransportError)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    jitter: bool = True
    retryable_patterns: tuple[str, ...] = COMMON_RETRYABLE_PATTERNS
    retryable_kinds: frozenset = field(default=TRANSIENT_KINDS)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_factor <= 1:
            raise ValueError(f"backoff_factor must be > 1, got {self.backoff_factor}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay})"
            )


@dataclass(frozen=True)
class RetryAttempt:
    """Progress record handed to on_progress callbacks. Never persisted."""
    attempt: int
    total_attempts: int
    delay: float
    error: Optional[BaseException]
    is_retryable: bool


ProgressCallback = Callable[[RetryAttempt], None]


def _policy_from_profile(name: str) -> RetryPolicy:
    return RetryPolicy(**RETRY_PROFILES[name])


DEFAULT_RETRY_POLICY = _policy_from_profile("DEFAULT")
STORAGE_RETRY_POLICY = _policy_from_profile("STORAGE")
BATCH_RETRY_POLICY = _policy_from_profile("BATCH")
AI_CALL_RETRY_POLICY = _policy_from_profile("AI_CALL")


def is_retryable_error(error: BaseException, policy: RetryPolicy) -> bool:
    kind = error_kind(error)
    if kind is not None:
        return kind in policy.retryable_kinds
    if isinstance(error, _ALWAYS_RETRYABLE):
        return True

    message = str(error).lower()
    name = type(error).__name__.lower()
    return any(
        pattern.lower() in message or pattern.lower() in name
        for pattern in policy.retryable_patterns
    )


def calculate_delay(attempt: int, policy: RetryPolicy, rng: Optional[random.Random] = None) -> float:
    """
    Backoff delay (seconds) to wait after a failed attempt number `attempt` (1-based).

    delay = min(max_delay, base_delay * backoff_factor ** (attempt - 1)),
    then ±10% uniform jitter when enabled, floored at 0.
    """
    delay = policy.base_delay * (policy.backoff_factor ** (attempt - 1))
    delay = min(delay, policy.max_delay)

    if policy.jitter:
        jitter_amount = delay * JITTER_RATIO
        uniform = (rng or random).uniform
        delay += uniform(-jitter_amount, jitter_amount)

    return max(delay, 0.0)


class _BackoffWait(wait_base):
    """tenacity wait strategy delegating to calculate_delay."""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return calculate_delay(retry_state.attempt_number, self.policy)


async def _sleep(delay: float) -> None:
    await asyncio.sleep(delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    on_progress: Optional[ProgressCallback] = None,
) -> T:
    """
    Run `operation` with retries. Returns its result or re-raises the last error.

    on_progress fires before every attempt (delay=0, error=None), on every
    failure that will be retried (with the computed delay), and once on the
    final failure.
    """
    def before(retry_state: RetryCallState) -> None:
        if on_progress:
            on_progress(RetryAttempt(retry_state.attempt_number, policy.max_attempts, 0.0, None, True))

    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep
        logger.info(
            f"Attempt {retry_state.attempt_number}/{policy.max_attempts} failed "
            f"({type(exc).__name__}: {exc}), retrying in {delay:.2f}s",
            extra={"attempt": retry_state.attempt_number},
        )
        if on_progress:
            on_progress(RetryAttempt(retry_state.attempt_number, policy.max_attempts, delay, exc, True))

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_BackoffWait(policy),
        retry=retry_if_exception(lambda exc: is_retryable_error(exc, policy)),
        before=before,
        before_sleep=before_sleep,
        sleep=_sleep,
        reraise=True,
    )

    attempt_number = 0
    try:
        async for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                result = await operation()
    except Exception as exc:
        retryable = is_retryable_error(exc, policy)
        logger.warning(
            f"Giving up after attempt {attempt_number}/{policy.max_attempts} "
            f"({type(exc).__name__}: {exc}) retryable={retryable}",
            extra={"attempt": attempt_number},
        )
        if on_progress:
            on_progress(RetryAttempt(attempt_number, policy.max_attempts, 0.0, exc, retryable))
        raise

    if attempt_number > 1:
        logger.info(f"Operation succeeded on attempt {attempt_number}/{policy.max_attempts}")
    return result


__all__ = [
    "RetryPolicy",
    "RetryAttempt",
    "ProgressCallback",
    "COMMON_RETRYABLE_PATTERNS",
    "DEFAULT_RETRY_POLICY",
    "STORAGE_RETRY_POLICY",
    "BATCH_RETRY_POLICY",
    "AI_CALL_RETRY_POLICY",
    "is_retryable_error",
    "calculate_delay",
    "with_retry",
]
