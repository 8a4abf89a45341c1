"""
Service configuration: single source of truth for model routing, retry
profiles, batch upload tuning, AI budgets and review thresholds.

Every value can be overridden through the environment. Import from here in
services and routes rather than hardcoding values.
"""
from __future__ import annotations

import os


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# ── Vision model routing ──────────────────────────────────────────────────────
LLM_PRIMARY_MODEL: str = os.getenv("LLM_PRIMARY_MODEL", "gemini/gemini-2.0-flash")
LLM_FALLBACK_MODEL: str = os.getenv("LLM_FALLBACK_MODEL", "gemini/gemini-1.5-flash")
AI_REQUEST_TIMEOUT_SECONDS: float = _env_float("AI_REQUEST_TIMEOUT_SECONDS", 45.0)
AI_TEMPERATURE: float = _env_float("AI_TEMPERATURE", 0.4)
AI_MAX_OUTPUT_TOKENS: int = _env_int("AI_MAX_OUTPUT_TOKENS", 4096)


# ── AI budget + rate limits ───────────────────────────────────────────────────
AI_DAILY_BUDGET_USD: float = _env_float("AI_DAILY_BUDGET_USD", 5.0)
AI_MONTHLY_BUDGET_USD: float = _env_float("AI_MONTHLY_BUDGET_USD", 100.0)
AI_COST_PER_CALL_USD: float = _env_float("AI_COST_PER_CALL_USD", 0.02)
AI_BUDGET_WARNING_RATIO: float = 0.80
AI_BUDGET_CRITICAL_RATIO: float = 0.95
AI_RATE_LIMIT_PER_MINUTE: int = _env_int("AI_RATE_LIMIT_PER_MINUTE", 15)


# ── Remote asset store (Supabase Storage) ─────────────────────────────────────
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
STORAGE_BUCKET: str = os.getenv("STORAGE_BUCKET", "inspection-images")
STORAGE_TIMEOUT_SECONDS: float = _env_float("STORAGE_TIMEOUT_SECONDS", 30.0)
STORAGE_CACHE_CONTROL: str = "3600"
STORAGE_OWNER_FOLDER: str = os.getenv("STORAGE_OWNER_FOLDER", "inspector")


# ── Batch upload tuning ───────────────────────────────────────────────────────
BATCH_MAX_CONCURRENT: int = max(1, _env_int("BATCH_MAX_CONCURRENT", 3))
BATCH_DELAY_SECONDS: float = max(0.0, _env_float("BATCH_DELAY_SECONDS", 0.1))


# ── Retry profiles ────────────────────────────────────────────────────────────
# Tunable, not load-bearing. Keys: max_attempts, base_delay, max_delay, backoff_factor.
def _retry_profile(name: str, attempts: int, base: float, cap: float, factor: float = 2.0) -> dict:
    prefix = f"RETRY_{name}_"
    return {
        "max_attempts": _env_int(prefix + "MAX_ATTEMPTS", attempts),
        "base_delay": _env_float(prefix + "BASE_DELAY", base),
        "max_delay": _env_float(prefix + "MAX_DELAY", cap),
        "backoff_factor": _env_float(prefix + "BACKOFF_FACTOR", factor),
    }


RETRY_PROFILES: dict[str, dict] = {
    "DEFAULT": _retry_profile("DEFAULT", 3, 1.0, 10.0),
    "STORAGE": _retry_profile("STORAGE", 3, 1.0, 8.0),
    "BATCH":   _retry_profile("BATCH", 2, 0.5, 5.0),
    "AI_CALL": _retry_profile("AI_CALL", 3, 1.0, 5.0),
}


# ── Parsing confidence ────────────────────────────────────────────────────────
# Results below this confidence are flagged for manual review.
REVIEW_CONFIDENCE_THRESHOLD: float = 0.75

# Prefix of the raw model text kept on fallback records for human follow-up.
FALLBACK_RAW_TEXT_CHARS: int = 500

# Cross-image validation only looks at the first N sources.
CROSS_VALIDATION_MAX_SOURCES: int = 5
