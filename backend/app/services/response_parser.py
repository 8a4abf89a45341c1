"""
Response parser cascade for vision-model output.

Strategies run in order until one yields a record that survives
normalization and schema validation:

  1. direct_json          whole text is a JSON object                 0.95
  2. markdown_extraction  first fenced ```json block holding an object 0.90
  3. pattern_extraction   embedded object located by anchor keys       0.85 / 0.80
  4. reconstruction       field-by-field regex salvage from prose      0.75 / 0.70
  5. fallback             generic placeholder flagged for review       0.50

parse_with_fallbacks() never raises and always returns success=True; low
confidence is signalled through ParseResult.requires_review instead.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, NamedTuple, Optional

from pydantic import ValidationError

from app import config
from app.models.assessment_schema import AssessmentRecord
from app.services.normalizer import validate_and_normalize_structure

logger = logging.getLogger("inspection-api.parser")

ANCHOR_KEYS: tuple[str, ...] = ("description", "condition", "cleanliness", "sceneSummary", "components")

# raw_decode is attempted from at most this many "{" positions per response.
MAX_DECODE_ATTEMPTS = 200

_DECODER = json.JSONDecoder()


class ParseStrategyError(ValueError):
    """A strategy could not produce a candidate record."""


class StrategyMatch(NamedTuple):
    data: dict
    confidence: float


@dataclass(frozen=True)
class ParseResult:
    success: bool
    data: dict
    method: str
    confidence: float
    validation_errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def requires_review(self) -> bool:
        metadata = self.data.get("analysisMetadata") or {}
        return self.confidence < config.REVIEW_CONFIDENCE_THRESHOLD or bool(metadata.get("requiresReview"))

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "data": self.data,
            "method": self.method,
            "confidence": self.confidence,
            "validation_errors": list(self.validation_errors),
            "requires_review": self.requires_review,
        }


# ── Strategy 1: whole text is JSON ────────────────────────────────────────────

def parse_direct_json(text: str) -> StrategyMatch:
    trimmed = text.strip()
    if not (trimmed.startswith("{") and trimmed.endswith("}")):
        raise ParseStrategyError("not a bare JSON object")
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError as exc:
        raise ParseStrategyError(f"invalid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ParseStrategyError("JSON is not an object")
    return StrategyMatch(parsed, 0.95)


# ── Strategy 2: fenced code block ─────────────────────────────────────────────

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", re.IGNORECASE)


def extract_fenced_json(text: str) -> StrategyMatch:
    for match in _FENCE_RE.finditer(text):
        try:
            parsed = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return StrategyMatch(parsed, 0.90)
    raise ParseStrategyError("no fenced JSON object")


# ── Strategy 3: embedded object found by anchor keys ──────────────────────────

def _has_nested_anchor(value: Any, depth: int = 0) -> bool:
    if depth > 6:
        return False
    if isinstance(value, dict):
        return any(key in ANCHOR_KEYS for key in value) or any(
            _has_nested_anchor(v, depth + 1) for v in value.values()
        )
    if isinstance(value, list):
        return any(_has_nested_anchor(v, depth + 1) for v in value)
    return False


def extract_json_by_pattern(text: str) -> StrategyMatch:
    anchor_positions = [text.rfind(f'"{key}"') for key in ANCHOR_KEYS]
    last_anchor = max(anchor_positions)
    if last_anchor < 0:
        raise ParseStrategyError("no anchor key in text")

    nested: Optional[dict] = None
    attempts = 0
    for match in re.finditer(r"\{", text[:last_anchor]):
        if attempts >= MAX_DECODE_ATTEMPTS:
            break
        attempts += 1
        try:
            obj, _ = _DECODER.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if not isinstance(obj, dict):
            continue
        if any(key in obj for key in ANCHOR_KEYS):
            return StrategyMatch(obj, 0.85)
        if nested is None and _has_nested_anchor(obj):
            nested = obj

    if nested is not None:
        return StrategyMatch(nested, 0.80)
    raise ParseStrategyError("no decodable object containing an anchor key")


# ── Strategy 4: field-by-field reconstruction ─────────────────────────────────

def _field_patterns(name: str) -> list[re.Pattern]:
    n = r"[\s_]+".join(re.escape(word) for word in name.split())
    return [
        re.compile(rf'"{n}"\s*:\s*"([^"]*)"', re.IGNORECASE),
        re.compile(rf"\*\*{n}:\*\*\s*([^\n]+)", re.IGNORECASE),
        re.compile(rf"\*\*{n}\*\*\s*:?\s*([^\n]+)", re.IGNORECASE),
        re.compile(rf"^\s*#+\s*{n}\s*:?\s*\n+\s*([^\n#]+)", re.IGNORECASE | re.MULTILINE),
        re.compile(rf"\[{n}\]\s*:?\s*([^\n]+)", re.IGNORECASE),
        re.compile(rf'\b{n}\s*:\s*"?([^"\n,}}]+)', re.IGNORECASE),
    ]


_FIELD_PATTERNS: dict[str, list[re.Pattern]] = {
    name: _field_patterns(name)
    for name in ("description", "summary", "rating", "condition rating", "condition", "cleanliness")
}

_RATING_KEYWORD_RE = re.compile(r"\b(excellent|good|fair|poor|critical)\b", re.IGNORECASE)
_CLEANLINESS_PHRASE_RE = re.compile(
    r"\b(professional[\s_-]+clean(?:[\s_-]+with[\s_-]+omissions)?"
    r"|domestic[\s_-]+clean(?:[\s_-]+(?:to[\s_-]+a[\s_-]+)?high[\s_-]+level)?"
    r"|not[\s_-]+clean|dirty|spotless)\b",
    re.IGNORECASE,
)
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-•*]|\d+[.)])\s+(.+?)\s*$", re.MULTILINE)
_DEFECTS_RE = re.compile(r'"defects"\s*:\s*(?=\[)', re.IGNORECASE)


def _extract_field(text: str, name: str) -> Optional[str]:
    for pattern in _FIELD_PATTERNS[name]:
        match = pattern.search(text)
        if match:
            value = match.group(1).strip().strip("*").strip()
            if value and not value.startswith(("{", "[")):
                return value
    return None


def _extract_defects(text: str) -> Optional[list]:
    match = _DEFECTS_RE.search(text)
    if not match:
        return None
    try:
        defects, _ = _DECODER.raw_decode(text, match.end())
    except json.JSONDecodeError:
        logger.debug("Could not salvage defects array")
        return None
    return defects if isinstance(defects, list) else None


def _first_line(text: str) -> Optional[str]:
    for line in text.splitlines():
        line = line.strip().lstrip("#").strip()
        if line:
            return line[:300]
    return None


def reconstruct_partial_record(text: str) -> StrategyMatch:
    description = _extract_field(text, "description")
    summary = _extract_field(text, "summary")
    rating = (
        _extract_field(text, "rating")
        or _extract_field(text, "condition rating")
        or _extract_field(text, "condition")
    )
    cleanliness = _extract_field(text, "cleanliness")
    explicit = bool(description and rating and cleanliness)

    rating_keyword = None
    if not rating:
        keyword = _RATING_KEYWORD_RE.search(text)
        rating_keyword = keyword.group(1).lower() if keyword else None
    if not cleanliness:
        phrase = _CLEANLINESS_PHRASE_RE.search(text)
        cleanliness = phrase.group(1) if phrase else None

    points = [item for item in _LIST_ITEM_RE.findall(text) if item.strip()]
    defects = _extract_defects(text)

    recovered = {
        "description": description,
        "summary": summary,
        "rating": rating or rating_keyword,
        "cleanliness": cleanliness,
        "points": points or None,
        "defects": defects,
    }
    found = [name for name, value in recovered.items() if value]
    if not found:
        raise ParseStrategyError("nothing recoverable in text")

    record: dict[str, Any] = {
        "description": description or _first_line(text) or "Component observed",
        "condition": {
            "summary": summary or "Condition assessed based on visual inspection",
            "points": points,
            "rating": rating or rating_keyword or "fair",
        },
        "cleanliness": cleanliness or "domestic_clean",
        "analysisMetadata": {"parsingMethod": "reconstruction", "recoveredFields": found},
    }
    if defects:
        record["defects"] = defects

    return StrategyMatch(record, 0.75 if explicit else 0.70)


# ── Strategy 5: placeholder ───────────────────────────────────────────────────

def build_fallback_record(text: str) -> dict:
    return {
        "description": "Component analysis completed",
        "condition": {
            "summary": "Assessment based on available visual information",
            "points": ["Analysis completed with available data"],
            "rating": "fair",
        },
        "cleanliness": "domestic_clean",
        "analysisMetadata": {
            "parsingMethod": "fallback",
            "originalResponse": text[: config.FALLBACK_RAW_TEXT_CHARS],
            "requiresReview": True,
        },
    }


# ── Orchestrator ──────────────────────────────────────────────────────────────

Strategy = Callable[[str], StrategyMatch]

DEFAULT_STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("direct_json", parse_direct_json),
    ("markdown_extraction", extract_fenced_json),
    ("pattern_extraction", extract_json_by_pattern),
    ("reconstruction", reconstruct_partial_record),
)


def _validated(record: dict) -> dict:
    return AssessmentRecord.model_validate(record).model_dump(by_alias=True, exclude_none=True)


class ResponseParser:
    def __init__(self, strategies: tuple[tuple[str, Strategy], ...] = DEFAULT_STRATEGIES):
        self.strategies = strategies

    def parse_with_fallbacks(self, raw_text: Any) -> ParseResult:
        text = "" if raw_text is None else raw_text if isinstance(raw_text, str) else str(raw_text)
        errors: list[str] = []

        for method, strategy in self.strategies:
            try:
                match = strategy(text)
                data = _validated(validate_and_normalize_structure(match.data))
            except ValidationError as exc:
                errors.append(f"{method}: {exc.error_count()} schema errors")
                logger.debug(f"Strategy {method} produced an invalid record: {exc}")
                continue
            except Exception as exc:
                errors.append(f"{method}: {exc}")
                logger.debug(f"Strategy {method} failed: {type(exc).__name__}: {exc}")
                continue

            logger.info(
                f"Parsed model response via {method} (confidence {match.confidence:.2f})",
                extra={"parsing_method": method},
            )
            return ParseResult(True, data, method, match.confidence, tuple(errors))

        logger.warning(
            f"All parse strategies failed, using fallback record ({len(text)} chars of input)",
            extra={"parsing_method": "fallback"},
        )
        return ParseResult(True, build_fallback_record(text), "fallback", 0.5, tuple(errors))


_default_parser = ResponseParser()


def parse_with_fallbacks(raw_text: Any) -> ParseResult:
    return _default_parser.parse_with_fallbacks(raw_text)
